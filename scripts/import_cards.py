#!/usr/bin/env python3
"""Import a print batch from CSV and print each card's claim URL.

Columns: name (required), code, era, suit, rank, rarity, image_url,
trader_value, time_value, description. Missing codes are generated.

Usage: python scripts/import_cards.py batch.csv > claim_urls.csv
"""

import csv
import sys

from app import app
from card_registry import claim_url, create_cards


def main(path: str) -> int:
    with open(path, newline="", encoding="utf-8-sig") as f:
        rows = [{k.strip().lower(): (v or "").strip() for k, v in row.items() if k} for row in csv.DictReader(f)]

    with app.app_context():
        results = create_cards(rows)

        out = csv.writer(sys.stdout)
        out.writerow(["code", "name", "claim_url"])
        for r in results:
            if r["ok"]:
                card = r["card"]
                out.writerow([card.code, card.name, claim_url(card)])

    failed = [r for r in results if not r["ok"]]
    for r in failed:
        # Row numbers are 1-based and skip the header line.
        print(f"row {r['index'] + 2}: {r['error']}", file=sys.stderr)

    print({"ok": not failed, "created": len(results) - len(failed), "rejected": len(failed)}, file=sys.stderr)
    return 1 if failed else 0


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__.strip().splitlines()[-1], file=sys.stderr)
        sys.exit(2)
    sys.exit(main(sys.argv[1]))
