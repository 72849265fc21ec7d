from __future__ import annotations

import json
from datetime import datetime

from extensions import db
from models_activity import ACTION_CLAIMED, ACTION_RELEASED, ACTIONS, CardActivity
from models_cards import Account


def record(
    card_id: str,
    user_id: str,
    action: str,
    previous_owner_id: str | None = None,
    metadata: dict | None = None,
) -> CardActivity:
    """Append an activity entry inside the caller's transaction.

    The entry is flushed immediately so a failing append raises here, before the
    caller commits its state change. Callers roll back on any exception.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown activity action: {action!r}")

    md_json = None
    if metadata:
        md_json = json.dumps(metadata, separators=(",", ":"), ensure_ascii=False, default=str)

    entry = CardActivity(
        card_id=card_id,
        user_id=user_id,
        action=action,
        previous_owner_id=previous_owner_id,
        metadata_json=md_json,
        created_at=datetime.utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def history(card_id: str, limit: int = 50) -> list[CardActivity]:
    """Entries for one card, newest first. Insertion order breaks timestamp ties."""
    limit = max(1, min(int(limit or 50), 500))
    return (
        CardActivity.query.filter(CardActivity.card_id == card_id)
        .order_by(CardActivity.created_at.desc(), CardActivity.id.desc())
        .limit(limit)
        .all()
    )


def current_owner_email(card_id: str) -> str | None:
    """Owner according to the audit trail (display only; cards.owner_id decides)."""
    latest = (
        CardActivity.query.filter(
            CardActivity.card_id == card_id,
            CardActivity.action.in_([ACTION_CLAIMED, ACTION_RELEASED]),
        )
        .order_by(CardActivity.created_at.desc(), CardActivity.id.desc())
        .first()
    )
    if latest is None or latest.action != ACTION_CLAIMED:
        return None
    account = db.session.get(Account, latest.user_id)
    return account.email if account else None


def history_with_emails(card_id: str, limit: int = 50) -> list[dict]:
    """history() shaped for the admin timeline, with user and previous owner emails."""
    entries = history(card_id, limit)
    ids = {e.user_id for e in entries} | {e.previous_owner_id for e in entries if e.previous_owner_id}
    accounts = Account.query.filter(Account.id.in_(ids)).all() if ids else []
    emails = {a.id: a.email for a in accounts}

    out = []
    for e in entries:
        item = e.to_dict()
        item["user_email"] = emails.get(e.user_id)
        item["previous_owner_email"] = emails.get(e.previous_owner_id) if e.previous_owner_id else None
        out.append(item)
    return out
