"""Card registry: lookups, guarded state writes and admin bulk tools.

Every write the engines rely on is a single conditional UPDATE whose WHERE
clause states the expected current row state. The caller checks the rowcount
to learn whether it won; nothing here reads-then-writes.

Bulk admin writes are the exception: each row is applied in its own
savepoint and a failing row does not undo the others.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from errors import StorageUnavailable
from extensions import db
from models_cards import (
    REDEEMABLE_STATUSES,
    REDEMPTION_PENDING,
    Card,
)


CLAIM_BASE_URL = os.getenv("CLAIM_BASE_URL", "https://tot.cards/claim?token=")
CODE_SCAN_BASE_URL = os.getenv("CODE_SCAN_BASE_URL", "https://tot.cards/r/")

STATE_ACTIVE = "active"
STATE_INACTIVE = "inactive"
STATE_SOFT_DELETED = "soft-deleted"
STATE_RESTORED = "restored"
BULK_STATES = (STATE_ACTIVE, STATE_INACTIVE, STATE_SOFT_DELETED, STATE_RESTORED)

# Fields admin bulk tools may patch. Identity fields (code, claim_token) and
# engine-owned state (owner_id, redemption_status) are never patched in bulk.
BULK_PATCH_FIELDS = {
    "is_active",
    "deleted_at",
    "deleted_by",
    "name",
    "description",
    "era",
    "suit",
    "rank",
    "rarity",
    "image_url",
    "trader_value",
}

EDITABLE_FIELDS = BULK_PATCH_FIELDS | {"code", "time_value"}


@dataclass(frozen=True)
class RowResult:
    card_id: str
    ok: bool
    error: str | None = None

    def to_dict(self):
        return {"card_id": self.card_id, "ok": self.ok, "error": self.error}


# ---------- lookups ----------

def get(card_id: str, fresh: bool = False) -> Card | None:
    if not card_id:
        return None
    return db.session.get(Card, card_id, populate_existing=fresh)


def get_many(card_ids, fresh: bool = False) -> dict[str, Card]:
    ids = [c for c in card_ids if c]
    if not ids:
        return {}
    q = Card.query.filter(Card.id.in_(ids))
    if fresh:
        q = q.populate_existing()
    return {c.id: c for c in q.all()}


def find_by_code(code: str) -> Card | None:
    """Case-insensitive exact match on the printed code."""
    code = (code or "").strip()
    if not code:
        return None
    return Card.query.filter(func.lower(Card.code) == code.lower()).first()


def find_by_claim_token(token: str) -> Card | None:
    """Exact match only. Tokens are never searched or listed."""
    token = (token or "").strip()
    if not token:
        return None
    return Card.query.filter(Card.claim_token == token).first()


def _escape_like(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search(query: str = "", include_deleted: bool = False, limit: int = 100, offset: int = 0) -> list[Card]:
    """Admin search: case-insensitive code prefix match."""
    q = Card.query
    query = (query or "").strip().lower()
    if query:
        q = q.filter(func.lower(Card.code).like(_escape_like(query) + "%", escape="\\"))
    if not include_deleted:
        q = q.filter(Card.deleted_at.is_(None))
    limit = max(1, min(int(limit or 100), 500))
    offset = max(0, int(offset or 0))
    return q.order_by(Card.updated_at.desc(), Card.created_at.desc()).offset(offset).limit(limit).all()


def collection(account_id: str) -> list[Card]:
    return (
        Card.query.filter(Card.owner_id == account_id, Card.deleted_at.is_(None))
        .order_by(Card.claimed_at.desc())
        .all()
    )


def claim_url(card: Card) -> str:
    return f"{CLAIM_BASE_URL}{card.claim_token}"


def code_url(card: Card) -> str:
    return f"{CODE_SCAN_BASE_URL}{card.code}"


# ---------- guarded writes (engine use) ----------

def _expire_cards(card_ids) -> None:
    ids = set(card_ids)
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, Card) and obj.id in ids:
            db.session.expire(obj)


def _guarded_update(stmt, card_ids) -> int:
    res = db.session.execute(stmt.execution_options(synchronize_session=False))
    _expire_cards(card_ids)
    return res.rowcount


def set_owner_if_unclaimed(card_id: str, account_id: str) -> bool:
    """Compare-and-swap owner_id NULL -> account_id. True only for the winner."""
    now = datetime.utcnow()
    stmt = (
        update(Card)
        .where(
            Card.id == card_id,
            Card.owner_id.is_(None),
            Card.is_active.is_(True),
            Card.deleted_at.is_(None),
        )
        .values(owner_id=account_id, claimed_at=now, updated_at=now)
    )
    return _guarded_update(stmt, [card_id]) == 1


def clear_owner_if_releasable(card_id: str, account_id: str) -> bool:
    """owner_id account_id -> NULL, refused while a redemption is pending."""
    stmt = (
        update(Card)
        .where(
            Card.id == card_id,
            Card.owner_id == account_id,
            Card.redemption_status != REDEMPTION_PENDING,
        )
        .values(owner_id=None, claimed_at=None, updated_at=datetime.utcnow())
    )
    return _guarded_update(stmt, [card_id]) == 1


def mark_pending(card_ids, account_id: str) -> int:
    """Move owned, redeemable cards to pending. Returns the number of rows moved."""
    ids = list(card_ids)
    stmt = (
        update(Card)
        .where(
            Card.id.in_(ids),
            Card.owner_id == account_id,
            Card.redemption_status.in_(REDEEMABLE_STATUSES),
            Card.is_active.is_(True),
            Card.deleted_at.is_(None),
        )
        .values(redemption_status=REDEMPTION_PENDING, updated_at=datetime.utcnow())
    )
    return _guarded_update(stmt, ids)


def resolve_pending(card_ids, new_status: str) -> int:
    """pending -> credited/rejected for the given cards."""
    ids = list(card_ids)
    stmt = (
        update(Card)
        .where(Card.id.in_(ids), Card.redemption_status == REDEMPTION_PENDING)
        .values(redemption_status=new_status, updated_at=datetime.utcnow())
    )
    return _guarded_update(stmt, ids)


# ---------- admin bulk tools ----------

def update_many(card_ids, patch: dict) -> list[RowResult]:
    """Apply one patch to many cards; each row succeeds or fails on its own."""
    unknown = set(patch) - BULK_PATCH_FIELDS
    if unknown:
        raise ValueError(f"Fields not allowed in bulk update: {', '.join(sorted(unknown))}")

    results = []
    seen = set()
    for card_id in card_ids:
        if not card_id or card_id in seen:
            continue
        seen.add(card_id)
        try:
            with db.session.begin_nested():
                stmt = update(Card).where(Card.id == card_id).values(**patch, updated_at=datetime.utcnow())
                changed = _guarded_update(stmt, [card_id])
            results.append(RowResult(card_id, changed == 1, None if changed == 1 else "not_found"))
        except SQLAlchemyError as e:
            current_app.logger.warning("Bulk update failed for card %s: %s", card_id, e)
            results.append(RowResult(card_id, False, "update_failed"))

    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("bulk card update", e) from e
    return results


def set_state(card_ids, state: str, actor_id: str | None = None) -> tuple[int, list[RowResult]]:
    """Admin bulk activate/deactivate/soft-delete/restore. Returns (affected, per-row results)."""
    if state == STATE_ACTIVE:
        patch = {"is_active": True}
    elif state == STATE_INACTIVE:
        patch = {"is_active": False}
    elif state == STATE_SOFT_DELETED:
        patch = {"deleted_at": datetime.utcnow(), "deleted_by": actor_id}
    elif state == STATE_RESTORED:
        patch = {"deleted_at": None, "deleted_by": None}
    else:
        raise ValueError(f"Unknown card state: {state!r}")

    results = update_many(card_ids, patch)
    affected = sum(1 for r in results if r.ok)
    current_app.logger.info("Bulk set %s on %d/%d cards", state, affected, len(results))
    return affected, results


def _parse_value(raw) -> Decimal:
    try:
        value = Decimal(str(raw if raw not in (None, "") else "0"))
    except InvalidOperation:
        raise ValueError("time_value must be a number")
    if not value.is_finite():
        raise ValueError("time_value must be a number")
    if value < 0:
        raise ValueError("time_value must be >= 0")
    return value


def update_card(card_id: str, fields: dict) -> Card | None:
    """Single-card admin edit (code and time_value included)."""
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

    value = _parse_value(fields.get("time_value")) if "time_value" in fields else None

    card = get(card_id)
    if not card:
        return None

    if "code" in fields:
        code = (fields.get("code") or "").strip()
        if not code:
            raise ValueError("code cannot be empty")
        other = find_by_code(code)
        if other is not None and other.id != card.id:
            raise ValueError("code already in use")
        card.code = code
    if value is not None:
        card.time_value = value
    for key in BULK_PATCH_FIELDS & set(fields):
        setattr(card, key, fields[key])

    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("card update", e) from e
    return card


# ---------- creation (admin import) ----------

def generate_claim_token() -> str:
    return secrets.token_urlsafe(24)


def generate_card_code(rank: str = "", suit: str = "") -> str:
    prefix = "".join(ch for ch in f"{(suit or 'X')[:1]}{rank or ''}" if ch.isalnum()).upper() or "X"
    for _ in range(10):
        code = f"{prefix}-{secrets.token_hex(3).upper()}"
        if find_by_code(code) is None:
            return code
    raise RuntimeError("Could not generate a unique card code")


def _as_bool(raw, default: bool = True) -> bool:
    if isinstance(raw, str):
        raw = raw.strip().lower()
        if not raw:
            return default
        return raw not in ("0", "false", "no", "off")
    return default if raw is None else bool(raw)


def create_cards(rows) -> list[dict]:
    """Create cards from admin import rows. New cards start unclaimed.

    Returns one result per input row: {"index", "ok", "card" | "error"}.
    Invalid rows are reported and skipped; valid rows are committed together.
    """
    results = []
    seen_codes = set()
    created = []

    for index, row in enumerate(rows):
        row = row or {}
        name = (row.get("name") or "").strip()
        if not name:
            results.append({"index": index, "ok": False, "error": "name is required"})
            continue
        try:
            time_value = _parse_value(row.get("time_value"))
        except ValueError as e:
            results.append({"index": index, "ok": False, "error": str(e)})
            continue

        code = (row.get("code") or "").strip() or generate_card_code(row.get("rank"), row.get("suit"))
        if code.lower() in seen_codes or find_by_code(code) is not None:
            results.append({"index": index, "ok": False, "error": f"code {code} already exists"})
            continue
        seen_codes.add(code.lower())

        card = Card(
            code=code,
            claim_token=generate_claim_token(),
            name=name,
            description=row.get("description"),
            era=(row.get("era") or "").strip(),
            suit=(row.get("suit") or "").strip(),
            rank=(row.get("rank") or "").strip(),
            rarity=row.get("rarity"),
            image_url=row.get("image_url"),
            trader_value=row.get("trader_value"),
            time_value=time_value,
            is_active=_as_bool(row.get("is_active")),
        )
        db.session.add(card)
        created.append(card)
        results.append({"index": index, "ok": True, "card": card})

    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("card import", e) from e

    current_app.logger.info("Imported %d cards (%d rows rejected)", len(created), len(results) - len(created))
    return results
