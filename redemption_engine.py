"""Redemption engine: owner submission and admin review.

Submission is all-or-nothing: either every requested card moves to pending
under one receipt, or nothing changes and the first offending card is
reported. Review is guarded by the receipt's own status so a double click
cannot credit twice.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

import activity_log
import card_registry
import reward_ledger
from errors import StorageUnavailable
from extensions import db
from models_activity import (
    ACTION_REDEMPTION_CREDITED,
    ACTION_REDEMPTION_REJECTED,
    ACTION_REDEMPTION_SUBMITTED,
)
from models_cards import (
    REDEMPTION_CREDITED,
    REDEMPTION_PENDING,
    REDEMPTION_REJECTED,
    Account,
)
from models_redemptions import (
    DECISION_CREDIT,
    DECISION_REJECT,
    REDEMPTION_STATUS_CREDITED,
    REDEMPTION_STATUS_PENDING,
    REDEMPTION_STATUS_REJECTED,
    Redemption,
    RedemptionCard,
)


REASON_NOT_FOUND = "not_found"
REASON_NOT_OWNER = "not_owner"
REASON_INACTIVE = "inactive"
REASON_ALREADY_PENDING = "already_pending"
REASON_ALREADY_CREDITED = "already_credited"

REASON_MESSAGES = {
    REASON_NOT_FOUND: "Card not found.",
    REASON_NOT_OWNER: "You do not own this card.",
    REASON_INACTIVE: "This card is not active.",
    REASON_ALREADY_PENDING: "This card is already awaiting review.",
    REASON_ALREADY_CREDITED: "TIME has already been claimed for this card.",
}


class SubmitOutcome(str, Enum):
    SUBMITTED = "submitted"
    INELIGIBLE = "ineligible"
    EMPTY = "empty"
    NOT_AUTHENTICATED = "not_authenticated"


class ReviewOutcome(str, Enum):
    CREDITED = "credited"
    REJECTED = "rejected"
    ALREADY_RESOLVED = "already_resolved"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SubmitResult:
    outcome: SubmitOutcome
    redemption: Redemption | None = None
    card_id: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == SubmitOutcome.SUBMITTED


@dataclass(frozen=True)
class ReviewResult:
    outcome: ReviewOutcome
    redemption: Redemption | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (ReviewOutcome.CREDITED, ReviewOutcome.REJECTED)


# ---------- submission ----------

def _diagnose(card_ids, cards, account_id):
    """First (card_id, reason) that makes the batch ineligible, or None."""
    for card_id in card_ids:
        card = cards.get(card_id)
        if card is None or card.deleted_at is not None:
            return card_id, REASON_NOT_FOUND
        if card.owner_id != account_id:
            return card_id, REASON_NOT_OWNER
        if not card.is_active:
            return card_id, REASON_INACTIVE
        if card.redemption_status == REDEMPTION_PENDING:
            return card_id, REASON_ALREADY_PENDING
        if card.redemption_status == REDEMPTION_CREDITED:
            return card_id, REASON_ALREADY_CREDITED
    return None


def submit(card_ids, account: Account | None) -> SubmitResult:
    """Submit owned cards for TIME. Duplicate ids count once."""
    if account is None:
        return SubmitResult(SubmitOutcome.NOT_AUTHENTICATED)

    ids = list(dict.fromkeys(str(c) for c in (card_ids or []) if c))
    if not ids:
        return SubmitResult(SubmitOutcome.EMPTY)

    account_id = account.id
    try:
        result = _submit(ids, account_id)
        if result.ok:
            db.session.commit()
        else:
            db.session.rollback()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("redemption submit", e) from e

    if result.ok:
        current_app.logger.info(
            "Redemption %s submitted by %s (%d cards, %s TIME)",
            result.redemption.id,
            account_id,
            len(ids),
            result.redemption.total_value,
        )
    else:
        current_app.logger.info(
            "Redemption by %s refused: card %s %s", account_id, result.card_id, result.reason
        )
    return result


def _submit(ids, account_id) -> SubmitResult:
    cards = card_registry.get_many(ids)
    bad = _diagnose(ids, cards, account_id)
    if bad:
        return SubmitResult(SubmitOutcome.INELIGIBLE, card_id=bad[0], reason=bad[1])

    redemption = Redemption(
        user_id=account_id,
        status=REDEMPTION_STATUS_PENDING,
        total_value=sum((Decimal(cards[c].time_value or 0) for c in ids), Decimal("0")),
        submitted_at=datetime.utcnow(),
    )
    for card_id in ids:
        redemption.cards.append(RedemptionCard(card_id=card_id, time_value=cards[card_id].time_value or 0))
    db.session.add(redemption)
    db.session.flush()

    moved = card_registry.mark_pending(ids, account_id)
    if moved != len(ids):
        # Someone changed a card between our read and the write.
        db.session.rollback()
        bad = _diagnose(ids, card_registry.get_many(ids, fresh=True), account_id)
        if bad is None:
            current_app.logger.warning(
                "Redemption by %s moved %d/%d cards but all look eligible now", account_id, moved, len(ids)
            )
            bad = (ids[0], REASON_ALREADY_PENDING)
        return SubmitResult(SubmitOutcome.INELIGIBLE, card_id=bad[0], reason=bad[1])

    for card_id in ids:
        activity_log.record(
            card_id,
            account_id,
            ACTION_REDEMPTION_SUBMITTED,
            metadata={"redemption_id": redemption.id, "time_value": cards[card_id].time_value},
        )
    return SubmitResult(SubmitOutcome.SUBMITTED, redemption=redemption)


# ---------- review ----------

def _parse_amount(raw) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        amount = Decimal(str(raw))
    except InvalidOperation:
        raise ValueError("credited_amount must be a number")
    if not amount.is_finite():
        raise ValueError("credited_amount must be a number")
    if amount < 0:
        raise ValueError("credited_amount must be >= 0")
    return amount


def review(redemption_id: str, decision: str, admin_id: str | None, notes: str | None = None,
           credited_amount=None, credit=None, external_ref: str | None = None) -> ReviewResult:
    """Credit or reject a pending redemption.

    ``credit(user_id, amount, redemption_id)`` is the reward side effect; it runs
    once, inside the same transaction as the status change.
    """
    if decision not in (DECISION_CREDIT, DECISION_REJECT):
        raise ValueError(f"Unknown review decision: {decision!r}")
    amount = _parse_amount(credited_amount)
    notes = (notes or "").strip() or None
    external_ref = (external_ref or "").strip()[:128] or None
    if credit is None:
        credit = reward_ledger.credit_time

    try:
        result = _review(redemption_id, decision, admin_id, notes, amount, credit, external_ref)
        if result.ok:
            db.session.commit()
        else:
            db.session.rollback()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("redemption review", e) from e

    current_app.logger.info("Review of redemption %s by %s: %s", redemption_id, admin_id, result.outcome.value)
    return result


def _review(redemption_id, decision, admin_id, notes, amount, credit, external_ref) -> ReviewResult:
    redemption = db.session.get(Redemption, redemption_id) if redemption_id else None
    if redemption is None:
        return ReviewResult(ReviewOutcome.NOT_FOUND)

    crediting = decision == DECISION_CREDIT
    if crediting and amount is None:
        amount = Decimal(redemption.total_value or 0)
    new_status = REDEMPTION_STATUS_CREDITED if crediting else REDEMPTION_STATUS_REJECTED

    stmt = (
        update(Redemption)
        .where(Redemption.id == redemption.id, Redemption.status == REDEMPTION_STATUS_PENDING)
        .values(
            status=new_status,
            credited_amount=amount if crediting else None,
            admin_notes=notes,
            external_ref=external_ref,
            reviewed_by=admin_id,
            reviewed_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount != 1:
        return ReviewResult(ReviewOutcome.ALREADY_RESOLVED, redemption)
    db.session.expire(redemption)

    card_ids = [rc.card_id for rc in redemption.cards]
    card_status = REDEMPTION_CREDITED if crediting else REDEMPTION_REJECTED
    moved = card_registry.resolve_pending(card_ids, card_status)
    if moved != len(card_ids):
        current_app.logger.warning(
            "Redemption %s: only %d/%d cards were pending", redemption.id, moved, len(card_ids)
        )

    action = ACTION_REDEMPTION_CREDITED if crediting else ACTION_REDEMPTION_REJECTED
    metadata = {"redemption_id": redemption.id, "admin_id": admin_id, "admin_notes": notes}
    if external_ref:
        metadata["external_ref"] = external_ref
    if crediting:
        metadata["credited_amount"] = amount
    for card_id in card_ids:
        activity_log.record(card_id, redemption.user_id, action, metadata=metadata)

    if crediting:
        credit(redemption.user_id, amount, redemption.id)
        return ReviewResult(ReviewOutcome.CREDITED, redemption)
    return ReviewResult(ReviewOutcome.REJECTED, redemption)


# ---------- reads ----------

def receipt(redemption_id: str) -> Redemption | None:
    if not redemption_id:
        return None
    return db.session.get(Redemption, redemption_id)


def list_for_user(account_id: str, limit: int = 100) -> list[dict]:
    """A user's receipts, newest first, with counts of their cards by current status."""
    rows = (
        Redemption.query.filter(Redemption.user_id == account_id)
        .order_by(Redemption.submitted_at.desc())
        .limit(limit)
        .all()
    )
    out = []
    for r in rows:
        item = r.to_dict()
        item["status_counts"] = dict(Counter(rc.card.redemption_status for rc in r.cards if rc.card is not None))
        out.append(item)
    return out


def list_redemptions(status: str | None = REDEMPTION_STATUS_PENDING, limit: int = 200) -> list[Redemption]:
    """Admin queue. Pending oldest first; anything else newest first."""
    q = Redemption.query
    if status:
        q = q.filter(Redemption.status == status)
    if status == REDEMPTION_STATUS_PENDING:
        q = q.order_by(Redemption.submitted_at.asc())
    else:
        q = q.order_by(Redemption.submitted_at.desc())
    return q.limit(max(1, min(int(limit or 200), 1000))).all()


def recent_credited(limit: int = 50) -> list[Redemption]:
    return (
        Redemption.query.filter(Redemption.status == REDEMPTION_STATUS_CREDITED)
        .order_by(Redemption.reviewed_at.desc())
        .limit(max(1, min(int(limit or 50), 500)))
        .all()
    )
