"""Claim engine: ownership transfer (claim) and release.

Ownership state machine (redemption status shown in brackets):

    Unclaimed          --claim-->    Claimed[none]
    Claimed[none]      --release-->  Unclaimed
    Claimed[credited]  --release-->  Unclaimed  (still credited)
    Claimed[rejected]  --release-->  Unclaimed
    Claimed[pending]   --release-->  refused

Token and code claims share one implementation; only the lookup differs.
The winner of a race is whoever's conditional UPDATE changes the row.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

import activity_log
import card_registry
from errors import StorageUnavailable
from extensions import db
from models_activity import ACTION_CLAIMED, ACTION_RELEASED
from models_cards import REDEMPTION_PENDING, Account, Card, ScanEvent


IDENTIFIER_TOKEN = "token"
IDENTIFIER_CODE = "code"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_OWNER = "already_owner"
    OWNED_BY_OTHER = "owned_by_other"
    NOT_FOUND = "not_found"
    BLOCKED = "blocked"
    NOT_AUTHENTICATED = "not_authenticated"


class ReleaseOutcome(str, Enum):
    RELEASED = "released"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    REDEMPTION_PENDING = "redemption_pending"
    NOT_AUTHENTICATED = "not_authenticated"


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    card: Card | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (ClaimOutcome.CLAIMED, ClaimOutcome.ALREADY_OWNER)


@dataclass(frozen=True)
class ReleaseResult:
    outcome: ReleaseOutcome
    card: Card | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == ReleaseOutcome.RELEASED


_LOOKUPS = {
    IDENTIFIER_TOKEN: card_registry.find_by_claim_token,
    IDENTIFIER_CODE: card_registry.find_by_code,
}


def claim(identifier: str, kind: str, account: Account | None, source: str = "scan") -> ClaimResult:
    """Claim the card identified by a claim token or printed code."""
    lookup = _LOOKUPS.get(kind)
    if lookup is None:
        raise ValueError(f"Unknown identifier kind: {kind!r}")
    if account is None:
        return ClaimResult(ClaimOutcome.NOT_AUTHENTICATED)

    try:
        result = _claim(lookup(identifier), account, kind, source)
        _record_scan(account.id, identifier, kind, result, source)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("card claim", e) from e

    current_app.logger.info(
        "Claim by %s via %s: %s%s",
        account.id,
        kind,
        result.outcome.value,
        f" (card {result.card.id})" if result.card is not None else "",
    )
    return result


def claim_by_token(token: str, account: Account | None, source: str = "scan") -> ClaimResult:
    return claim(token, IDENTIFIER_TOKEN, account, source)


def claim_by_code(code: str, account: Account | None, source: str = "scan") -> ClaimResult:
    return claim(code, IDENTIFIER_CODE, account, source)


def _claim(card: Card | None, account: Account, kind: str, source: str) -> ClaimResult:
    if account.blocked:
        return ClaimResult(ClaimOutcome.BLOCKED)
    # Inactive and soft-deleted cards look exactly like missing ones.
    if card is None or not card.is_claimable:
        return ClaimResult(ClaimOutcome.NOT_FOUND)
    if card.owner_id == account.id:
        return ClaimResult(ClaimOutcome.ALREADY_OWNER, card)
    if card.owner_id is not None:
        return ClaimResult(ClaimOutcome.OWNED_BY_OTHER, card)

    if not card_registry.set_owner_if_unclaimed(card.id, account.id):
        # Lost the race: report whatever the row says now.
        card = card_registry.get(card.id, fresh=True)
        if card is None or not card.is_claimable:
            return ClaimResult(ClaimOutcome.NOT_FOUND)
        if card.owner_id == account.id:
            return ClaimResult(ClaimOutcome.ALREADY_OWNER, card)
        return ClaimResult(ClaimOutcome.OWNED_BY_OTHER, card)

    activity_log.record(
        card.id,
        account.id,
        ACTION_CLAIMED,
        metadata={"claim_source": source, "identifier": kind},
    )
    return ClaimResult(ClaimOutcome.CLAIMED, card)


def _record_scan(user_id: str, identifier: str, kind: str, result: ClaimResult, source: str) -> None:
    # Never persist a claim token: log the printed code when we know the card.
    if result.card is not None:
        scanned = result.card.code
    elif kind == IDENTIFIER_CODE:
        scanned = (identifier or "").strip()[:128]
    else:
        scanned = "(token)"
    db.session.add(
        ScanEvent(
            user_id=user_id,
            code=scanned,
            card_id=result.card.id if result.card is not None else None,
            outcome=result.outcome.value,
            source=(source or "scan")[:32],
        )
    )


def release(card_id: str, account: Account | None) -> ReleaseResult:
    """Give up ownership. Only the owner may release, never while pending."""
    if account is None:
        return ReleaseResult(ReleaseOutcome.NOT_AUTHENTICATED)

    try:
        result = _release(card_id, account)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable("card release", e) from e

    current_app.logger.info("Release of %s by %s: %s", card_id, account.id, result.outcome.value)
    return result


def _release(card_id: str, account: Account) -> ReleaseResult:
    card = card_registry.get(card_id)
    if card is None or card.deleted_at is not None:
        return ReleaseResult(ReleaseOutcome.NOT_FOUND)
    if card.owner_id != account.id:
        return ReleaseResult(ReleaseOutcome.UNAUTHORIZED)
    if card.redemption_status == REDEMPTION_PENDING:
        return ReleaseResult(ReleaseOutcome.REDEMPTION_PENDING, card)

    if not card_registry.clear_owner_if_releasable(card.id, account.id):
        card = card_registry.get(card_id, fresh=True)
        if card is None:
            return ReleaseResult(ReleaseOutcome.NOT_FOUND)
        if card.owner_id != account.id:
            return ReleaseResult(ReleaseOutcome.UNAUTHORIZED)
        return ReleaseResult(ReleaseOutcome.REDEMPTION_PENDING, card)

    activity_log.record(
        card.id,
        account.id,
        ACTION_RELEASED,
        previous_owner_id=account.id,
        metadata={"redemption_status": card.redemption_status},
    )
    return ReleaseResult(ReleaseOutcome.RELEASED, card)
