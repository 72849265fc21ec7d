"""Card inventory and account models.

- cards.owner_id is the authoritative owner (NULL = unclaimed / released).
- redemption_status belongs to the physical card and survives release, so a
  credited card can never be submitted again, whoever owns it next.
- claim_token is the secret embedded in the QR payload; code is the printed,
  human-readable identifier (guessable, admin-editable).
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from extensions import db


REDEMPTION_NONE = "none"
REDEMPTION_PENDING = "pending"
REDEMPTION_CREDITED = "credited"
REDEMPTION_REJECTED = "rejected"

REDEMPTION_STATUSES = (REDEMPTION_NONE, REDEMPTION_PENDING, REDEMPTION_CREDITED, REDEMPTION_REJECTED)
# Statuses from which an owner may (re)submit a card.
REDEEMABLE_STATUSES = (REDEMPTION_NONE, REDEMPTION_REJECTED)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(dt):
    return dt.isoformat() if dt else None


class Account(db.Model):
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(320), unique=True, nullable=False, index=True)
    blocked = Column(Boolean, nullable=False, default=False)
    blocked_at = Column(DateTime, nullable=True)
    blocked_reason = Column(Text, nullable=True)
    blocked_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_active = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_accounts_blocked", "blocked"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "blocked": bool(self.blocked),
            "blocked_at": _iso(self.blocked_at),
            "blocked_reason": self.blocked_reason,
            "created_at": _iso(self.created_at),
            "last_active": _iso(self.last_active),
        }


class Card(db.Model):
    __tablename__ = "cards"

    id = Column(String(36), primary_key=True, default=_new_id)
    code = Column(String(64), unique=True, nullable=False, index=True)
    claim_token = Column(String(64), unique=True, nullable=False, index=True)

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    era = Column(String(64), nullable=False, default="")
    suit = Column(String(32), nullable=False, default="")
    rank = Column(String(16), nullable=False, default="")
    rarity = Column(String(32), nullable=True)
    image_url = Column(String(500), nullable=True)
    trader_value = Column(String(64), nullable=True)
    time_value = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    owner_id = Column(String(36), ForeignKey("accounts.id"), nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)
    redemption_status = Column(String(16), nullable=False, default=REDEMPTION_NONE)

    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_cards_redemption_status", "redemption_status"),
        Index("idx_cards_active_deleted", "is_active", "deleted_at"),
    )

    @property
    def is_claimable(self) -> bool:
        return bool(self.is_active) and self.deleted_at is None

    def summary(self):
        """Display fields shown next to a claim/scan result."""
        return {
            "id": self.id,
            "name": self.name,
            "image_url": self.image_url,
            "era": self.era,
            "suit": self.suit,
            "rank": self.rank,
            "rarity": self.rarity,
            "trader_value": self.trader_value,
            "time_value": float(self.time_value or 0),
        }

    def to_dict(self):
        return {
            **self.summary(),
            "code": self.code,
            "description": self.description,
            "owner_id": self.owner_id,
            "claimed_at": _iso(self.claimed_at),
            "redemption_status": self.redemption_status,
            "is_active": bool(self.is_active),
            "deleted_at": _iso(self.deleted_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ScanEvent(db.Model):
    """One row per claim attempt, whatever the outcome."""

    __tablename__ = "scan_events"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    code = Column(String(128), nullable=False)
    card_id = Column(String(36), nullable=True)
    outcome = Column(String(32), nullable=False)
    source = Column(String(32), nullable=False, default="scan")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_scan_events_created", "created_at"),
        Index("idx_scan_events_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "code": self.code,
            "card_id": self.card_id,
            "outcome": self.outcome,
            "source": self.source,
            "created_at": _iso(self.created_at),
        }
