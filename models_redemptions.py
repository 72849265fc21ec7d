"""Redemption receipts and the TIME reward ledger.

- One Redemption row per submission; it snapshots each card's time_value in
  redemption_cards so later catalog edits never change a pending receipt.
- time_ledger.redemption_id is unique: a redemption can be credited once.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from extensions import db


REDEMPTION_STATUS_PENDING = "pending"
REDEMPTION_STATUS_CREDITED = "credited"
REDEMPTION_STATUS_REJECTED = "rejected"

DECISION_CREDIT = "credit"
DECISION_REJECT = "reject"


def _new_id() -> str:
    return str(uuid.uuid4())


class Redemption(db.Model):
    __tablename__ = "redemptions"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=REDEMPTION_STATUS_PENDING)
    total_value = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    credited_amount = Column(Numeric(12, 2), nullable=True)
    admin_notes = Column(Text, nullable=True)
    # Payout reference from the reward side (transfer id, voucher number).
    external_ref = Column(String(128), nullable=True)
    reviewed_by = Column(String(36), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    cards = relationship("RedemptionCard", back_populates="redemption", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_redemptions_status_submitted", "status", "submitted_at"),
        Index("idx_redemptions_user_submitted", "user_id", "submitted_at"),
    )

    def to_dict(self, include_cards: bool = False):
        out = {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "total_value": float(self.total_value or 0),
            "credited_amount": float(self.credited_amount) if self.credited_amount is not None else None,
            "admin_notes": self.admin_notes,
            "external_ref": self.external_ref,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "card_count": len(self.cards),
        }
        if include_cards:
            out["cards"] = [rc.to_dict() for rc in self.cards]
        return out


class RedemptionCard(db.Model):
    __tablename__ = "redemption_cards"

    id = Column(Integer, primary_key=True)
    redemption_id = Column(String(36), ForeignKey("redemptions.id"), nullable=False, index=True)
    card_id = Column(String(36), ForeignKey("cards.id"), nullable=False, index=True)
    # Value at submission time.
    time_value = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    redemption = relationship("Redemption", back_populates="cards")
    card = relationship("Card")

    __table_args__ = (
        UniqueConstraint("redemption_id", "card_id", name="uq_redemption_card"),
    )

    def to_dict(self):
        out = {
            "card_id": self.card_id,
            "time_value": float(self.time_value or 0),
        }
        if self.card is not None:
            out["card"] = self.card.summary()
            out["redemption_status"] = self.card.redemption_status
        return out


class TimeLedgerEntry(db.Model):
    __tablename__ = "time_ledger"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    redemption_id = Column(String(36), ForeignKey("redemptions.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("redemption_id", name="uq_time_ledger_redemption"),
        Index("idx_time_ledger_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "redemption_id": self.redemption_id,
            "amount": float(self.amount or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
