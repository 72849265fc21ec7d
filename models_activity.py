import json
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from extensions import db


ACTION_CLAIMED = "claimed"
ACTION_RELEASED = "released"
ACTION_REDEMPTION_SUBMITTED = "redemption_submitted"
ACTION_REDEMPTION_PENDING = "redemption_pending"
ACTION_REDEMPTION_CREDITED = "redemption_credited"
ACTION_REDEMPTION_REJECTED = "redemption_rejected"

ACTIONS = (
    ACTION_CLAIMED,
    ACTION_RELEASED,
    ACTION_REDEMPTION_SUBMITTED,
    ACTION_REDEMPTION_PENDING,
    ACTION_REDEMPTION_CREDITED,
    ACTION_REDEMPTION_REJECTED,
)


class CardActivity(db.Model):
    """Append-only audit trail of ownership and redemption transitions.

    Rows are never updated or deleted. cards.owner_id stays the source of truth;
    this table only explains how a card got there.
    """

    __tablename__ = "card_activity_log"

    id = Column(Integer, primary_key=True)
    card_id = Column(String(36), ForeignKey("cards.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    action = Column(String(32), nullable=False)
    previous_owner_id = Column(String(36), nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_card_activity_card_created", "card_id", "created_at"),
        Index("idx_card_activity_action", "action"),
    )

    @property
    def metadata_dict(self):
        if not self.metadata_json:
            return {}
        try:
            return json.loads(self.metadata_json)
        except ValueError:
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "card_id": self.card_id,
            "user_id": self.user_id,
            "action": self.action,
            "previous_owner_id": self.previous_owner_id,
            "metadata": self.metadata_dict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
