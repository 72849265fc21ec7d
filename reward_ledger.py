"""TIME reward ledger.

credit_time() is the side effect invoked when an admin credits a redemption.
It runs inside the review transaction; the unique constraint on
time_ledger.redemption_id makes a second credit for the same receipt fail
instead of paying twice.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from extensions import db
from models_redemptions import TimeLedgerEntry


def credit_time(user_id: str, amount: Decimal, redemption_id: str) -> TimeLedgerEntry:
    entry = TimeLedgerEntry(
        user_id=user_id,
        redemption_id=redemption_id,
        amount=Decimal(amount or 0),
        created_at=datetime.utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def balance(user_id: str) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(TimeLedgerEntry.amount), 0))
        .filter(TimeLedgerEntry.user_id == user_id)
        .scalar()
    )
    return Decimal(str(total or 0))


def entries_for(user_id: str, limit: int = 100) -> list[TimeLedgerEntry]:
    return (
        TimeLedgerEntry.query.filter(TimeLedgerEntry.user_id == user_id)
        .order_by(TimeLedgerEntry.created_at.desc())
        .limit(limit)
        .all()
    )
