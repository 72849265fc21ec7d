"""Accounts: identity upsert and admin blocking.

Authentication itself lives with the external identity provider; we only keep
the email it vouched for plus our own blocked flag.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import StorageUnavailable
from extensions import db
from models_cards import Account


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def get(account_id: str | None) -> Account | None:
    if not account_id:
        return None
    return db.session.get(Account, account_id)


def find_by_email(email: str) -> Account | None:
    email = normalize_email(email)
    if not email:
        return None
    return Account.query.filter_by(email=email).first()


def _commit(operation: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageUnavailable(operation, e) from e


def get_or_create(email: str) -> Account:
    email = normalize_email(email)
    if not email or "@" not in email:
        raise ValueError("A valid email is required")

    account = find_by_email(email)
    if account is None:
        account = Account(email=email)
        db.session.add(account)
        current_app.logger.info("Created account for %s", email)
    account.last_active = datetime.utcnow()
    _commit("account upsert")
    return account


def block_by_email(email: str, reason: str | None = None, blocked_by: str | None = None) -> Account | None:
    account = find_by_email(email)
    if account is None:
        return None
    account.blocked = True
    account.blocked_at = datetime.utcnow()
    account.blocked_reason = (reason or "").strip() or None
    account.blocked_by = blocked_by
    _commit("account block")
    current_app.logger.info("Blocked account %s", account.email)
    return account


def unblock_by_email(email: str) -> Account | None:
    account = find_by_email(email)
    if account is None:
        return None
    account.blocked = False
    account.blocked_at = None
    account.blocked_reason = None
    account.blocked_by = None
    _commit("account unblock")
    current_app.logger.info("Unblocked account %s", account.email)
    return account


def list_blocked() -> list[Account]:
    return Account.query.filter(Account.blocked.is_(True)).order_by(Account.blocked_at.desc()).all()


USER_STATUS_FILTERS = ("active", "blocked")


def list_accounts(search: str | None = None, status: str | None = None,
                  limit: int = 100, offset: int = 0) -> list[Account]:
    """Admin user list, newest first. ``search`` matches anywhere in the email."""
    status = (status or "").strip().lower()
    if status and status not in USER_STATUS_FILTERS:
        raise ValueError(f"status must be one of {', '.join(USER_STATUS_FILTERS)}")

    q = Account.query
    search = normalize_email(search)
    if search:
        q = q.filter(Account.email.contains(search, autoescape=True))
    if status:
        q = q.filter(Account.blocked.is_(status == "blocked"))
    return (
        q.order_by(Account.created_at.desc(), Account.id.desc())
        .offset(max(0, int(offset or 0)))
        .limit(max(1, min(int(limit or 100), 1000)))
        .all()
    )
