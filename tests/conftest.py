"""
Pytest configuration and fixtures for the card claim service.

The app module builds itself at import time from the environment, so the
test environment is set before anything imports it. Every test gets a fresh
in-memory SQLite schema inside one pushed app context; the Flask test
client reuses that context, so engine calls and HTTP calls share a session.
"""

from __future__ import annotations

import os
import uuid
from decimal import Decimal

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATELIMIT_ENABLED"] = "0"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["IDENTITY_SHARED_SECRET"] = "test-identity-secret"
os.environ.pop("ADMIN_CARDS_KEY", None)
os.environ.pop("ADMIN_REDEMPTIONS_KEY", None)
os.environ.pop("USE_SERVER_SIDE_SESSIONS", None)

from app import app as flask_app  # noqa: E402
from card_registry import generate_claim_token  # noqa: E402
from extensions import db  # noqa: E402
from models_cards import Account, Card  # noqa: E402


# ============================================================================
# APPLICATION / DATABASE
# ============================================================================


@pytest.fixture
def app():
    """App with a clean schema and a pushed app context."""
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


# ============================================================================
# FACTORIES
# ============================================================================


@pytest.fixture
def make_account(app):
    """Create and commit an account. Emails are unique unless given."""

    def _make(email: str | None = None, blocked: bool = False) -> Account:
        account = Account(email=email or f"user-{uuid.uuid4().hex[:8]}@example.com", blocked=blocked)
        db.session.add(account)
        db.session.commit()
        return account

    return _make


@pytest.fixture
def make_card(app):
    """Create and commit an unclaimed, active card. Any column can be overridden."""
    counter = {"n": 0}

    def _make(**overrides) -> Card:
        counter["n"] += 1
        fields = {
            "code": f"TEST-{counter['n']:04d}",
            "claim_token": generate_claim_token(),
            "name": f"Test Card {counter['n']}",
            "era": "Golden",
            "suit": "Hearts",
            "rank": "A",
            "rarity": "rare",
            "trader_value": "12.50",
            "time_value": Decimal("10.00"),
        }
        fields.update(overrides)
        card = Card(**fields)
        db.session.add(card)
        db.session.commit()
        return card

    return _make


# ============================================================================
# SESSION HELPERS
# ============================================================================


@pytest.fixture
def login(client):
    """Sign a user into the test client session."""

    def _login(account: Account):
        with client.session_transaction() as sess:
            sess["account_id"] = account.id

    return _login


@pytest.fixture
def admin_login(client):
    """Mark the test client as signed into an admin dashboard ("cards" or "redemptions")."""

    def _login(section: str):
        with client.session_transaction() as sess:
            sess[f"admin_{section}"] = True

    return _login
