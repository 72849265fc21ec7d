"""Sign-in handoff from the external identity provider.

The provider signs {"email": ...} with IDENTITY_SHARED_SECRET; we verify the
assertion, upsert the account and keep only its id in the Flask session.
"""

import os

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

import accounts
import reward_ledger
from errors import StorageUnavailable
from models_cards import Account


ASSERTION_SALT = "identity-assertion"

auth_api = Blueprint("auth_api", __name__)


def _serializer() -> URLSafeTimedSerializer:
    secret = os.getenv("IDENTITY_SHARED_SECRET") or current_app.config["SECRET_KEY"]
    return URLSafeTimedSerializer(secret, salt=ASSERTION_SALT)


def _max_age() -> int:
    return int(os.getenv("IDENTITY_ASSERTION_MAX_AGE", "300"))


def sign_assertion(email: str) -> str:
    """What the identity provider does. Used by tooling and tests."""
    return _serializer().dumps({"email": email})


def current_account() -> Account | None:
    account_id = flask_session.get("account_id")
    if not account_id:
        return None
    account = accounts.get(account_id)
    if account is None:
        # Session outlived its account.
        flask_session.pop("account_id", None)
    return account


@auth_api.post("/api/auth/callback")
def auth_callback():
    data = request.get_json(silent=True) or {}
    assertion = (data.get("assertion") or request.form.get("assertion") or "").strip()
    if not assertion:
        return jsonify({"success": False, "error": "assertion is required"}), 400

    try:
        payload = _serializer().loads(assertion, max_age=_max_age())
    except SignatureExpired:
        return jsonify({"success": False, "error": "Assertion expired"}), 401
    except BadSignature:
        current_app.logger.warning("Rejected identity assertion with bad signature")
        return jsonify({"success": False, "error": "Invalid assertion"}), 401

    try:
        account = accounts.get_or_create((payload or {}).get("email"))
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except StorageUnavailable:
        current_app.logger.exception("Sign-in failed")
        return jsonify({"success": False, "status": "error"}), 503

    flask_session.permanent = True
    flask_session["account_id"] = account.id
    return jsonify({"success": True, "account": account.to_dict()})


@auth_api.post("/api/auth/logout")
def auth_logout():
    flask_session.pop("account_id", None)
    return jsonify({"success": True})


@auth_api.get("/api/auth/me")
def auth_me():
    account = current_account()
    if account is None:
        return jsonify({"success": False, "error": "Authentication required"}), 401
    return jsonify({
        "success": True,
        "account": account.to_dict(),
        "time_balance": float(reward_ledger.balance(account.id)),
    })
