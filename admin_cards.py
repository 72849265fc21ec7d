"""Admin card inventory + account blocking APIs."""

import hmac
import os

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from sqlalchemy import func

import accounts
import activity_log
import card_registry
from errors import StorageUnavailable
from extensions import db
from models_cards import Card, ScanEvent


ADMIN_ACTOR_ID = "admin:cards"


def _admin_key() -> str:
    """Per-dashboard key for Cards; falls back to ADMIN_API_KEY."""
    return os.getenv("ADMIN_CARDS_KEY") or os.getenv("ADMIN_API_KEY", "")


admin_cards = Blueprint("admin_cards", __name__)


def _is_admin() -> bool:
    return bool(flask_session.get("admin_cards"))


def _require_admin():
    if not _is_admin():
        return jsonify({"success": False, "error": "Admin access required"}), 403
    return None


def _storage_error(what: str):
    current_app.logger.exception("Admin %s failed", what)
    return jsonify({"success": False, "status": "error"}), 503


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name) or default)
    except ValueError:
        return default


def _admin_card_dict(card):
    out = card.to_dict()
    out["claim_url"] = card_registry.claim_url(card)
    out["code_url"] = card_registry.code_url(card)
    return out


@admin_cards.post("/api/admin/cards/login")
def admin_cards_login():
    data = request.get_json(silent=True) or {}
    key = str(data.get("key") or request.form.get("key") or "").strip()
    expected = _admin_key()
    if key and expected and hmac.compare_digest(key, expected):
        flask_session["admin_cards"] = True
        return jsonify({"success": True})
    current_app.logger.warning("Failed admin cards login from %s", request.remote_addr)
    return jsonify({"success": False, "error": "Invalid key"}), 403


@admin_cards.post("/api/admin/cards/logout")
def admin_cards_logout():
    flask_session.pop("admin_cards", None)
    return jsonify({"success": True})


@admin_cards.get("/api/admin/cards")
def api_admin_list_cards():
    err = _require_admin()
    if err:
        return err

    include_deleted = (request.args.get("include_deleted") or "").strip().lower() in ("1", "true", "yes")
    cards = card_registry.search(
        request.args.get("q") or "",
        include_deleted=include_deleted,
        limit=_int_arg("limit", 100),
        offset=_int_arg("offset", 0),
    )
    return jsonify({"success": True, "count": len(cards), "cards": [_admin_card_dict(c) for c in cards]})


@admin_cards.post("/api/admin/cards/import")
def api_admin_import_cards():
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    rows = data.get("cards")
    if not isinstance(rows, list) or not rows:
        return jsonify({"success": False, "error": "cards must be a non-empty list"}), 400

    try:
        results = card_registry.create_cards(rows)
    except StorageUnavailable:
        return _storage_error("card import")

    out = []
    for r in results:
        item = {"index": r["index"], "ok": r["ok"]}
        if r["ok"]:
            item["card"] = _admin_card_dict(r["card"])
        else:
            item["error"] = r["error"]
        out.append(item)
    created = sum(1 for r in results if r["ok"])
    return jsonify({"success": True, "created": created, "results": out})


@admin_cards.patch("/api/admin/cards/<card_id>")
def api_admin_update_card(card_id):
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    try:
        card = card_registry.update_card(card_id, data)
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except StorageUnavailable:
        return _storage_error("card update")
    if card is None:
        return jsonify({"success": False, "error": "Card not found"}), 404
    return jsonify({"success": True, "card": _admin_card_dict(card)})


@admin_cards.post("/api/admin/cards/state")
def api_admin_set_card_state():
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    card_ids = data.get("card_ids") or []
    state = (data.get("state") or "").strip().lower()
    if not isinstance(card_ids, list) or not card_ids:
        return jsonify({"success": False, "error": "card_ids must be a non-empty list"}), 400
    if state not in card_registry.BULK_STATES:
        return jsonify({"success": False, "error": f"state must be one of {', '.join(card_registry.BULK_STATES)}"}), 400

    try:
        affected, results = card_registry.set_state(card_ids, state, actor_id=ADMIN_ACTOR_ID)
    except StorageUnavailable:
        return _storage_error("bulk state change")
    return jsonify({"success": True, "affected": affected, "results": [r.to_dict() for r in results]})


@admin_cards.get("/api/admin/cards/<card_id>/activity")
def api_admin_card_activity(card_id):
    err = _require_admin()
    if err:
        return err

    card = card_registry.get(card_id)
    if card is None:
        return jsonify({"success": False, "error": "Card not found"}), 404
    return jsonify({
        "success": True,
        "card": _admin_card_dict(card),
        "current_owner_email": activity_log.current_owner_email(card_id),
        "activity": activity_log.history_with_emails(card_id, _int_arg("limit", 50)),
    })


@admin_cards.get("/api/admin/scans")
def api_admin_scans():
    err = _require_admin()
    if err:
        return err

    q = ScanEvent.query
    user_id = (request.args.get("user_id") or "").strip()
    outcome = (request.args.get("outcome") or "").strip().lower()
    if user_id:
        q = q.filter(ScanEvent.user_id == user_id)
    if outcome:
        q = q.filter(ScanEvent.outcome == outcome)
    limit = max(1, min(_int_arg("limit", 100), 1000))
    rows = q.order_by(ScanEvent.created_at.desc(), ScanEvent.id.desc()).limit(limit).all()
    return jsonify({"success": True, "scans": [r.to_dict() for r in rows]})


def _owned_counts(account_ids):
    ids = [a for a in account_ids if a]
    if not ids:
        return {}
    rows = (
        db.session.query(Card.owner_id, func.count(Card.id))
        .filter(Card.owner_id.in_(ids), Card.deleted_at.is_(None))
        .group_by(Card.owner_id)
        .all()
    )
    return dict(rows)


@admin_cards.get("/api/admin/users")
def api_admin_list_users():
    err = _require_admin()
    if err:
        return err

    try:
        users = accounts.list_accounts(
            request.args.get("search") or "",
            request.args.get("status") or "",
            limit=_int_arg("limit", 100),
            offset=_int_arg("offset", 0),
        )
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400

    counts = _owned_counts(u.id for u in users)
    out = []
    for u in users:
        item = u.to_dict()
        item["card_count"] = counts.get(u.id, 0)
        out.append(item)
    return jsonify({"success": True, "count": len(out), "users": out})


@admin_cards.get("/api/admin/users/blocked")
def api_admin_blocked_users():
    err = _require_admin()
    if err:
        return err
    return jsonify({"success": True, "users": [a.to_dict() for a in accounts.list_blocked()]})


@admin_cards.post("/api/admin/users/block")
def api_admin_block_user():
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    email = accounts.normalize_email(data.get("email"))
    if not email:
        return jsonify({"success": False, "error": "email is required"}), 400
    try:
        account = accounts.block_by_email(email, reason=data.get("reason"), blocked_by=ADMIN_ACTOR_ID)
    except StorageUnavailable:
        return _storage_error("user block")
    if account is None:
        return jsonify({"success": False, "error": "User not found"}), 404
    return jsonify({"success": True, "user": account.to_dict()})


@admin_cards.post("/api/admin/users/unblock")
def api_admin_unblock_user():
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    email = accounts.normalize_email(data.get("email"))
    if not email:
        return jsonify({"success": False, "error": "email is required"}), 400
    try:
        account = accounts.unblock_by_email(email)
    except StorageUnavailable:
        return _storage_error("user unblock")
    if account is None:
        return jsonify({"success": False, "error": "User not found"}), 404
    return jsonify({"success": True, "user": account.to_dict()})
