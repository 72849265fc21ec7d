import os

from flask import Blueprint, current_app, jsonify, request

import card_registry
import claim_engine
from auth import current_account
from claim_engine import IDENTIFIER_CODE, IDENTIFIER_TOKEN, ReleaseOutcome
from errors import StorageUnavailable
from extensions import limiter
from scan_utils import claim_response, error_response, extract_code_or_token


claims_api = Blueprint("claims_api", __name__)


RELEASE_HTTP_STATUS = {
    ReleaseOutcome.RELEASED: 200,
    ReleaseOutcome.NOT_FOUND: 404,
    ReleaseOutcome.UNAUTHORIZED: 403,
    ReleaseOutcome.REDEMPTION_PENDING: 409,
    ReleaseOutcome.NOT_AUTHENTICATED: 401,
}

RELEASE_MESSAGES = {
    ReleaseOutcome.RELEASED: "Card released",
    ReleaseOutcome.NOT_FOUND: "Card not found.",
    ReleaseOutcome.UNAUTHORIZED: "You do not own this card.",
    ReleaseOutcome.REDEMPTION_PENDING: "This card has a redemption awaiting review and cannot be released yet.",
    ReleaseOutcome.NOT_AUTHENTICATED: "Authentication required",
}


def _claim_rate_limit() -> str:
    return os.getenv("CLAIM_RATE_LIMIT", "30 per minute")


def _identifier_from_request(data: dict):
    """Explicit token/code fields win over a raw scanned payload."""
    token = str(data.get("token") or "").strip()
    if token:
        return IDENTIFIER_TOKEN, token
    code = str(data.get("code") or "").strip()
    if code:
        return IDENTIFIER_CODE, code
    return extract_code_or_token(str(data.get("payload") or ""))


@claims_api.post("/api/claim")
@limiter.limit(_claim_rate_limit)
def api_claim():
    data = request.get_json(silent=True) or {}
    parsed = _identifier_from_request(data)
    if not parsed:
        return jsonify({"success": False, "error": "No card code or claim link found"}), 400

    kind, value = parsed
    source = str(data.get("source") or "scan").strip().lower()[:32] or "scan"
    try:
        result = claim_engine.claim(value, kind, current_account(), source=source)
    except StorageUnavailable:
        current_app.logger.exception("Claim failed")
        body, status = error_response()
        return jsonify(body), status

    body, status = claim_response(result)
    return jsonify(body), status


@claims_api.post("/api/cards/<card_id>/release")
def api_release_card(card_id):
    try:
        result = claim_engine.release(card_id, current_account())
    except StorageUnavailable:
        current_app.logger.exception("Release failed for card %s", card_id)
        body, status = error_response()
        return jsonify(body), status

    body = {
        "success": result.ok,
        "status": result.outcome.value,
        "message": RELEASE_MESSAGES[result.outcome],
    }
    return jsonify(body), RELEASE_HTTP_STATUS[result.outcome]


@claims_api.get("/api/cards/mine")
def api_my_cards():
    account = current_account()
    if account is None:
        return jsonify({"success": False, "error": "Authentication required"}), 401
    cards = card_registry.collection(account.id)
    return jsonify({"success": True, "count": len(cards), "cards": [c.to_dict() for c in cards]})


@claims_api.get("/api/cards/preview/<code>")
def api_card_preview(code):
    """Public view of a printed code (no ownership details beyond claimed/unclaimed)."""
    card = card_registry.find_by_code(code)
    if card is None or not card.is_claimable:
        return jsonify({"success": False, "status": "not_found", "message": "Card not found."}), 404
    return jsonify({
        "success": True,
        "card": card.summary(),
        "claimed": card.owner_id is not None,
        "redemption_status": card.redemption_status,
    })
