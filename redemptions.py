from flask import Blueprint, current_app, jsonify, request

import redemption_engine
from auth import current_account
from errors import StorageUnavailable
from redemption_engine import REASON_MESSAGES, SubmitOutcome


redemptions_api = Blueprint("redemptions_api", __name__)


SUBMIT_HTTP_STATUS = {
    SubmitOutcome.SUBMITTED: 201,
    SubmitOutcome.INELIGIBLE: 409,
    SubmitOutcome.EMPTY: 400,
    SubmitOutcome.NOT_AUTHENTICATED: 401,
}


@redemptions_api.post("/api/redemptions")
def api_submit_redemption():
    data = request.get_json(silent=True) or {}
    card_ids = data.get("card_ids") or []
    if not isinstance(card_ids, list):
        return jsonify({"success": False, "error": "card_ids must be a list"}), 400

    try:
        result = redemption_engine.submit(card_ids, current_account())
    except StorageUnavailable:
        current_app.logger.exception("Redemption submit failed")
        return jsonify({"success": False, "status": "error"}), 503

    body = {"success": result.ok, "status": result.outcome.value}
    if result.ok:
        body["redemption"] = result.redemption.to_dict(include_cards=True)
    elif result.outcome == SubmitOutcome.INELIGIBLE:
        body["card_id"] = result.card_id
        body["reason"] = result.reason
        body["message"] = REASON_MESSAGES.get(result.reason, "Card cannot be submitted.")
    elif result.outcome == SubmitOutcome.EMPTY:
        body["error"] = "Select at least one card"
    else:
        body["error"] = "Authentication required"
    return jsonify(body), SUBMIT_HTTP_STATUS[result.outcome]


@redemptions_api.get("/api/redemptions")
def api_my_redemptions():
    account = current_account()
    if account is None:
        return jsonify({"success": False, "error": "Authentication required"}), 401
    return jsonify({"success": True, "redemptions": redemption_engine.list_for_user(account.id)})


@redemptions_api.get("/api/redemptions/<redemption_id>")
def api_redemption_receipt(redemption_id):
    account = current_account()
    if account is None:
        return jsonify({"success": False, "error": "Authentication required"}), 401
    redemption = redemption_engine.receipt(redemption_id)
    # Someone else's receipt looks like a missing one.
    if redemption is None or redemption.user_id != account.id:
        return jsonify({"success": False, "error": "Redemption not found"}), 404
    return jsonify({"success": True, "redemption": redemption.to_dict(include_cards=True)})
