"""Admin redemption review queue + APIs."""

import csv
import hmac
import io
import os

from flask import Blueprint, Response, current_app, jsonify, request, session as flask_session

import redemption_engine
from errors import StorageUnavailable
from models_cards import Account
from models_redemptions import DECISION_CREDIT, DECISION_REJECT, REDEMPTION_STATUS_PENDING
from redemption_engine import ReviewOutcome


ADMIN_ACTOR_ID = "admin:redemptions"


def _admin_key() -> str:
    """Per-dashboard key for Redemptions; falls back to ADMIN_API_KEY."""
    return os.getenv("ADMIN_REDEMPTIONS_KEY") or os.getenv("ADMIN_API_KEY", "")


admin_redemptions = Blueprint("admin_redemptions", __name__)


REVIEW_HTTP_STATUS = {
    ReviewOutcome.CREDITED: 200,
    ReviewOutcome.REJECTED: 200,
    ReviewOutcome.ALREADY_RESOLVED: 409,
    ReviewOutcome.NOT_FOUND: 404,
}


def _is_admin() -> bool:
    return bool(flask_session.get("admin_redemptions"))


def _require_admin():
    if not _is_admin():
        return jsonify({"success": False, "error": "Admin access required"}), 403
    return None


def _emails_for(user_ids):
    ids = {u for u in user_ids if u}
    if not ids:
        return {}
    return {a.id: a.email for a in Account.query.filter(Account.id.in_(ids)).all()}


def _with_emails(redemptions, include_cards=False):
    emails = _emails_for(r.user_id for r in redemptions)
    out = []
    for r in redemptions:
        item = r.to_dict(include_cards=include_cards)
        item["user_email"] = emails.get(r.user_id)
        out.append(item)
    return out


@admin_redemptions.post("/api/admin/redemptions/login")
def admin_redemptions_login():
    data = request.get_json(silent=True) or {}
    key = str(data.get("key") or request.form.get("key") or "").strip()
    expected = _admin_key()
    if key and expected and hmac.compare_digest(key, expected):
        flask_session["admin_redemptions"] = True
        return jsonify({"success": True})
    current_app.logger.warning("Failed admin redemptions login from %s", request.remote_addr)
    return jsonify({"success": False, "error": "Invalid key"}), 403


@admin_redemptions.post("/api/admin/redemptions/logout")
def admin_redemptions_logout():
    flask_session.pop("admin_redemptions", None)
    return jsonify({"success": True})


@admin_redemptions.get("/api/admin/redemptions")
def api_admin_redemption_queue():
    err = _require_admin()
    if err:
        return err

    status = (request.args.get("status") or REDEMPTION_STATUS_PENDING).strip().lower()
    if status == "all":
        status = None
    rows = redemption_engine.list_redemptions(status)
    return jsonify({"success": True, "redemptions": _with_emails(rows, include_cards=True)})


@admin_redemptions.get("/api/admin/redemptions/credited")
def api_admin_recent_credited():
    err = _require_admin()
    if err:
        return err

    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    rows = redemption_engine.recent_credited(limit)
    return jsonify({"success": True, "redemptions": _with_emails(rows)})


@admin_redemptions.get("/api/admin/redemptions/export.csv")
def api_admin_export_csv():
    err = _require_admin()
    if err:
        return err

    status = (request.args.get("status") or "").strip().lower() or None
    rows = redemption_engine.list_redemptions(status, limit=1000)
    emails = _emails_for(r.user_id for r in rows)

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([
        "id", "user_email", "status", "card_count", "total_value", "credited_amount",
        "reviewed_by", "reviewed_at", "submitted_at", "admin_notes", "external_ref",
    ])
    for r in rows:
        d = r.to_dict()
        writer.writerow([
            d["id"], emails.get(r.user_id) or "", d["status"], d["card_count"], d["total_value"],
            "" if d["credited_amount"] is None else d["credited_amount"],
            d["reviewed_by"] or "", d["reviewed_at"] or "", d["submitted_at"] or "", d["admin_notes"] or "",
            d["external_ref"] or "",
        ])
    return Response(buf.getvalue(), mimetype="text/csv")


@admin_redemptions.get("/api/admin/redemptions/<redemption_id>")
def api_admin_redemption_detail(redemption_id):
    err = _require_admin()
    if err:
        return err

    redemption = redemption_engine.receipt(redemption_id)
    if redemption is None:
        return jsonify({"success": False, "error": "Redemption not found"}), 404
    return jsonify({"success": True, "redemption": _with_emails([redemption], include_cards=True)[0]})


def _review(redemption_id, decision):
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    try:
        result = redemption_engine.review(
            redemption_id,
            decision,
            ADMIN_ACTOR_ID,
            notes=data.get("notes"),
            credited_amount=data.get("credited_amount") if decision == DECISION_CREDIT else None,
            external_ref=data.get("external_ref"),
        )
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except StorageUnavailable:
        current_app.logger.exception("Redemption review failed for %s", redemption_id)
        return jsonify({"success": False, "status": "error"}), 503

    body = {"success": result.ok, "status": result.outcome.value}
    if result.redemption is not None:
        body["redemption"] = result.redemption.to_dict(include_cards=True)
    return jsonify(body), REVIEW_HTTP_STATUS[result.outcome]


@admin_redemptions.post("/api/admin/redemptions/<redemption_id>/credit")
def api_admin_credit_redemption(redemption_id):
    return _review(redemption_id, DECISION_CREDIT)


@admin_redemptions.post("/api/admin/redemptions/<redemption_id>/reject")
def api_admin_reject_redemption(redemption_id):
    return _review(redemption_id, DECISION_REJECT)


BULK_DECISIONS = {
    "credit": DECISION_CREDIT,
    "approve": DECISION_CREDIT,
    "reject": DECISION_REJECT,
}


@admin_redemptions.post("/api/admin/redemptions/bulk")
def api_admin_bulk_review():
    """Credit or reject several receipts. Each one is reviewed on its own;
    receipts already resolved are reported, not retried."""
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    redemption_ids = data.get("redemption_ids") or []
    decision = BULK_DECISIONS.get(str(data.get("decision") or data.get("action") or "").strip().lower())
    if not isinstance(redemption_ids, list) or not redemption_ids:
        return jsonify({"success": False, "error": "redemption_ids must be a non-empty list"}), 400
    if decision is None:
        return jsonify({"success": False, "error": "decision must be credit or reject"}), 400

    results = []
    updated = 0
    total_credited = 0.0
    for redemption_id in dict.fromkeys(str(r) for r in redemption_ids if r):
        try:
            result = redemption_engine.review(
                redemption_id,
                decision,
                ADMIN_ACTOR_ID,
                notes=data.get("notes"),
                external_ref=data.get("external_ref"),
            )
        except StorageUnavailable:
            current_app.logger.exception("Bulk review failed for %s", redemption_id)
            results.append({"redemption_id": redemption_id, "ok": False, "status": "error"})
            continue

        results.append({"redemption_id": redemption_id, "ok": result.ok, "status": result.outcome.value})
        if result.ok:
            updated += 1
            if result.outcome == ReviewOutcome.CREDITED:
                total_credited += float(result.redemption.credited_amount or 0)

    current_app.logger.info("Bulk %s of %d redemptions: %d updated", decision, len(results), updated)
    return jsonify({
        "success": True,
        "updated": updated,
        "total_credited": round(total_credited, 2),
        "results": results,
    })
