#======================================================================================
#
# ADMIN trigger surface: manual accrual run, withdrawal decisions, payout logs
#
#=======================================================================================
import logging
from flask import jsonify, request, Blueprint, current_app
from flask_login import current_user

from models import PayoutRecord
from accrual.ledger import LedgerError, approve_withdrawal, reject_withdrawal
from accrual.scheduler import run_accrual, summary_to_json
from .api_helpers import admin_required, accrual_config, notifier, error_response, json_body

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.route("/accrual/run", methods=["POST"])
@admin_required
def trigger_accrual():
    """
    Run payouts and referral maturation now.
    Answers 409 when a scheduled or manual run already holds the lock.
    """
    current_app.logger.info(f"Manual accrual run requested by admin {current_user.id}")
    summary = run_accrual(accrual_config(), notifier=notifier())
    body = summary_to_json(summary)
    if summary["status"] == "busy":
        return jsonify({"success": False, "error": "Accrual run already in progress", "summary": body}), 409
    return jsonify({"success": True, "summary": body}), 200


@admin_bp.route("/payouts", methods=["GET"])
@admin_required
def payout_logs():
    limit = request.args.get("limit", 100, type=int)
    limit = max(1, min(limit, 1000))
    try:
        records = (
            PayoutRecord.query
            .order_by(PayoutRecord.created_at.desc(), PayoutRecord.id.desc())
            .limit(limit)
            .all()
        )
    except Exception as e:
        logger.error(f"Error fetching payout logs: {e}", exc_info=True)
        return jsonify({"error": "Failed to fetch payout logs"}), 500

    return jsonify({
        "success": True,
        "payouts": [r.to_dict() for r in records],
        "total": len(records),
    }), 200


@admin_bp.route("/withdrawals/<int:entry_id>/approve", methods=["POST"])
@admin_required
def approve(entry_id):
    try:
        entry = approve_withdrawal(entry_id, notifier=notifier())
    except LedgerError as e:
        return error_response(e)
    current_app.logger.info(f"Withdrawal {entry_id} approved by admin {current_user.id}")
    return jsonify({"success": True, "withdrawal": entry.to_dict()}), 200


@admin_bp.route("/withdrawals/<int:entry_id>/reject", methods=["POST"])
@admin_required
def reject(entry_id):
    reason = json_body().get("reason")
    try:
        entry = reject_withdrawal(entry_id, reason=reason, notifier=notifier())
    except LedgerError as e:
        return error_response(e)
    current_app.logger.info(f"Withdrawal {entry_id} rejected by admin {current_user.id}")
    return jsonify({"success": True, "withdrawal": entry.to_dict()}), 200
