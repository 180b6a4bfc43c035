from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
import logging

from models import LedgerEntry
from accrual.ledger import LedgerError, LedgerManager, request_withdrawal
from .api_helpers import accrual_config, notifier, error_response, json_body, paging

logger = logging.getLogger(__name__)

bp = Blueprint("wallet", __name__, url_prefix="/wallet")


@bp.route("", methods=["GET"])
@login_required
def my_wallet():
    try:
        account = LedgerManager.get_account(current_user.id)
    except LedgerError as e:
        return error_response(e)
    return jsonify({"success": True, "wallet": account.to_dict()}), 200


@bp.route("/withdrawals", methods=["POST"])
@login_required
def create_withdrawal():
    """
    Lock the requested amount pending admin approval.
    """
    amount = json_body().get("amount")
    if amount is None:
        return jsonify({"success": False, "error": "Amount is required"}), 400

    config = accrual_config()
    try:
        entry = request_withdrawal(current_user.id, amount, config, notifier=notifier())
    except LedgerError as e:
        return error_response(e)

    current_app.logger.info(f"User {current_user.id} requested withdrawal {entry.reference}")
    return jsonify({
        "success": True,
        "message": "Withdrawal request submitted successfully",
        "withdrawal": entry.to_dict(),
    }), 201


@bp.route("/transactions", methods=["GET"])
@login_required
def my_transactions():
    limit, skip = paging()
    query = LedgerEntry.query.filter_by(user_id=current_user.id)
    kind = request.args.get("kind")
    if kind:
        query = query.filter_by(kind=kind)
    total = query.count()
    entries = (
        query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return jsonify({
        "success": True,
        "transactions": [e.to_dict() for e in entries],
        "total": total,
    }), 200
