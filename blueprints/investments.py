from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
import logging

from models import InvestmentPlan, InvestmentPosition, PayoutRecord
from accrual.ledger import LedgerError, ValidationError
from accrual.positions import create_position, early_withdraw
from .api_helpers import accrual_config, notifier, error_response, json_body, paging

logger = logging.getLogger(__name__)

bp = Blueprint("investments", __name__, url_prefix="/investments")


@bp.route("/plans", methods=["GET"])
@login_required
def list_plans():
    plans = (
        InvestmentPlan.query
        .filter_by(status="active")
        .order_by(InvestmentPlan.min_amount.asc())
        .all()
    )
    return jsonify({"success": True, "plans": [p.to_dict() for p in plans]}), 200


def _optional_id(data, *keys):
    """First present key wins; 0 is kept so the lookup answers 404."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ValidationError(f"{key} must be an integer id")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"{key} must be an integer id") from e
    return None


@bp.route("", methods=["POST"])
@login_required
def invest():
    """
    Open a position from a plan (plan_id) or a legacy product (product_id).
    """
    data = json_body()
    amount = data.get("amount")

    if amount is None:
        return jsonify({"success": False, "error": "Amount is required"}), 400

    try:
        plan_id = _optional_id(data, "plan_id", "planId")
        product_id = _optional_id(data, "product_id", "productId")
        position = create_position(
            current_user.id, amount, accrual_config(),
            plan_id=plan_id, product_id=product_id,
            notifier=notifier(),
        )
    except LedgerError as e:
        return error_response(e)

    current_app.logger.info(f"User {current_user.id} opened investment {position.id}")
    return jsonify({
        "success": True,
        "message": "Investment created successfully",
        "investment": position.to_dict(),
    }), 201


@bp.route("", methods=["GET"])
@login_required
def my_investments():
    query = InvestmentPosition.query.filter_by(user_id=current_user.id)
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    positions = query.order_by(InvestmentPosition.created_at.desc(), InvestmentPosition.id.desc()).all()
    return jsonify({
        "success": True,
        "investments": [p.to_dict() for p in positions],
        "total": len(positions),
    }), 200


@bp.route("/<int:position_id>/withdraw", methods=["POST"])
@login_required
def withdraw_early(position_id):
    try:
        result = early_withdraw(
            position_id, accrual_config(), user_id=current_user.id,
            reason=json_body().get("reason"), notifier=notifier(),
        )
    except LedgerError as e:
        return error_response(e)

    return jsonify({
        "success": True,
        "message": "Investment withdrawn successfully",
        "investmentId": result["investmentId"],
        "amount": float(result["amount"]),
        "penalty": float(result["penalty"]),
        "returned": float(result["returned"]),
    }), 200


@bp.route("/payouts", methods=["GET"])
@login_required
def my_payouts():
    limit, skip = paging()
    query = PayoutRecord.query.filter_by(user_id=current_user.id)
    total = query.count()
    records = (
        query.order_by(PayoutRecord.created_at.desc(), PayoutRecord.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return jsonify({
        "success": True,
        "payouts": [r.to_dict() for r in records],
        "total": total,
        "limit": limit,
        "skip": skip,
    }), 200
