# accrual/positions.py
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from extensions import db
from models import (
    InvestmentPlan, Product, InvestmentPosition, PayoutRecord, User,
    EntryKind, EntryStatus, PositionStatus, PositionOrigin, PayoutKind,
)
from utils import utcnow, to_money
from accrual.config import AccrualConfig
from accrual.ledger import (
    LedgerManager, LedgerError, NotFoundError, InvariantViolation,
    ValidationError, commit_or_rollback,
)
from accrual.notifications import notify
from accrual.referrals import award_referral_reward

logger = logging.getLogger(__name__)

PAYOUT_CYCLE = timedelta(days=1)
LEGACY_DEFAULT_DURATION_DAYS = 365
HIGH_VALUE_INVESTMENT = Decimal("1000")


# ==========================================================
#                  TERMS
# ==========================================================
def resolve_daily_payout(plan: InvestmentPlan, amount: Decimal) -> Decimal:
    """Daily payout fixed at creation: percentage of the amount or a flat figure."""
    rate = Decimal(str(plan.daily_payout))
    if plan.is_percentage:
        return to_money(amount * rate / Decimal("100"))
    return to_money(rate)


def resolve_legacy_daily_payout(product: Product, amount: Decimal) -> Decimal:
    """Annual ROI spread evenly over 365 days."""
    roi = Decimal(str(product.roi_percent))
    return (amount * roi / Decimal("100") / Decimal("365")).quantize(Decimal("0.01"), ROUND_HALF_UP)


def _check_bounds(amount: Decimal, minimum, maximum, name: str) -> None:
    if amount <= 0:
        raise ValidationError("Investment amount must be positive")
    if minimum is not None and amount < Decimal(str(minimum)):
        raise ValidationError(f"Minimum investment for {name} is ${to_money(minimum)}")
    if maximum is not None and amount > Decimal(str(maximum)):
        raise ValidationError(f"Maximum investment for {name} is ${to_money(maximum)}")


def _build_position(user_id: int, amount: Decimal, now, plan_id=None, product_id=None):
    if plan_id is not None:
        plan = db.session.get(InvestmentPlan, plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        if plan.status != "active":
            raise ValidationError(f"Plan {plan.name} is not available")
        _check_bounds(amount, plan.min_amount, plan.max_amount, plan.name)

        return InvestmentPosition(
            user_id=user_id,
            origin=PositionOrigin.PLAN.value,
            plan_id=plan.id,
            plan_name=plan.name,
            amount=amount,
            daily_payout_amount=resolve_daily_payout(plan, amount),
            start_date=now,
            end_date=now + timedelta(days=plan.duration_days),
            next_payout_date=now + PAYOUT_CYCLE,
            total_payout_received=Decimal("0"),
            payout_count=0,
            status=PositionStatus.ACTIVE.value,
        )

    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    if product.status != "active":
        raise ValidationError(f"Product {product.name} is not available")
    _check_bounds(amount, product.min_amount, product.max_amount, product.name)

    duration = product.duration_days or LEGACY_DEFAULT_DURATION_DAYS
    return InvestmentPosition(
        user_id=user_id,
        origin=PositionOrigin.LEGACY_PRODUCT.value,
        product_id=product.id,
        plan_name=product.name,
        amount=amount,
        daily_payout_amount=resolve_legacy_daily_payout(product, amount),
        start_date=now,
        end_date=now + timedelta(days=duration),
        next_payout_date=now + PAYOUT_CYCLE,
        total_payout_received=Decimal("0"),
        payout_count=0,
        status=PositionStatus.ACTIVE.value,
    )


# ==========================================================
#                  CREATION
# ==========================================================
def create_position(user_id: int, amount, config: AccrualConfig, plan_id: Optional[int] = None,
                    product_id: Optional[int] = None, now=None, notifier=None) -> InvestmentPosition:
    """
    Open a position and debit the investor in one transaction.
    The first position a user ever opens may also award their referrer.
    """
    if (plan_id is None) == (product_id is None):
        raise ValidationError("Exactly one of plan_id or product_id is required")
    try:
        amount = to_money(amount)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    now = now or utcnow()
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    try:
        is_first_investment = InvestmentPosition.query.filter_by(user_id=user_id).count() == 0
        LedgerManager.ensure_account(user_id)

        position = _build_position(user_id, amount, now, plan_id=plan_id, product_id=product_id)
        db.session.add(position)
        db.session.flush()

        LedgerManager.debit_investment(user_id, amount)
        prefix = "INV-PLAN" if position.origin == PositionOrigin.PLAN.value else "INV-PROD"
        LedgerManager.append_entry(
            user_id, EntryKind.INVESTMENT, -amount, EntryStatus.COMPLETED,
            f"{prefix}-{position.id}",
            description=f"Investment in {position.plan_name}",
            position_id=position.id, now=now,
        )

        reward = None
        if is_first_investment and user.referred_by:
            reward = award_referral_reward(user, position, config.referral, now=now)

        commit_or_rollback(f"Investment by user {user_id}")
    except LedgerError:
        db.session.rollback()
        raise

    logger.info(
        f"Position {position.id} opened: user {user_id} invested {amount} in {position.plan_name} "
        f"(daily {position.daily_payout_amount}, ends {position.end_date.date()})"
    )
    notify(notifier, user_id, "Investment Created",
           f"You invested ${amount} in {position.plan_name}.",
           "investment", "normal", {"investmentId": position.id, "amount": str(amount)})
    high_value = amount >= HIGH_VALUE_INVESTMENT
    notify(notifier, None,
           "High-Value Investment Alert" if high_value else "New Investment",
           f"{user.name or user.email} invested ${amount} in {position.plan_name}.",
           "investment", "high" if high_value else "normal",
           {"investmentId": position.id, "userId": user_id, "amount": str(amount)})
    if reward is not None:
        notify(notifier, user.referred_by, "Referral Bonus Pending",
               f"You earned a ${to_money(reward.amount)} referral bonus. "
               f"It unlocks on {reward.unlock_date.date()}.",
               "referral", "normal", {"entryId": reward.id, "referredUserId": user_id})
    return position


# ==========================================================
#                  EARLY WITHDRAWAL
# ==========================================================
def compute_early_withdrawal(amount, penalty_rate) -> tuple:
    amount = to_money(amount)
    penalty = to_money(amount * Decimal(str(penalty_rate)))
    return penalty, amount - penalty


def early_withdraw(position_id: int, config: AccrualConfig, user_id: Optional[int] = None,
                   reason: str = None, now=None, notifier=None) -> dict:
    """
    Terminate an active position, keep the penalty and credit the rest.
    The status change is conditioned on status='active', so a payout that
    completes the position first makes this call fail, and vice versa.
    """
    now = now or utcnow()
    position = db.session.get(InvestmentPosition, position_id)
    if not position or (user_id is not None and position.user_id != user_id):
        raise NotFoundError(f"Investment {position_id} not found")
    if not position.is_active:
        raise InvariantViolation(f"Investment {position_id} is {position.status}, cannot withdraw")

    owner_id = position.user_id
    plan_name = position.plan_name
    penalty, returned = compute_early_withdrawal(position.amount, config.early_withdrawal_penalty_rate)
    reason = reason or "Early withdrawal by user"

    try:
        updated = InvestmentPosition.query.filter(
            InvestmentPosition.id == position_id,
            InvestmentPosition.status == PositionStatus.ACTIVE.value,
        ).update({
            InvestmentPosition.status: PositionStatus.TERMINATED.value,
            InvestmentPosition.terminated_at: now,
            InvestmentPosition.termination_reason: reason,
            InvestmentPosition.penalty_amount: penalty,
            InvestmentPosition.updated_at: now,
        }, synchronize_session=False)
        if updated == 0:
            raise InvariantViolation(f"Investment {position_id} is no longer active")

        LedgerManager.credit_principal(owner_id, returned)
        LedgerManager.append_entry(
            owner_id, EntryKind.EARLY_WITHDRAWAL, returned, EntryStatus.COMPLETED,
            f"EWD-{position_id}",
            description=f"Early withdrawal from {plan_name} (penalty ${penalty})",
            position_id=position_id, now=now,
        )
        db.session.add(PayoutRecord(
            user_id=owner_id,
            position_id=position_id,
            amount=returned,
            kind=PayoutKind.WITHDRAWAL.value,
            notes=f"Early withdrawal - penalty: ${penalty}",
            created_at=now,
        ))
        commit_or_rollback(f"Early withdrawal of investment {position_id}")
    except LedgerError:
        db.session.rollback()
        raise

    db.session.expire(position)
    logger.info(f"Investment {position_id} terminated early: penalty {penalty}, returned {returned}")
    notify(notifier, owner_id, "Investment Withdrawn",
           f"You withdrew ${returned} from {plan_name}. Penalty: ${penalty}.",
           "investment", "high",
           {"investmentId": position_id, "penalty": str(penalty), "returned": str(returned)})

    return {
        "investmentId": position_id,
        "amount": to_money(position.amount),
        "penalty": penalty,
        "returned": returned,
    }
