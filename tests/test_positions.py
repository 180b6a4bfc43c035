"""
Tests for position creation and early withdrawal
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from models import (
    InvestmentPosition, LedgerEntry, PayoutRecord,
    EntryKind, PositionStatus, PositionOrigin, PayoutKind,
)
from accrual.config import AccrualConfig
from accrual.ledger import (
    NotFoundError, ValidationError, InvariantViolation, InsufficientBalanceError,
)
from accrual.payout_processor import PayoutProcessor
from accrual.positions import create_position, early_withdraw, compute_early_withdrawal


class TestCreatePosition:

    def test_percentage_plan_terms(self, factory):
        user = factory.user(balance="5000")
        plan = factory.plan(daily_payout="2.5", is_percentage=True, duration_days=30)

        position = factory.position(user, plan, "1000")

        assert position.origin == PositionOrigin.PLAN.value
        assert position.daily_payout_amount == Decimal("25.00")
        assert position.start_date == NOW
        assert position.end_date == NOW + timedelta(days=30)
        assert position.next_payout_date == NOW + timedelta(days=1)
        assert position.status == PositionStatus.ACTIVE.value

    def test_fixed_plan_terms(self, factory):
        user = factory.user(balance="5000")
        plan = factory.plan(daily_payout="50", is_percentage=False)

        position = factory.position(user, plan, "1000")
        assert position.daily_payout_amount == Decimal("50.00")

    def test_legacy_product_terms(self, factory, config):
        user = factory.user(balance="5000")
        product = factory.product(roi_percent="36.5")

        position = create_position(user.id, "1000", config, product_id=product.id, now=NOW)

        assert position.origin == PositionOrigin.LEGACY_PRODUCT.value
        # 1000 * 36.5% / 365
        assert position.daily_payout_amount == Decimal("1.00")
        assert position.end_date == NOW + timedelta(days=365)

    def test_debit_and_investment_entry(self, factory):
        user = factory.user(balance="5000")
        plan = factory.plan()

        position = factory.position(user, plan, "1200")

        account = factory.account(user)
        assert account.spendable_balance == Decimal("3800.00")
        assert account.cumulative_invested == Decimal("1200.00")
        entry = LedgerEntry.query.filter_by(kind=EntryKind.INVESTMENT.value).one()
        assert entry.amount == Decimal("-1200.00")
        assert entry.reference == f"INV-PLAN-{position.id}"
        assert entry.position_id == position.id

    def test_insufficient_balance_leaves_nothing_behind(self, factory):
        user = factory.user(balance="100")
        plan = factory.plan()

        with pytest.raises(InsufficientBalanceError):
            factory.position(user, plan, "500")

        assert InvestmentPosition.query.count() == 0
        assert LedgerEntry.query.filter_by(kind=EntryKind.INVESTMENT.value).count() == 0
        assert factory.account(user).spendable_balance == Decimal("100.00")

    @pytest.mark.parametrize("amount", ["5", "200000", "-1"])
    def test_amount_outside_plan_bounds(self, factory, amount):
        user = factory.user(balance="1000")
        plan = factory.plan(min_amount="10", max_amount="100000")

        with pytest.raises(ValidationError):
            factory.position(user, plan, amount)

    def test_inactive_plan(self, factory):
        user = factory.user(balance="1000")
        plan = factory.plan(status="inactive")
        with pytest.raises(ValidationError):
            factory.position(user, plan, "100")

    def test_unknown_plan(self, factory, config):
        user = factory.user(balance="1000")
        with pytest.raises(NotFoundError):
            create_position(user.id, "100", config, plan_id=999, now=NOW)

    def test_plan_or_product_required(self, factory, config):
        user = factory.user(balance="1000")
        with pytest.raises(ValidationError):
            create_position(user.id, "100", config, now=NOW)


class TestCreationNotifications:

    def test_investor_and_admin_notified(self, factory, notifier):
        user = factory.user(balance="5000", name="Ada")
        position = factory.position(user, factory.plan(name="Growth"), "250")

        investor_note, admin_note = notifier.sent[-2:]
        assert investor_note["user_id"] == user.id
        assert investor_note["title"] == "Investment Created"
        assert investor_note["category"] == "investment"
        assert investor_note["metadata"] == {"investmentId": position.id, "amount": "250.00"}
        assert admin_note["user_id"] is None
        assert admin_note["title"] == "New Investment"
        assert admin_note["priority"] == "normal"
        assert "Ada" in admin_note["message"]

    def test_high_value_alert(self, factory, notifier):
        user = factory.user(balance="5000")
        factory.position(user, factory.plan(), "1000")

        admin_note = notifier.sent[-1]
        assert admin_note["user_id"] is None
        assert admin_note["title"] == "High-Value Investment Alert"
        assert admin_note["priority"] == "high"

    def test_failed_creation_sends_nothing(self, factory, notifier):
        user = factory.user(balance="100")
        sent_before = len(notifier.sent)

        with pytest.raises(InsufficientBalanceError):
            factory.position(user, factory.plan(), "500")

        assert len(notifier.sent) == sent_before


class TestEarlyWithdrawal:

    def test_penalty_split(self):
        assert compute_early_withdrawal("1000", Decimal("0.10")) == (Decimal("100.00"), Decimal("900.00"))

    def test_withdraw_1000(self, factory, config, notifier, db):
        user = factory.user(balance="1000")
        plan = factory.plan()
        position = factory.position(user, plan, "1000")

        result = early_withdraw(position.id, config, user_id=user.id, now=NOW + timedelta(hours=5))

        assert result["penalty"] == Decimal("100.00")
        assert result["returned"] == Decimal("900.00")
        account = factory.account(user)
        assert account.spendable_balance == Decimal("900.00")

        position = db.session.get(InvestmentPosition, position.id)
        assert position.status == PositionStatus.TERMINATED.value
        assert position.penalty_amount == Decimal("100.00")
        assert position.terminated_at == NOW + timedelta(hours=5)

        record = PayoutRecord.query.filter_by(position_id=position.id).one()
        assert record.kind == PayoutKind.WITHDRAWAL.value
        assert record.amount == Decimal("900.00")
        entry = LedgerEntry.query.filter_by(kind=EntryKind.EARLY_WITHDRAWAL.value).one()
        assert entry.amount == Decimal("900.00")
        assert notifier.sent[-1]["title"] == "Investment Withdrawn"

    def test_configurable_penalty(self, factory):
        user = factory.user(balance="1000")
        position = factory.position(user, factory.plan(), "1000")

        result = early_withdraw(position.id, AccrualConfig(early_withdrawal_penalty_rate=Decimal("0.25")), now=NOW)
        assert result["returned"] == Decimal("750.00")

    def test_terminated_is_permanent(self, factory, config):
        user = factory.user(balance="1000")
        position = factory.position(user, factory.plan(), "1000")
        early_withdraw(position.id, config, now=NOW)

        with pytest.raises(InvariantViolation):
            early_withdraw(position.id, config, now=NOW)

        summary = PayoutProcessor(config).run(now=NOW + timedelta(days=5))
        assert summary["processed"] == 0
        assert factory.account(user).spendable_balance == Decimal("900.00")

    def test_other_users_position(self, factory, config):
        owner = factory.user(balance="1000")
        stranger = factory.user()
        position = factory.position(owner, factory.plan(), "1000")

        with pytest.raises(NotFoundError):
            early_withdraw(position.id, config, user_id=stranger.id, now=NOW)

    def test_completed_position_cannot_be_withdrawn(self, factory, config, db):
        user = factory.user(balance="1000")
        position = factory.position(user, factory.plan(duration_days=1), "1000")

        PayoutProcessor(config).run(now=NOW + timedelta(days=1))
        db.session.expire_all()
        assert db.session.get(InvestmentPosition, position.id).status == PositionStatus.COMPLETED.value

        with pytest.raises(InvariantViolation):
            early_withdraw(position.id, config, now=NOW + timedelta(days=2))
