"""
Tests for referral award creation and maturation
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from models import LedgerEntry, LedgerAccount, EntryKind, EntryStatus
from utils import to_money
from accrual import referrals
from accrual.config import AccrualConfig, ReferralConfig
from accrual.ledger import LedgerManager
from accrual.referrals import compute_referral_reward, ReferralMaturationProcessor


def _referral_entries():
    return LedgerEntry.query.filter_by(kind=EntryKind.REFERRAL.value).all()


@pytest.fixture
def referrer(factory):
    user = factory.user(balance="1000", name="Referrer")
    factory.position(user, factory.plan(name="Starter"), "100")
    return user


class TestRewardAmount:

    def test_percentage_capped_per_referral(self):
        assert compute_referral_reward("1000", "0", ReferralConfig()) == Decimal("30.00")
        assert compute_referral_reward("10000", "0", ReferralConfig()) == Decimal("100.00")

    def test_clipped_to_lifetime_cap(self):
        config = ReferralConfig(max_reward_per_referral=Decimal("1000"))
        # raw 3% of 10,000 is 300; only 50 left under the 10,000 cap
        assert compute_referral_reward("10000", "9950", config) == Decimal("50.00")

    def test_cap_reached(self):
        assert compute_referral_reward("10000", "10000", ReferralConfig()) == Decimal("0.00")


class TestAward:

    def test_first_investment_awards_pending_reward(self, factory, referrer, notifier):
        investor = factory.user(referred_by=referrer, balance="20000")
        position = factory.position(investor, factory.plan(), "10000")

        entry = LedgerEntry.query.filter_by(kind=EntryKind.REFERRAL.value).one()
        assert entry.user_id == referrer.id
        assert entry.status == EntryStatus.PENDING.value
        assert entry.amount == Decimal("100.00")
        assert entry.unlock_date == NOW + timedelta(days=14)
        assert entry.reference == f"REF-PENDING-{investor.id}-{position.id}"

        account = factory.account(referrer)
        assert account.referral_pending_balance == Decimal("100.00")
        assert account.lifetime_referral_earnings == Decimal("100.00")
        assert account.referral_count == 1
        assert notifier.sent[-1]["user_id"] == referrer.id
        assert notifier.sent[-1]["title"] == "Referral Bonus Pending"

    def test_clipped_by_lifetime_earnings(self, factory, referrer, db):
        LedgerAccount.query.filter_by(user_id=referrer.id).update(
            {LedgerAccount.lifetime_referral_earnings: Decimal("9950")})
        db.session.commit()

        investor = factory.user(referred_by=referrer, balance="20000")
        factory.position(investor, factory.plan(), "10000")

        assert _referral_entries()[0].amount == Decimal("50.00")
        assert factory.account(referrer).lifetime_referral_earnings == Decimal("10000.00")

    def test_only_first_investment(self, factory, referrer):
        investor = factory.user(referred_by=referrer, balance="5000")
        plan = factory.plan()
        factory.position(investor, plan, "1000")
        factory.position(investor, plan, "1000")

        assert len(_referral_entries()) == 1

    def test_unverified_referrer(self, factory, referrer, db):
        referrer.is_verified = False
        db.session.commit()

        investor = factory.user(referred_by=referrer, balance="5000")
        factory.position(investor, factory.plan(), "1000")
        assert _referral_entries() == []

    def test_referrer_without_investment(self, factory):
        referrer = factory.user()
        investor = factory.user(referred_by=referrer, balance="5000")
        factory.position(investor, factory.plan(), "1000")
        assert _referral_entries() == []

    def test_referral_count_cap(self, factory, referrer):
        config = AccrualConfig(referral=ReferralConfig(max_referrals_lifetime=1))
        plan = factory.plan()
        for _ in range(3):
            investor = factory.user(referred_by=referrer, balance="5000")
            factory.position(investor, plan, "1000", config=config)

        assert len(_referral_entries()) == 1
        assert factory.account(referrer).referral_count == 1


class TestCapsUnderConcurrentAwards:
    """Another award lands between reading the account and crediting it."""

    @staticmethod
    def _race(monkeypatch, referrer, **bumps):
        original = referrals.compute_referral_reward
        calls = []

        def racing(amount, lifetime, config):
            if not calls:
                LedgerAccount.query.filter_by(user_id=referrer.id).update(
                    {getattr(LedgerAccount, column): getattr(LedgerAccount, column) + delta
                     for column, delta in bumps.items()},
                    synchronize_session=False)
            calls.append(lifetime)
            return original(amount, lifetime, config)

        monkeypatch.setattr(referrals, "compute_referral_reward", racing)
        return calls

    def test_reward_reclipped_to_remaining_earnings(self, factory, referrer, db, monkeypatch):
        LedgerAccount.query.filter_by(user_id=referrer.id).update(
            {LedgerAccount.lifetime_referral_earnings: Decimal("9950")})
        db.session.commit()
        config = AccrualConfig(referral=ReferralConfig(max_reward_per_referral=Decimal("1000")))
        investor = factory.user(referred_by=referrer, balance="20000")
        calls = self._race(monkeypatch, referrer, lifetime_referral_earnings=Decimal("40"))

        factory.position(investor, factory.plan(), "10000", config=config)

        assert [to_money(c) for c in calls] == [Decimal("9950.00"), Decimal("9990.00")]
        entries = _referral_entries()
        assert [e.amount for e in entries] == [Decimal("10.00")]
        account = factory.account(referrer)
        assert account.lifetime_referral_earnings == Decimal("10000.00")
        assert account.referral_pending_balance == Decimal("10.00")
        assert account.referral_count == 1

    def test_count_cap_taken_by_concurrent_award(self, factory, referrer, monkeypatch):
        config = AccrualConfig(referral=ReferralConfig(max_referrals_lifetime=1))
        investor = factory.user(referred_by=referrer, balance="5000")
        self._race(monkeypatch, referrer, referral_count=1)

        position = factory.position(investor, factory.plan(), "1000", config=config)

        assert position.id is not None
        assert _referral_entries() == []
        account = factory.account(referrer)
        assert account.referral_count == 1
        assert account.referral_pending_balance == Decimal("0.00")
        # the investment itself still went through
        assert factory.account(investor).spendable_balance == Decimal("4000.00")


class TestMaturation:

    def test_matured_reward_is_unlocked(self, factory, referrer, notifier):
        investor = factory.user(referred_by=referrer, balance="5000")
        factory.position(investor, factory.plan(), "1000")
        processor = ReferralMaturationProcessor(ReferralConfig(), notifier=notifier)

        early = processor.run(now=NOW + timedelta(days=13))
        assert early["unlocked"] == 0

        summary = processor.run(now=NOW + timedelta(days=14))
        assert summary["unlocked"] == 1
        assert summary["total_unlocked"] == Decimal("30.00")

        entry = _referral_entries()[0]
        assert entry.status == EntryStatus.COMPLETED.value
        account = factory.account(referrer)
        assert account.referral_pending_balance == Decimal("0.00")
        # 1000 deposit - 100 invested + 30 unlocked
        assert account.spendable_balance == Decimal("930.00")
        assert notifier.sent[-1]["title"] == "Referral Bonus Unlocked"

    def test_unlock_happens_once(self, factory, referrer):
        investor = factory.user(referred_by=referrer, balance="5000")
        factory.position(investor, factory.plan(), "1000")
        processor = ReferralMaturationProcessor(ReferralConfig())

        processor.run(now=NOW + timedelta(days=20))
        again = processor.run(now=NOW + timedelta(days=21))

        assert again["unlocked"] == 0
        assert factory.account(referrer).spendable_balance == Decimal("930.00")

    def test_referrer_without_positions_stays_pending(self, factory, db):
        referrer = factory.user()
        LedgerManager.credit_referral_pending(referrer.id, Decimal("25"), 50, Decimal("10000"))
        entry = LedgerManager.append_entry(
            referrer.id, EntryKind.REFERRAL, Decimal("25"), EntryStatus.PENDING,
            "REF-PENDING-ORPHAN", unlock_date=NOW, now=NOW - timedelta(days=14),
        )
        db.session.commit()

        summary = ReferralMaturationProcessor(ReferralConfig()).run(now=NOW + timedelta(days=30))

        assert summary["still_pending"] == 1
        assert summary["unlocked"] == 0
        assert db.session.get(LedgerEntry, entry.id).status == EntryStatus.PENDING.value
        account = factory.account(referrer)
        assert account.referral_pending_balance == Decimal("25.00")
        assert account.spendable_balance == Decimal("0.00")


class TestMaturationFailureIsolation:

    def test_failing_reward_does_not_stop_batch(self, factory, referrer, db, notifier):
        plan = factory.plan()
        other = factory.user(balance="1000", name="Other referrer")
        factory.position(other, plan, "100")
        factory.position(factory.user(referred_by=referrer, balance="5000"), plan, "1000")
        factory.position(factory.user(referred_by=other, balance="5000"), plan, "1000")
        healthy_entry, broken_entry = sorted(_referral_entries(), key=lambda e: e.user_id != referrer.id)

        LedgerAccount.query.filter_by(user_id=other.id).delete()
        db.session.commit()

        summary = ReferralMaturationProcessor(ReferralConfig(), notifier=notifier).run(
            now=NOW + timedelta(days=14))

        assert summary["unlocked"] == 1
        assert summary["errors"] == 1
        assert summary["total_unlocked"] == Decimal("30.00")
        assert db.session.get(LedgerEntry, healthy_entry.id).status == EntryStatus.COMPLETED.value
        assert factory.account(referrer).spendable_balance == Decimal("930.00")
        # Rolled back; retried on the next run
        assert db.session.get(LedgerEntry, broken_entry.id).status == EntryStatus.PENDING.value
        assert LedgerAccount.query.filter_by(user_id=other.id).count() == 0
        assert [n["user_id"] for n in notifier.sent if n["title"] == "Referral Bonus Unlocked"] == [referrer.id]
