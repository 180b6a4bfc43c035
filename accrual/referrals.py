"""
Referral rewards: award on a referred user's first investment, then mature
pending rewards into spendable balance once their unlock date has passed and
the referrer is an investor.
"""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from extensions import db
from models import LedgerEntry, InvestmentPosition, User, EntryKind, EntryStatus
from utils import utcnow, to_money
from accrual.config import ReferralConfig
from accrual.ledger import (
    LedgerManager, LedgerError, NotFoundError, InvariantViolation,
    TransientPersistenceError, commit_or_rollback,
)
from accrual.notifications import notify

logger = logging.getLogger(__name__)

CAP_RETRIES = 3


def compute_referral_reward(amount, lifetime_earnings, config: ReferralConfig) -> Decimal:
    """
    Percentage of the investment, capped per referral and clipped so the
    referrer's lifetime earnings never pass the lifetime cap.
    """
    raw = to_money(to_money(amount) * config.reward_percent / Decimal("100"))
    reward = min(raw, to_money(config.max_reward_per_referral))
    headroom = to_money(config.max_earnings_lifetime) - to_money(lifetime_earnings)
    if headroom <= 0:
        return Decimal("0.00")
    return min(reward, headroom)


def _referrer_has_investment(referrer_id: int) -> bool:
    return db.session.query(
        InvestmentPosition.query.filter_by(user_id=referrer_id).exists()
    ).scalar()


def award_referral_reward(investor: User, position: InvestmentPosition, config: ReferralConfig,
                          now=None) -> Optional[LedgerEntry]:
    """
    Runs inside the investment-creation transaction, does not commit.
    Returns the Pending Referral entry, or None when the referrer is not eligible.
    """
    now = now or utcnow()
    referrer = db.session.get(User, investor.referred_by) if investor.referred_by else None
    if not referrer:
        return None

    if not referrer.is_verified:
        logger.info(f"Referrer {referrer.id} not verified, no reward for user {investor.id}")
        return None
    if not _referrer_has_investment(referrer.id):
        logger.info(f"Referrer {referrer.id} has no investment, no reward for user {investor.id}")
        return None

    account = LedgerManager.ensure_account(referrer.id)
    reward = None
    for _ in range(CAP_RETRIES):
        db.session.refresh(account)
        if (account.referral_count or 0) >= config.max_referrals_lifetime:
            logger.info(f"Referrer {referrer.id} reached the lifetime referral count cap")
            return None
        lifetime = to_money(account.lifetime_referral_earnings or 0)
        if lifetime >= to_money(config.max_earnings_lifetime):
            logger.info(f"Referrer {referrer.id} reached the lifetime earnings cap")
            return None

        reward = compute_referral_reward(position.amount, lifetime, config)
        if reward <= 0:
            return None

        # Caps are re-checked by the UPDATE itself; a concurrent award makes it match nothing
        if LedgerManager.credit_referral_pending(referrer.id, reward, config.max_referrals_lifetime,
                                                 config.max_earnings_lifetime):
            break
        logger.info(f"Referral caps of user {referrer.id} moved during award, re-reading account")
        reward = None

    if reward is None:
        logger.warning(f"Referral reward for investor {investor.id} dropped: caps of user {referrer.id} kept moving")
        return None

    entry = LedgerManager.append_entry(
        referrer.id, EntryKind.REFERRAL, reward, EntryStatus.PENDING,
        f"REF-PENDING-{investor.id}-{position.id}",
        description=f"Referral bonus from {investor.name or investor.email}",
        position_id=position.id,
        unlock_date=now + timedelta(days=config.unlock_days),
        now=now,
    )
    logger.info(f"Referral reward {reward} pending for user {referrer.id} (investor {investor.id})")
    return entry


class ReferralMaturationProcessor:
    """
    Moves matured Pending referral rewards into spendable balance.
    A reward whose referrer holds no investment stays Pending; it is checked
    again on every run.
    """

    def __init__(self, config: ReferralConfig = None, notifier=None):
        self.config = config or ReferralConfig()
        self.notifier = notifier

    def _due_entry_ids(self, now):
        rows = db.session.query(LedgerEntry.id).filter(
            LedgerEntry.kind == EntryKind.REFERRAL.value,
            LedgerEntry.status == EntryStatus.PENDING.value,
            LedgerEntry.unlock_date <= now,
        ).order_by(LedgerEntry.unlock_date.asc(), LedgerEntry.id.asc()).all()
        return [row[0] for row in rows]

    def run(self, now=None) -> dict:
        now = now or utcnow()
        summary = {"unlocked": 0, "still_pending": 0, "errors": 0, "total_unlocked": Decimal("0.00")}

        try:
            entry_ids = self._due_entry_ids(now)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Could not load matured referral rewards: {e}", exc_info=True)
            summary["errors"] += 1
            return summary

        for entry_id in entry_ids:
            try:
                outcome, amount = self._mature(entry_id)
            except (NotFoundError, TransientPersistenceError) as e:
                db.session.rollback()
                logger.warning(f"Referral reward {entry_id} skipped: {e}")
                summary["errors"] += 1
                continue
            except InvariantViolation as e:
                db.session.rollback()
                logger.error(f"Referral reward {entry_id} invariant violated: {e}")
                summary["errors"] += 1
                continue
            except Exception as e:
                db.session.rollback()
                logger.error(f"Unexpected error maturing referral reward {entry_id}: {e}", exc_info=True)
                summary["errors"] += 1
                continue

            if outcome == "unlocked":
                summary["unlocked"] += 1
                summary["total_unlocked"] += amount
            elif outcome == "pending":
                summary["still_pending"] += 1

        logger.info(
            f"Referral maturation: {summary['unlocked']} unlocked ({summary['total_unlocked']}), "
            f"{summary['still_pending']} still pending, {summary['errors']} errors"
        )
        return summary

    def _mature(self, entry_id: int):
        entry = db.session.get(LedgerEntry, entry_id)
        if not entry:
            raise NotFoundError(f"Referral entry {entry_id} vanished")
        if entry.status != EntryStatus.PENDING.value:
            return "skipped", None

        referrer_id = entry.user_id
        amount = to_money(entry.amount)

        if not _referrer_has_investment(referrer_id):
            logger.info(f"Referral reward {entry_id} stays pending: user {referrer_id} has no investment")
            return "pending", None

        try:
            if not LedgerManager.transition_entry(
                entry_id, EntryStatus.PENDING, EntryStatus.COMPLETED,
                description=(entry.description or "Referral bonus") + " - Unlocked",
            ):
                # Matured by a concurrent run
                db.session.rollback()
                return "skipped", None
            LedgerManager.unlock_referral(referrer_id, amount)
            commit_or_rollback(f"Referral unlock {entry_id}")
        except LedgerError:
            db.session.rollback()
            raise

        logger.info(f"Referral reward {entry_id}: {amount} unlocked for user {referrer_id}")
        notify(self.notifier, referrer_id, "Referral Bonus Unlocked",
               f"Your referral bonus of ${amount} is now available in your balance.",
               "referral", "normal", {"entryId": entry_id, "amount": str(amount)})
        return "unlocked", amount
