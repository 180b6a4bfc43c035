"""
Ledger account mutations and the append-only entry log.

Every balance change is a single UPDATE that increments (or conditionally
decrements) the columns in place, so concurrent writers never lose updates and
no balance can go below zero. The primitives below do not commit; they run
inside the caller's transaction. The user-facing operations at the bottom of
the module (deposits and withdrawals) commit on their own.
"""
import uuid
import logging
from decimal import Decimal
from typing import Optional
from sqlalchemy.exc import IntegrityError, OperationalError

from extensions import db
from models import LedgerAccount, LedgerEntry, User, EntryKind, EntryStatus
from utils import utcnow, to_money
from accrual.notifications import notify

logger = logging.getLogger(__name__)

# ==========================================================
#                  EXCEPTIONS
# ==========================================================
class LedgerError(Exception):
    """Base ledger exception"""
    pass

class TransientPersistenceError(LedgerError):
    """Write conflict; the item is left for the next run."""
    pass

class NotFoundError(LedgerError):
    pass

class InvariantViolation(LedgerError):
    pass

class InsufficientBalanceError(InvariantViolation):
    pass

class ValidationError(LedgerError):
    pass

class DuplicateReferenceError(LedgerError):
    pass


_NON_NEGATIVE = (
    "spendable_balance",
    "locked_balance",
    "referral_pending_balance",
)


# ==========================================================
#                  ACCOUNT PRIMITIVES
# ==========================================================
class LedgerManager:

    @staticmethod
    def get_account(user_id: int) -> LedgerAccount:
        account = LedgerAccount.query.filter_by(user_id=user_id).first()
        if not account:
            raise NotFoundError(f"Ledger account for user {user_id} not found")
        return account

    @staticmethod
    def ensure_account(user_id: int) -> LedgerAccount:
        """Get or create the user's account inside the current transaction."""
        account = LedgerAccount.query.filter_by(user_id=user_id).first()
        if account:
            return account

        if db.session.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        try:
            with db.session.begin_nested():
                account = LedgerAccount(user_id=user_id)
                db.session.add(account)
        except IntegrityError:
            # Created concurrently by another writer
            account = LedgerAccount.query.filter_by(user_id=user_id).first()
            if not account:
                raise TransientPersistenceError(f"Could not create account for user {user_id}")
        return account

    @staticmethod
    def _apply(user_id: int, reason: str, **deltas) -> None:
        """
        Atomic read-modify-write on one account row.
        Negative deltas on guarded columns are applied only while the column
        still covers them.
        """
        values = {}
        guards = []
        for column_name, delta in deltas.items():
            delta = to_money(delta, column_name) if column_name != "referral_count" else int(delta)
            if not delta:
                continue
            column = getattr(LedgerAccount, column_name)
            values[column] = column + delta
            if delta < 0 and column_name in _NON_NEGATIVE:
                guards.append(column >= -delta)

        if not values:
            return

        values[LedgerAccount.updated_at] = utcnow()
        try:
            updated = LedgerAccount.query.filter(
                LedgerAccount.user_id == user_id, *guards
            ).update(values, synchronize_session=False)
        except OperationalError as e:
            raise TransientPersistenceError(f"Account {user_id} update conflict during {reason}: {e}") from e
        except IntegrityError as e:
            raise InvariantViolation(f"Account {user_id} constraint violated during {reason}: {e}") from e

        if updated == 0:
            if LedgerAccount.query.filter_by(user_id=user_id).count() == 0:
                raise NotFoundError(f"Ledger account for user {user_id} not found")
            raise InsufficientBalanceError(f"{reason} would drive a balance of user {user_id} negative")

        LedgerManager._expire_cached(user_id)

    @staticmethod
    def _expire_cached(user_id: int) -> None:
        for obj in list(db.session.identity_map.values()):
            if isinstance(obj, LedgerAccount) and obj.user_id == user_id:
                db.session.expire(obj)

    # --- the legal mutations -------------------------------------------------

    @staticmethod
    def credit_deposit_balance(user_id: int, amount: Decimal) -> None:
        LedgerManager._apply(user_id, "deposit credit", spendable_balance=amount)

    @staticmethod
    def debit_investment(user_id: int, amount: Decimal) -> None:
        LedgerManager._apply(user_id, "investment debit",
                             spendable_balance=-amount, cumulative_invested=amount)

    @staticmethod
    def credit_return(user_id: int, amount: Decimal) -> None:
        LedgerManager._apply(user_id, "payout credit",
                             spendable_balance=amount, cumulative_returned=amount)

    @staticmethod
    def credit_principal(user_id: int, amount: Decimal) -> None:
        """Early-withdrawal credit of the penalty-adjusted principal."""
        LedgerManager._apply(user_id, "early withdrawal credit", spendable_balance=amount)

    @staticmethod
    def lock_funds(user_id: int, amount: Decimal) -> None:
        LedgerManager._apply(user_id, "withdrawal lock",
                             spendable_balance=-amount, locked_balance=amount)

    @staticmethod
    def release_locked(user_id: int, amount: Decimal) -> None:
        """Locked funds leave the platform (withdrawal approved)."""
        LedgerManager._apply(user_id, "withdrawal release", locked_balance=-amount)

    @staticmethod
    def return_locked(user_id: int, amount: Decimal) -> None:
        """Locked funds go back to spendable (withdrawal rejected)."""
        LedgerManager._apply(user_id, "withdrawal return",
                             locked_balance=-amount, spendable_balance=amount)

    @staticmethod
    def credit_referral_pending(user_id: int, amount: Decimal, max_count: int,
                                max_earnings: Decimal) -> bool:
        """
        Pending referral credit applied only while the account stays under
        both lifetime caps. Returns False when a cap no longer admits it.
        """
        amount = to_money(amount, "referral credit")
        lifetime = LedgerAccount.lifetime_referral_earnings
        try:
            updated = LedgerAccount.query.filter(
                LedgerAccount.user_id == user_id,
                LedgerAccount.referral_count < int(max_count),
                lifetime + amount <= to_money(max_earnings),
            ).update({
                LedgerAccount.referral_pending_balance: LedgerAccount.referral_pending_balance + amount,
                lifetime: lifetime + amount,
                LedgerAccount.referral_count: LedgerAccount.referral_count + 1,
                LedgerAccount.updated_at: utcnow(),
            }, synchronize_session=False)
        except OperationalError as e:
            raise TransientPersistenceError(f"Account {user_id} update conflict during referral credit: {e}") from e
        except IntegrityError as e:
            raise InvariantViolation(f"Account {user_id} constraint violated during referral credit: {e}") from e

        if updated == 0:
            if LedgerAccount.query.filter_by(user_id=user_id).count() == 0:
                raise NotFoundError(f"Ledger account for user {user_id} not found")
            return False

        LedgerManager._expire_cached(user_id)
        return True

    @staticmethod
    def unlock_referral(user_id: int, amount: Decimal) -> None:
        LedgerManager._apply(user_id, "referral unlock",
                             referral_pending_balance=-amount, spendable_balance=amount)

    # --- entry log -------------------------------------------------------------

    @staticmethod
    def append_entry(user_id: int, kind: EntryKind, amount: Decimal, status: EntryStatus,
                     reference: str, description: str = None, position_id: int = None,
                     unlock_date=None, now=None) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            kind=kind.value,
            amount=to_money(amount),
            status=status.value,
            reference=reference,
            description=description,
            position_id=position_id,
            unlock_date=unlock_date,
            created_at=now or utcnow(),
        )
        try:
            with db.session.begin_nested():
                db.session.add(entry)
        except IntegrityError as e:
            raise DuplicateReferenceError(f"Ledger reference {reference} already exists") from e
        return entry

    @staticmethod
    def transition_entry(entry_id: int, from_status: EntryStatus, to_status: EntryStatus,
                         description: str = None) -> bool:
        """Conditional status change; False when another writer moved the entry first."""
        values = {LedgerEntry.status: to_status.value}
        if description is not None:
            values[LedgerEntry.description] = description
        updated = LedgerEntry.query.filter(
            LedgerEntry.id == entry_id,
            LedgerEntry.status == from_status.value,
        ).update(values, synchronize_session=False)
        for obj in list(db.session.identity_map.values()):
            if isinstance(obj, LedgerEntry) and obj.id == entry_id:
                db.session.expire(obj)
        return updated == 1

    @staticmethod
    def find_by_reference(reference: str) -> Optional[LedgerEntry]:
        return LedgerEntry.query.filter_by(reference=reference).first()


# ==========================================================
#                  USER-FACING OPERATIONS
# ==========================================================
def _validated_amount(amount) -> Decimal:
    try:
        return to_money(amount)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def commit_or_rollback(action: str):
    try:
        db.session.commit()
    except OperationalError as e:
        db.session.rollback()
        raise TransientPersistenceError(f"{action} failed on write conflict: {e}") from e
    except IntegrityError as e:
        db.session.rollback()
        raise InvariantViolation(f"{action} violated a ledger constraint: {e}") from e


def credit_deposit(user_id: int, amount, reference: str, description: str = None,
                   now=None, notifier=None) -> LedgerEntry:
    """
    Record a confirmed deposit produced by a payment collaborator.
    Replaying a known reference returns the original entry without crediting again.
    """
    amount = _validated_amount(amount)
    if amount <= 0:
        raise ValidationError("Deposit amount must be positive")

    existing = LedgerManager.find_by_reference(reference)
    if existing:
        logger.info(f"Deposit {reference} already recorded, skipping")
        return existing

    now = now or utcnow()
    try:
        LedgerManager.ensure_account(user_id)
        LedgerManager.credit_deposit_balance(user_id, amount)
        entry = LedgerManager.append_entry(
            user_id, EntryKind.DEPOSIT, amount, EntryStatus.COMPLETED, reference,
            description=description or "Deposit confirmed", now=now,
        )
        commit_or_rollback(f"Deposit {reference}")
    except DuplicateReferenceError:
        # Lost the race against an identical delivery
        db.session.rollback()
        return LedgerManager.find_by_reference(reference)
    except LedgerError:
        db.session.rollback()
        raise

    logger.info(f"Deposit {reference}: user {user_id} credited {amount}")
    notify(notifier, user_id, "Deposit Confirmed",
           f"Your deposit of ${amount} has been credited to your balance.",
           "deposit", "normal", {"entryId": entry.id, "reference": reference})
    return entry


def request_withdrawal(user_id: int, amount, config, now=None, notifier=None) -> LedgerEntry:
    """Move funds from spendable to locked and log a Pending withdrawal."""
    amount = _validated_amount(amount)
    if amount < config.withdrawal_min:
        raise ValidationError(f"Minimum withdrawal is ${config.withdrawal_min}")
    if amount > config.withdrawal_max:
        raise ValidationError(f"Maximum withdrawal is ${config.withdrawal_max}")

    now = now or utcnow()
    reference = f"WTH-{user_id}-{uuid.uuid4().hex[:12].upper()}"
    try:
        LedgerManager.get_account(user_id)
        LedgerManager.lock_funds(user_id, amount)
        entry = LedgerManager.append_entry(
            user_id, EntryKind.WITHDRAWAL, -amount, EntryStatus.PENDING, reference,
            description="Withdrawal request", now=now,
        )
        commit_or_rollback(f"Withdrawal {reference}")
    except LedgerError:
        db.session.rollback()
        raise

    logger.info(f"Withdrawal {reference}: user {user_id} locked {amount}")
    notify(notifier, user_id, "Withdrawal Requested",
           f"Your withdrawal of ${amount} has been submitted.",
           "withdrawal", "high", {"entryId": entry.id})
    return entry


def _pending_withdrawal(entry_id: int) -> LedgerEntry:
    entry = db.session.get(LedgerEntry, entry_id)
    if not entry or entry.kind != EntryKind.WITHDRAWAL.value:
        raise NotFoundError(f"Withdrawal {entry_id} not found")
    if entry.status != EntryStatus.PENDING.value:
        raise InvariantViolation(f"Withdrawal {entry_id} already processed ({entry.status})")
    return entry


def approve_withdrawal(entry_id: int, notifier=None) -> LedgerEntry:
    entry = _pending_withdrawal(entry_id)
    amount = abs(to_money(entry.amount))
    user_id = entry.user_id
    try:
        if not LedgerManager.transition_entry(entry_id, EntryStatus.PENDING, EntryStatus.COMPLETED):
            raise TransientPersistenceError(f"Withdrawal {entry_id} was processed concurrently")
        LedgerManager.release_locked(user_id, amount)
        commit_or_rollback(f"Withdrawal approval {entry_id}")
    except LedgerError:
        db.session.rollback()
        raise

    logger.info(f"Withdrawal {entry_id} approved: user {user_id} released {amount}")
    notify(notifier, user_id, "Withdrawal Processed",
           f"Your withdrawal of ${amount} has been approved and processed.",
           "success", "high", {"entryId": entry_id})
    return db.session.get(LedgerEntry, entry_id)


def reject_withdrawal(entry_id: int, reason: str = None, notifier=None) -> LedgerEntry:
    entry = _pending_withdrawal(entry_id)
    amount = abs(to_money(entry.amount))
    user_id = entry.user_id
    reason = reason or "Administrative decision"
    try:
        if not LedgerManager.transition_entry(
            entry_id, EntryStatus.PENDING, EntryStatus.REJECTED,
            description=f"{entry.description} - Rejected: {reason}",
        ):
            raise TransientPersistenceError(f"Withdrawal {entry_id} was processed concurrently")
        LedgerManager.return_locked(user_id, amount)
        commit_or_rollback(f"Withdrawal rejection {entry_id}")
    except LedgerError:
        db.session.rollback()
        raise

    logger.info(f"Withdrawal {entry_id} rejected: user {user_id} got {amount} back")
    notify(notifier, user_id, "Withdrawal Rejected",
           f"Your withdrawal of ${amount} was rejected. Reason: {reason}",
           "warning", "high", {"entryId": entry_id})
    return db.session.get(LedgerEntry, entry_id)
