# accrual/payout_processor.py
import logging
from decimal import Decimal
from typing import List, Tuple

from sqlalchemy.exc import OperationalError

from extensions import db
from models import InvestmentPosition, PayoutRecord, EntryKind, EntryStatus, PositionStatus, PayoutKind
from utils import utcnow, to_money
from accrual.config import AccrualConfig
from accrual.ledger import (
    LedgerManager, LedgerError, NotFoundError, InvariantViolation,
    TransientPersistenceError, DuplicateReferenceError, commit_or_rollback,
)
from accrual.notifications import notify
from accrual.positions import PAYOUT_CYCLE

logger = logging.getLogger(__name__)

# Outcomes of a single cycle
CREDITED = "credited"
COMPLETED = "completed"
SKIPPED = "skipped"


class PayoutProcessor:
    """
    Advances due positions by one cycle each.

    Every position is handled in its own transaction whose writes are
    conditioned on the (status, next_payout_date) pair read at selection time.
    If another run advanced the position first, the UPDATE matches no row and
    the position is skipped without crediting anything.
    """

    def __init__(self, config: AccrualConfig = None, notifier=None):
        self.config = config or AccrualConfig()
        self.notifier = notifier

    def _due_positions(self, now) -> List[Tuple[int, object]]:
        rows = db.session.query(
            InvestmentPosition.id, InvestmentPosition.next_payout_date
        ).filter(
            InvestmentPosition.status == PositionStatus.ACTIVE.value,
            InvestmentPosition.next_payout_date <= now,
        ).order_by(InvestmentPosition.next_payout_date.asc(), InvestmentPosition.id.asc()).all()
        return [(row[0], row[1]) for row in rows]

    def run(self, now=None) -> dict:
        now = now or utcnow()
        summary = {
            "processed": 0,
            "completed": 0,
            "skipped": 0,
            "errors": 0,
            "total_paid": Decimal("0.00"),
            "status": "ok",
            "started_at": now,
            "finished_at": None,
        }

        try:
            due = self._due_positions(now)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Could not load due positions: {e}", exc_info=True)
            summary["errors"] += 1
            summary["status"] = "failed"
            summary["finished_at"] = utcnow()
            return summary

        logger.info(f"Payout run: {len(due)} positions due at {now.isoformat()}")

        for position_id, observed_next in due:
            try:
                outcome, amount = self.apply_cycle(position_id, observed_next, now)
            except (NotFoundError, TransientPersistenceError, DuplicateReferenceError) as e:
                db.session.rollback()
                logger.warning(f"Position {position_id} skipped: {e}")
                summary["errors"] += 1
                continue
            except InvariantViolation as e:
                db.session.rollback()
                logger.error(f"Position {position_id} invariant violated: {e}")
                summary["errors"] += 1
                continue
            except Exception as e:
                db.session.rollback()
                logger.error(f"Unexpected error processing position {position_id}: {e}", exc_info=True)
                summary["errors"] += 1
                continue

            if outcome == CREDITED:
                summary["processed"] += 1
                summary["total_paid"] += amount
            elif outcome == COMPLETED:
                summary["processed"] += 1
                summary["completed"] += 1
            else:
                summary["skipped"] += 1

        summary["finished_at"] = utcnow()
        logger.info(
            f"Payout run finished: {summary['processed']} processed, {summary['completed']} completed, "
            f"{summary['skipped']} skipped, {summary['errors']} errors, total paid {summary['total_paid']}"
        )
        return summary

    def apply_cycle(self, position_id: int, observed_next, now) -> Tuple[str, Decimal]:
        """Credit or complete one position for the cycle starting at observed_next."""
        position = db.session.get(InvestmentPosition, position_id)
        if position is None:
            raise NotFoundError(f"Position {position_id} vanished")
        db.session.refresh(position)

        if position.status != PositionStatus.ACTIVE.value or position.next_payout_date != observed_next:
            return SKIPPED, Decimal("0.00")
        if position.next_payout_date > now:
            return SKIPPED, Decimal("0.00")

        user_id = position.user_id
        plan_name = position.plan_name
        advanced = observed_next + PAYOUT_CYCLE
        cas_filter = (
            InvestmentPosition.id == position_id,
            InvestmentPosition.status == PositionStatus.ACTIVE.value,
            InvestmentPosition.next_payout_date == observed_next,
        )

        if advanced > position.end_date:
            return self._complete(position, cas_filter, now)

        amount = to_money(position.daily_payout_amount)
        if amount <= 0:
            raise InvariantViolation(f"Position {position_id} has non-positive daily payout {amount}")

        try:
            updated = InvestmentPosition.query.filter(*cas_filter).update({
                InvestmentPosition.next_payout_date: advanced,
                InvestmentPosition.total_payout_received: InvestmentPosition.total_payout_received + amount,
                InvestmentPosition.payout_count: InvestmentPosition.payout_count + 1,
                InvestmentPosition.updated_at: now,
            }, synchronize_session=False)
        except OperationalError as e:
            raise TransientPersistenceError(f"Position {position_id} update conflict: {e}") from e

        if updated == 0:
            db.session.rollback()
            logger.debug(f"Position {position_id} already advanced by a concurrent run")
            return SKIPPED, Decimal("0.00")

        try:
            LedgerManager.credit_return(user_id, amount)
            LedgerManager.append_entry(
                user_id, EntryKind.RETURN, amount, EntryStatus.COMPLETED,
                f"ROI-{position_id}-{observed_next.date().isoformat()}",
                description=f"Daily return from {plan_name}",
                position_id=position_id, now=now,
            )
            db.session.add(PayoutRecord(
                user_id=user_id,
                position_id=position_id,
                amount=amount,
                kind=PayoutKind.DAILY.value,
                notes=f"Daily payout for cycle {observed_next.date().isoformat()}",
                created_at=now,
            ))
            commit_or_rollback(f"Payout for position {position_id}")
        except LedgerError:
            db.session.rollback()
            raise

        db.session.expire(position)
        logger.debug(f"Position {position_id}: credited {amount} to user {user_id}")
        return CREDITED, amount

    def _complete(self, position, cas_filter, now) -> Tuple[str, Decimal]:
        position_id = position.id
        user_id = position.user_id
        plan_name = position.plan_name
        total = to_money(position.total_payout_received or 0)

        try:
            updated = InvestmentPosition.query.filter(*cas_filter).update({
                InvestmentPosition.status: PositionStatus.COMPLETED.value,
                InvestmentPosition.updated_at: now,
            }, synchronize_session=False)
        except OperationalError as e:
            raise TransientPersistenceError(f"Position {position_id} update conflict: {e}") from e

        if updated == 0:
            db.session.rollback()
            return SKIPPED, Decimal("0.00")

        try:
            db.session.add(PayoutRecord(
                user_id=user_id,
                position_id=position_id,
                amount=Decimal("0.00"),
                kind=PayoutKind.COMPLETION.value,
                notes="Investment completed",
                created_at=now,
            ))
            commit_or_rollback(f"Completion of position {position_id}")
        except LedgerError:
            db.session.rollback()
            raise

        db.session.expire(position)
        logger.info(f"Position {position_id} completed, total paid {total}")
        notify(self.notifier, user_id, "Investment Completed",
               f"Your investment in {plan_name} has completed. Total earned: ${total}.",
               "investment", "normal", {"investmentId": position_id, "totalEarned": str(total)})
        return COMPLETED, Decimal("0.00")
