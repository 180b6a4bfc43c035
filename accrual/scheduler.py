"""
Entry points for a full accrual batch: the periodic scheduler and the
run_accrual() function shared by the HTTP and CLI triggers.
"""
import logging
import threading
from decimal import Decimal

from utils import utcnow
from accrual.config import AccrualConfig
from accrual.notifications import get_notifier
from accrual.payout_processor import PayoutProcessor
from accrual.referrals import ReferralMaturationProcessor
from accrual.run_lock import RunLock

logger = logging.getLogger(__name__)

LOCK_NAME = "accrual"


def _busy_summary(now) -> dict:
    return {
        "status": "busy",
        "started_at": now,
        "finished_at": now,
        "payouts": {
            "processed": 0, "completed": 0, "skipped": 0, "errors": 0,
            "total_paid": Decimal("0.00"), "status": "busy",
            "started_at": now, "finished_at": now,
        },
        "referrals": {"unlocked": 0, "still_pending": 0, "errors": 0, "total_unlocked": Decimal("0.00")},
    }


def run_accrual(config: AccrualConfig, now=None, notifier=None, lock: RunLock = None) -> dict:
    """
    Run the payout processor, then referral maturation, under the run lock.
    Must be called inside an application context. Never raises; a run that
    finds the lock taken returns status "busy" and touches nothing.
    """
    now = now or utcnow()
    notifier = notifier or get_notifier()
    lock = lock or RunLock(LOCK_NAME, ttl_seconds=config.lock_ttl_seconds)

    if not lock.acquire(now=utcnow()):
        logger.warning("Accrual run skipped: another run is in progress")
        return _busy_summary(now)

    started_at = utcnow()
    try:
        payouts = PayoutProcessor(config, notifier=notifier).run(now=now)
        referrals = ReferralMaturationProcessor(config.referral, notifier=notifier).run(now=now)
    finally:
        lock.release()

    status = "ok"
    if payouts["status"] != "ok":
        status = payouts["status"]
    elif payouts["errors"] or referrals["errors"]:
        status = "partial"

    result = {
        "status": status,
        "started_at": started_at,
        "finished_at": utcnow(),
        "payouts": payouts,
        "referrals": referrals,
    }
    logger.info(
        f"Accrual run {status}: {payouts['processed']} payouts ({payouts['total_paid']}), "
        f"{payouts['completed']} completed, {referrals['unlocked']} referral rewards unlocked"
    )
    return result


def summary_to_json(summary: dict) -> dict:
    """Decimals and datetimes rendered for jsonify."""
    out = {}
    for key, value in summary.items():
        if isinstance(value, dict):
            out[key] = summary_to_json(value)
        elif isinstance(value, Decimal):
            out[key] = float(value)
        elif hasattr(value, "isoformat"):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


class AccrualScheduler:
    """
    Periodic trigger. Owned by the process entry point: nothing starts on import.
    Each tick pushes an application context and calls run_accrual().
    """

    def __init__(self, app, interval_seconds: int = None):
        self.app = app
        self.interval = interval_seconds or AccrualConfig.from_mapping(app.config).interval_seconds
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="accrual-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Accrual scheduler started, interval {self.interval}s")
        return self

    def stop(self, timeout: float = 10.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Accrual scheduler stopped")

    def tick(self) -> dict:
        with self.app.app_context():
            config = AccrualConfig.from_mapping(self.app.config)
            try:
                return run_accrual(config)
            except Exception as e:
                logger.error(f"Scheduled accrual run failed: {e}", exc_info=True)
                return {"status": "failed", "error": str(e)}

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            self.tick()
