# accrual/run_lock.py
import os
import uuid
import socket
import logging
import threading
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError

from extensions import db
from models import RunLock as RunLockRow
from utils import utcnow

logger = logging.getLogger(__name__)

# One in-process lock per lock name, shared by every RunLock instance
_local_locks = {}
_registry_lock = threading.Lock()


def _local_lock(name: str) -> threading.Lock:
    with _registry_lock:
        if name not in _local_locks:
            _local_locks[name] = threading.Lock()
        return _local_locks[name]


class RunLock:
    """
    Overlap guard for full-batch runs.

    Acquisition takes the in-process lock first (threads of this worker), then
    the lease row in run_locks (other workers and processes). A lease whose
    expires_at has passed is considered abandoned and can be taken over.
    """

    def __init__(self, name: str = "accrual", ttl_seconds: int = 900):
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._lock = _local_lock(name)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _ensure_row(self):
        if db.session.get(RunLockRow, self.name) is not None:
            return
        try:
            with db.session.begin_nested():
                db.session.add(RunLockRow(name=self.name))
        except IntegrityError:
            # Inserted by another process first
            pass

    def acquire(self, now=None) -> bool:
        if not self._lock.acquire(blocking=False):
            logger.info(f"Run lock '{self.name}' busy in this process")
            return False

        now = now or utcnow()
        try:
            self._ensure_row()
            updated = RunLockRow.query.filter(
                RunLockRow.name == self.name,
                or_(RunLockRow.holder.is_(None), RunLockRow.expires_at <= now),
            ).update({
                RunLockRow.holder: self.holder,
                RunLockRow.acquired_at: now,
                RunLockRow.expires_at: now + self.ttl,
            }, synchronize_session=False)
            db.session.commit()
        except (OperationalError, IntegrityError) as e:
            db.session.rollback()
            self._lock.release()
            logger.warning(f"Run lock '{self.name}' could not be acquired: {e}")
            return False

        if updated != 1:
            self._lock.release()
            logger.info(f"Run lock '{self.name}' held by another process")
            return False

        self._held = True
        logger.debug(f"Run lock '{self.name}' acquired by {self.holder}")
        return True

    def release(self):
        if not self._held:
            return
        try:
            RunLockRow.query.filter(
                RunLockRow.name == self.name,
                RunLockRow.holder == self.holder,
            ).update({
                RunLockRow.holder: None,
                RunLockRow.acquired_at: None,
                RunLockRow.expires_at: None,
            }, synchronize_session=False)
            db.session.commit()
        except OperationalError as e:
            # The lease expires on its own after the TTL
            db.session.rollback()
            logger.error(f"Run lock '{self.name}' release failed: {e}")
        finally:
            self._held = False
            self._lock.release()
            logger.debug(f"Run lock '{self.name}' released by {self.holder}")
