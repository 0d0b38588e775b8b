"""In-process per-key mutual exclusion.

Row locks (``SELECT ... FOR UPDATE``) serialize writers across processes on
PostgreSQL; this registry serializes threads inside one process, which is the
only protection SQLite gets.
"""

import logging
import threading
from contextlib import contextmanager

from app.services.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)


class KeyedLocks:
    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key, timeout: float):
        key = str(key)
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout):
            logger.warning("lock_timeout name=%s key=%s timeout=%s", self.name, key, timeout)
            raise ConcurrencyConflict(
                f"Timed out waiting for {self.name} lock", details={"key": key}
            )
        try:
            yield
        finally:
            lock.release()
