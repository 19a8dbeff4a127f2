"""Run-scoped advisory locks.

On PostgreSQL the lock is a session-level ``pg_try_advisory_lock`` taken on a
connection from a dedicated pool, separate from the ORM session pool, so that
acquire and release always happen on the same database session. If the
process dies mid-tick the connection goes away and Postgres frees the lock.

Other dialects (SQLite in development and tests) fall back to an in-process
named lock table with the same non-blocking semantics.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import text

from distill.config import settings
from distill.database import build_engine
from distill.errors import LockManagerClosedError
from distill.services.hashing import sha256

logger = logging.getLogger(__name__)


def run_lock_key(run_id: str) -> str:
    return f"run:{run_id}"


def compute_lock_id(key: str) -> int:
    """Stable signed 64-bit lock id for a key."""
    return int.from_bytes(bytes.fromhex(sha256(key)[:16]), "big", signed=True)


@dataclass
class LockHandle:
    key: str
    lock_id: int
    connection: Optional[Any] = None
    local_lock: Optional[threading.Lock] = None
    released: bool = False


class AdvisoryLockManager:
    """Non-blocking named locks with an explicit pool lifecycle.

    The pool is created on first acquire. ``close()`` rejects new acquires,
    lets in-flight holders finish, then disposes the pool.
    """

    def __init__(self, database_url: str, pool_size: int = 5):
        self.database_url = database_url
        self.pool_size = pool_size
        self.use_postgres = database_url.startswith("postgresql")
        self._engine = None
        self._closed = False
        self._held = 0
        self._cond = threading.Condition()
        self._local_locks: Dict[str, threading.Lock] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def held_count(self) -> int:
        return self._held

    def _get_engine(self):
        if self._engine is None:
            self._engine = build_engine(self.database_url, pool_size=self.pool_size, max_overflow=0)
            logger.info(f"Advisory lock pool created (size {self.pool_size})")
        return self._engine

    def _try_local(self, key: str) -> Optional[threading.Lock]:
        """Take the in-process lock for ``key``; entries live only while held."""
        with self._cond:
            lock = self._local_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._local_locks[key] = lock
            if lock.acquire(blocking=False):
                return lock
            return None

    def _release_local(self, handle: LockHandle):
        with self._cond:
            handle.local_lock.release()
            if self._local_locks.get(handle.key) is handle.local_lock:
                del self._local_locks[handle.key]

    def try_acquire(self, key: str) -> Optional[LockHandle]:
        """Take the lock for ``key``, or return None if someone holds it.

        Raises:
            LockManagerClosedError: If the manager is shutting down.
        """
        with self._cond:
            if self._closed:
                raise LockManagerClosedError()
            self._held += 1

        handle = None
        try:
            lock_id = compute_lock_id(key)
            if self.use_postgres:
                connection = self._get_engine().connect().execution_options(isolation_level="AUTOCOMMIT")
                try:
                    acquired = connection.execute(
                        text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
                    ).scalar()
                except Exception:
                    connection.close()
                    raise
                if acquired:
                    handle = LockHandle(key=key, lock_id=lock_id, connection=connection)
                else:
                    connection.close()
            else:
                local_lock = self._try_local(key)
                if local_lock is not None:
                    handle = LockHandle(key=key, lock_id=lock_id, local_lock=local_lock)
        finally:
            if handle is None:
                self._release_slot()

        if handle is None:
            logger.info(f"Lock {key} is busy")
        return handle

    def release(self, handle: LockHandle):
        """Release a held lock. Releasing twice is a no-op."""
        if handle.released:
            return
        handle.released = True
        try:
            if handle.connection is not None:
                try:
                    handle.connection.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": handle.lock_id})
                except Exception as e:
                    # Closing the connection ends the session, which frees the lock anyway
                    logger.warning(f"Advisory unlock failed for {handle.key}: {e}")
                finally:
                    handle.connection.close()
            elif handle.local_lock is not None:
                self._release_local(handle)
        finally:
            self._release_slot()

    def _release_slot(self):
        with self._cond:
            self._held -= 1
            self._cond.notify_all()

    @contextmanager
    def hold(self, key: str) -> Iterator[Optional[LockHandle]]:
        """Context manager yielding a handle, or None when the lock is busy."""
        handle = self.try_acquire(key)
        try:
            yield handle
        finally:
            if handle is not None:
                self.release(handle)

    def close(self, timeout: Optional[float] = None) -> bool:
        """Stop new acquisitions, wait for holders, then dispose the pool.

        Returns True if every holder finished within ``timeout``.
        """
        with self._cond:
            self._closed = True
            drained = self._cond.wait_for(lambda: self._held == 0, timeout=timeout)
            if not drained:
                logger.warning(f"Lock manager closing with {self._held} lock(s) still held")

        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Advisory lock pool disposed")
        return drained


lock_manager = AdvisoryLockManager(settings.DATABASE_URL, settings.LOCK_POOL_SIZE)


def get_lock_manager() -> AdvisoryLockManager:
    """FastAPI dependency returning the process-wide lock manager."""
    return lock_manager
