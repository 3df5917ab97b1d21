"""Cross-process mutual exclusion for imports via a PostgreSQL advisory lock."""

import logging
import threading
from typing import Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from mafia_data_platform.pipeline.errors import ImportConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Advisory lock key for the full import. Must be unique across every
# advisory lock taken anywhere in the database.
IMPORT_LOCK_ID = 123456789


class LockManager:
    """Holds the import advisory lock on a dedicated connection.

    PostgreSQL advisory locks belong to the session that took them, so the
    connection that acquired the lock is kept checked out until release().

    Usage:
        lock = LockManager(engine)
        if not lock.acquire():
            ...  # another import is running
        try:
            run_import()
        finally:
            lock.release()
    """

    def __init__(self, engine: Engine, lock_id: int = IMPORT_LOCK_ID):
        self.engine = engine
        self.lock_id = lock_id
        self._connection: Optional[Connection] = None
        self._mutex = threading.Lock()

    @property
    def is_held(self) -> bool:
        """Whether this manager currently holds the lock."""
        return self._connection is not None

    def acquire(self) -> bool:
        """Try to take the lock without blocking.

        Returns:
            True if acquired, False if another session holds it
        """
        with self._mutex:
            if self._connection is not None:
                return True

            connection = self.engine.connect()
            try:
                acquired = connection.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": self.lock_id}
                ).scalar()
                # Advisory locks are session scoped, not transaction scoped
                connection.commit()
            except Exception:
                connection.close()
                raise

            if not acquired:
                connection.close()
                logger.info(f"Import lock {self.lock_id} is held by another session")
                return False

            self._connection = connection
            logger.info(f"Acquired import lock {self.lock_id}")
            return True

    def release(self) -> None:
        """Release the lock and return its connection to the pool.

        Never raises; failures are logged.
        """
        with self._mutex:
            connection, self._connection = self._connection, None

        if connection is None:
            return

        try:
            connection.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": self.lock_id}
            )
            connection.commit()
            logger.info(f"Released import lock {self.lock_id}")
        except Exception as e:
            logger.error(f"Failed to release import lock {self.lock_id}: {e}")
        finally:
            try:
                connection.close()
            except Exception as e:
                logger.error(f"Failed to close lock connection: {e}")

    def with_lock(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` while holding the lock.

        Raises:
            ImportConflictError: If the lock is not available
        """
        if not self.acquire():
            raise ImportConflictError("Import already running")

        try:
            return fn()
        finally:
            self.release()
