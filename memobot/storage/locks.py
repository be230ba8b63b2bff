"""Non-blocking advisory lock backed by a table row.

The lock lives in the database, so it is shared by every process that
opens the same file. A holder that died without releasing is reclaimed
once its row is older than ``stale_after``.
"""

import uuid
from datetime import timedelta

import structlog

from .database import DatabaseManager, format_ts, utc_now

logger = structlog.get_logger()

COMPACTION_LOCK_KEY = 1337


class AdvisoryLock:
    """Try-acquire / release lock keyed by one fixed integer."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        key: int = COMPACTION_LOCK_KEY,
        stale_after: timedelta = timedelta(minutes=10),
    ) -> None:
        self.db = db_manager
        self.key = key
        self._stale_after = stale_after
        self._holder = uuid.uuid4().hex

    async def try_acquire(self) -> bool:
        """Take the lock if nobody holds it. Never waits."""
        now = utc_now()
        async with self.db.get_connection() as conn:
            await conn.execute(
                "DELETE FROM advisory_locks WHERE lock_key = ? AND acquired_at < ?",
                (self.key, format_ts(now - self._stale_after)),
            )
            cursor = await conn.execute(
                """INSERT OR IGNORE INTO advisory_locks (lock_key, holder, acquired_at)
                VALUES (?, ?, ?)""",
                (self.key, self._holder, format_ts(now)),
            )
            await conn.commit()
            acquired = cursor.rowcount == 1

        if not acquired:
            logger.debug("Advisory lock busy", key=self.key)
        return acquired

    async def release(self) -> None:
        """Release the lock if this instance holds it."""
        async with self.db.get_connection() as conn:
            await conn.execute(
                "DELETE FROM advisory_locks WHERE lock_key = ? AND holder = ?",
                (self.key, self._holder),
            )
            await conn.commit()
