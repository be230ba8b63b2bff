"""Tests for DatabaseManager, timestamps and the advisory lock."""

from datetime import datetime, timedelta, timezone

import pytest

from memobot.exceptions import StorageError
from memobot.storage.database import DatabaseManager, format_ts, parse_ts
from memobot.storage.locks import COMPACTION_LOCK_KEY, AdvisoryLock


class TestTimestamps:
    def test_round_trip(self):
        value = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)
        assert parse_ts(format_ts(value)) == value

    def test_naive_treated_as_utc(self):
        assert format_ts(datetime(2026, 1, 1)) == "2026-01-01T00:00:00.000000Z"

    def test_lexicographic_order_matches_time(self):
        """Stored strings sort in time order."""
        early = datetime(2026, 1, 1, tzinfo=timezone.utc)
        late = early + timedelta(microseconds=1)
        assert format_ts(early) < format_ts(late)

    def test_parse_empty(self):
        assert parse_ts(None) is None
        assert parse_ts("") is None


class TestDatabaseManager:
    """Tests for DatabaseManager."""

    async def test_migrations_create_tables(self, db_manager):
        async with db_manager.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
            tables = {row["name"] for row in await cursor.fetchall()}

        for name in (
            "turns",
            "patterns",
            "pattern_aliases",
            "pattern_observations",
            "pattern_entries",
            "memory_retrieval_logs",
            "api_usage",
            "advisory_locks",
            "measurements",
        ):
            assert name in tables

    async def test_initialize_is_idempotent(self, db_manager):
        """Re-running initialize applies nothing twice."""
        await db_manager.initialize()
        async with db_manager.get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM schema_version")
            row = await cursor.fetchone()
        assert row[0] == 2

    async def test_connection_before_initialize_raises(self, tmp_path):
        manager = DatabaseManager(f"sqlite:///{tmp_path / 'x.db'}")
        with pytest.raises(StorageError):
            async with manager.get_connection():
                pass

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            DatabaseManager("postgresql://localhost/db")


class TestAdvisoryLock:
    """Tests for the compaction lock."""

    async def test_acquire_and_release(self, db_manager):
        lock = AdvisoryLock(db_manager)
        assert lock.key == COMPACTION_LOCK_KEY
        assert await lock.try_acquire() is True
        await lock.release()
        assert await lock.try_acquire() is True

    async def test_second_holder_refused(self, db_manager):
        """A held lock is not granted to another instance."""
        first = AdvisoryLock(db_manager)
        second = AdvisoryLock(db_manager)

        assert await first.try_acquire() is True
        assert await second.try_acquire() is False

        await first.release()
        assert await second.try_acquire() is True

    async def test_release_by_non_holder_is_noop(self, db_manager):
        first = AdvisoryLock(db_manager)
        second = AdvisoryLock(db_manager)
        await first.try_acquire()

        await second.release()
        assert await second.try_acquire() is False

    async def test_stale_lock_reclaimed(self, db_manager):
        """A holder older than stale_after loses the lock."""
        first = AdvisoryLock(db_manager)
        await first.try_acquire()

        async with db_manager.get_connection() as conn:
            await conn.execute(
                "UPDATE advisory_locks SET acquired_at = ?",
                (format_ts(datetime.now(timezone.utc) - timedelta(hours=1)),),
            )
            await conn.commit()

        second = AdvisoryLock(db_manager)
        assert await second.try_acquire() is True
