"""SQLite database manager with versioned migrations.

All repositories share one ``DatabaseManager``. Each ``get_connection()``
opens a short-lived aiosqlite connection; callers commit explicitly.
Timestamps are stored as fixed-width UTC strings so they compare
lexicographically in SQL.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiosqlite
import structlog

from ..exceptions import StorageError

logger = structlog.get_logger()

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

MIGRATIONS: List[Tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS turns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            chat_id TEXT NOT NULL,
            external_message_id TEXT UNIQUE,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'tool_result')),
            content TEXT NOT NULL,
            tool_call_id TEXT,
            compacted_at TEXT,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_turns_active
            ON turns(chat_id, created_at) WHERE compacted_at IS NULL;

        CREATE TABLE IF NOT EXISTS patterns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content TEXT NOT NULL,
            kind TEXT NOT NULL DEFAULT 'behavior' CHECK (kind IN (
                'behavior', 'emotion', 'belief', 'goal', 'preference',
                'temporal', 'causal', 'fact', 'event'
            )),
            confidence REAL NOT NULL DEFAULT 0.5,
            strength REAL NOT NULL DEFAULT 1.0,
            times_seen INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'disputed', 'superseded')),
            canonical_hash TEXT NOT NULL,
            embedding TEXT,
            embedding_model TEXT,
            temporal TEXT,
            source_type TEXT NOT NULL DEFAULT 'chat_compaction',
            source_id TEXT,
            expires_at TEXT,
            first_seen TEXT NOT NULL,
            last_seen TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_patterns_hash ON patterns(canonical_hash);
        CREATE INDEX IF NOT EXISTS idx_patterns_status ON patterns(status);

        CREATE TABLE IF NOT EXISTS pattern_aliases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pattern_id INTEGER NOT NULL REFERENCES patterns(id),
            content TEXT NOT NULL,
            embedding TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pattern_observations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pattern_id INTEGER NOT NULL REFERENCES patterns(id),
            turn_ids TEXT NOT NULL,
            evidence TEXT NOT NULL,
            evidence_roles TEXT NOT NULL,
            confidence REAL NOT NULL,
            source_type TEXT NOT NULL DEFAULT 'chat_compaction',
            source_id TEXT,
            observed_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_pattern_observations_pattern
            ON pattern_observations(pattern_id);

        CREATE TABLE IF NOT EXISTS pattern_entries (
            pattern_id INTEGER NOT NULL REFERENCES patterns(id),
            entry_uuid TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'compaction',
            confidence REAL NOT NULL DEFAULT 0.5,
            times_linked INTEGER NOT NULL DEFAULT 1,
            last_linked_at TEXT NOT NULL,
            PRIMARY KEY (pattern_id, entry_uuid)
        );

        CREATE TABLE IF NOT EXISTS memory_retrieval_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            chat_id TEXT NOT NULL,
            query_text TEXT NOT NULL,
            query_hash TEXT NOT NULL,
            degraded INTEGER NOT NULL DEFAULT 0,
            pattern_ids TEXT NOT NULL DEFAULT '[]',
            pattern_kinds TEXT NOT NULL DEFAULT '[]',
            top_score REAL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS api_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            purpose TEXT NOT NULL,
            input_tokens INTEGER NOT NULL DEFAULT 0,
            output_tokens INTEGER NOT NULL DEFAULT 0,
            cost_usd REAL NOT NULL DEFAULT 0,
            latency_ms INTEGER,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS advisory_locks (
            lock_key INTEGER PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL
        );
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS measurements (
            date TEXT PRIMARY KEY,
            weight_kg REAL NOT NULL,
            updated_at TEXT NOT NULL
        );
        """,
    ),
]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Serialize a datetime for storage."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class DatabaseManager:
    """Owns the SQLite file and hands out connections."""

    def __init__(self, database_url: str):
        self.database_path = self._parse_url(database_url)
        self._initialized = False

    @staticmethod
    def _parse_url(database_url: str) -> Path:
        prefix = "sqlite:///"
        if database_url.startswith(prefix):
            return Path(database_url[len(prefix) :])
        if "://" in database_url:
            raise ValueError(f"Unsupported database URL: {database_url}")
        return Path(database_url)

    async def initialize(self) -> None:
        """Create the database file if needed and apply pending migrations."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.database_path) as conn:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"
            )
            cursor = await conn.execute("SELECT MAX(version) FROM schema_version")
            row = await cursor.fetchone()
            current = row[0] or 0

            for version, sql in MIGRATIONS:
                if version <= current:
                    continue
                await conn.executescript(sql)
                await conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (version,)
                )
                logger.info("Applied migration", version=version)

            await conn.commit()

        self._initialized = True
        logger.info("Database initialized", path=str(self.database_path))

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection with dict-like rows."""
        if not self._initialized:
            raise StorageError("DatabaseManager.initialize() has not been called")

        async with aiosqlite.connect(self.database_path, timeout=30) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    async def close(self) -> None:
        """Mark the manager closed; later connections are refused."""
        self._initialized = False
