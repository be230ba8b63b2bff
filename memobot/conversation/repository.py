"""Repository for the append-only turn log."""

from datetime import datetime
from typing import List, Optional, Sequence

import structlog

from ..storage.database import DatabaseManager, format_ts, parse_ts, utc_now
from .models import ConversationTurn, TurnRole

logger = structlog.get_logger()


class TurnRepository:
    """Conversation turn data access."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize repository."""
        self.db = db_manager

    async def insert(
        self,
        chat_id: str,
        role: TurnRole,
        content: str,
        external_message_id: Optional[str] = None,
        tool_call_id: Optional[str] = None,
    ) -> int:
        """Append a turn and return its id.

        A repeated ``external_message_id`` returns the existing row's id
        instead of writing a second turn.
        """
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO turns (
                    chat_id, external_message_id, role, content,
                    tool_call_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_message_id) DO NOTHING
                """,
                (
                    chat_id,
                    external_message_id,
                    role,
                    content,
                    tool_call_id,
                    format_ts(utc_now()),
                ),
            )
            await conn.commit()
            if cursor.rowcount == 1:
                return cursor.lastrowid

            cursor = await conn.execute(
                "SELECT id FROM turns WHERE external_message_id = ?",
                (external_message_id,),
            )
            row = await cursor.fetchone()
            logger.debug(
                "Turn already stored",
                chat_id=chat_id,
                external_message_id=external_message_id,
            )
            return row["id"]

    async def get_recent(self, chat_id: str, limit: int = 50) -> List[ConversationTurn]:
        """Most recent uncompacted turns, oldest first."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM turns
                    WHERE chat_id = ? AND compacted_at IS NULL
                    ORDER BY id DESC
                    LIMIT ?
                ) ORDER BY id ASC
                """,
                (chat_id, limit),
            )
            rows = await cursor.fetchall()
            return [ConversationTurn.from_row(row) for row in rows]

    async def mark_compacted(self, turn_ids: Sequence[int]) -> int:
        """Set the compaction marker. Already-marked turns are left alone."""
        if not turn_ids:
            return 0
        placeholders = ", ".join("?" for _ in turn_ids)
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE turns SET compacted_at = ?
                WHERE id IN ({placeholders}) AND compacted_at IS NULL
                """,
                [format_ts(utc_now()), *turn_ids],
            )
            await conn.commit()
            return cursor.rowcount

    async def get_last_compaction_time(self, chat_id: str) -> Optional[datetime]:
        """When this conversation was last compacted, if ever."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT MAX(compacted_at) FROM turns WHERE chat_id = ?",
                (chat_id,),
            )
            row = await cursor.fetchone()
            return parse_ts(row[0]) if row else None
