"""Pattern store: persistence and similarity search for memory units."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import structlog

from ..exceptions import StorageError
from ..storage.database import DatabaseManager, format_ts, utc_now
from .models import Pattern, PatternObservation, ScoredPattern

logger = structlog.get_logger()

# Active and not past its expiry: eligible for matching and retrieval.
_LIVE_CLAUSE = "status = 'active' AND (expires_at IS NULL OR expires_at > ?)"


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``."""
    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, matrix @ q / denom, 0.0)
    return sims


def retrieval_score(similarity: float, confidence: float) -> float:
    """Relevance used for ranking: similarity weighted by confidence."""
    return similarity * (0.6 + 0.4 * confidence)


class PatternStore:
    """Pattern data access."""

    def __init__(self, db_manager: DatabaseManager, embedding_model: str = ""):
        """Initialize repository."""
        self.db = db_manager
        self._embedding_model = embedding_model

    async def find_active_by_hash(self, canonical_hash: str) -> Optional[Pattern]:
        """Live pattern with this canonical hash, if any."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM patterns WHERE canonical_hash = ? AND {_LIVE_CLAUSE} LIMIT 1",
                (canonical_hash, format_ts(utc_now())),
            )
            row = await cursor.fetchone()
            return Pattern.from_row(row) if row else None

    async def get_pattern(self, pattern_id: int) -> Optional[Pattern]:
        """Get a pattern by id regardless of status."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM patterns WHERE id = ?", (pattern_id,)
            )
            row = await cursor.fetchone()
            return Pattern.from_row(row) if row else None

    async def _live_with_embeddings(self) -> List[Pattern]:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM patterns WHERE embedding IS NOT NULL AND {_LIVE_CLAUSE}",
                (format_ts(utc_now()),),
            )
            rows = await cursor.fetchall()
            return [Pattern.from_row(row) for row in rows]

    async def _scored(
        self, embedding: Sequence[float], min_similarity: float
    ) -> List[ScoredPattern]:
        patterns = [
            p for p in await self._live_with_embeddings()
            if p.embedding and len(p.embedding) == len(embedding)
        ]
        if not patterns:
            return []

        matrix = np.asarray([p.embedding for p in patterns], dtype=np.float32)
        sims = cosine_similarities(embedding, matrix)

        scored: List[ScoredPattern] = []
        for pattern, sim in zip(patterns, sims):
            similarity = float(sim)
            if similarity < min_similarity:
                continue
            scored.append(
                ScoredPattern(
                    **pattern.model_dump(),
                    similarity=similarity,
                    score=retrieval_score(similarity, pattern.confidence),
                )
            )
        return scored

    async def find_similar(
        self, embedding: Sequence[float], limit: int = 1, min_similarity: float = 0.82
    ) -> List[ScoredPattern]:
        """Nearest live patterns by cosine similarity."""
        scored = await self._scored(embedding, min_similarity)
        scored.sort(key=lambda p: p.similarity, reverse=True)
        return scored[:limit]

    async def search(
        self, embedding: Sequence[float], limit: int = 20, min_similarity: float = 0.4
    ) -> List[ScoredPattern]:
        """Retrieval candidates ordered by score."""
        scored = await self._scored(embedding, min_similarity)
        scored.sort(key=lambda p: p.score, reverse=True)
        return scored[:limit]

    async def search_text(self, query: str, limit: int = 10) -> List[Pattern]:
        """Keyword lookup over live pattern content."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT * FROM patterns
                WHERE content LIKE ? AND {_LIVE_CLAUSE}
                ORDER BY confidence DESC, last_seen DESC
                LIMIT ?
                """,
                (f"%{query}%", format_ts(utc_now()), limit),
            )
            rows = await cursor.fetchall()
            return [Pattern.from_row(row) for row in rows]

    async def get_top_patterns(self, limit: int = 20) -> List[Pattern]:
        """Strongest live patterns, for extraction cross-reference."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT * FROM patterns WHERE {_LIVE_CLAUSE}
                ORDER BY strength * confidence DESC, last_seen DESC
                LIMIT ?
                """,
                (format_ts(utc_now()), limit),
            )
            rows = await cursor.fetchall()
            return [Pattern.from_row(row) for row in rows]

    async def insert_pattern(
        self,
        content: str,
        kind: str,
        confidence: float,
        canonical_hash: str,
        embedding: Optional[Sequence[float]] = None,
        temporal: Optional[Dict[str, Any]] = None,
        source_type: str = "chat_compaction",
        source_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Pattern:
        """Insert a new active pattern."""
        now = format_ts(utc_now())
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO patterns (
                    content, kind, confidence, canonical_hash, embedding,
                    embedding_model, temporal, source_type, source_id,
                    expires_at, first_seen, last_seen, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    content,
                    kind,
                    confidence,
                    canonical_hash,
                    json.dumps(list(embedding)) if embedding else None,
                    self._embedding_model if embedding else None,
                    json.dumps(temporal) if temporal else None,
                    source_type,
                    source_id,
                    format_ts(expires_at) if expires_at else None,
                    now,
                    now,
                    now,
                ),
            )
            await conn.commit()
            pattern_id = cursor.lastrowid

        logger.info("Inserted pattern", pattern_id=pattern_id, kind=kind)
        pattern = await self.get_pattern(pattern_id)
        if pattern is None:
            raise StorageError(f"Inserted pattern {pattern_id} could not be read back")
        return pattern

    async def reinforce(self, pattern_id: int, confidence: float) -> bool:
        """Boost an existing pattern with a new sighting."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE patterns
                SET confidence = MIN(1.0, MAX(confidence, ?)),
                    strength = strength + ?,
                    times_seen = times_seen + 1,
                    last_seen = ?
                WHERE id = ?
                """,
                (confidence, confidence, format_ts(utc_now()), pattern_id),
            )
            await conn.commit()
            return cursor.rowcount == 1

    async def insert_alias(
        self,
        pattern_id: int,
        content: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> None:
        """Record an alternate phrasing of an existing pattern."""
        async with self.db.get_connection() as conn:
            await conn.execute(
                """INSERT INTO pattern_aliases (pattern_id, content, embedding, created_at)
                VALUES (?, ?, ?, ?)""",
                (
                    pattern_id,
                    content,
                    json.dumps(list(embedding)) if embedding else None,
                    format_ts(utc_now()),
                ),
            )
            await conn.commit()

    async def update_status(self, pattern_id: int, status: str) -> bool:
        """Transition a pattern to disputed/superseded (or back to active)."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "UPDATE patterns SET status = ? WHERE id = ?",
                (status, pattern_id),
            )
            await conn.commit()
            changed = cursor.rowcount == 1

        if changed:
            logger.info("Pattern status updated", pattern_id=pattern_id, status=status)
        else:
            logger.warning("Status update for unknown pattern", pattern_id=pattern_id)
        return changed

    async def insert_observation(self, observation: PatternObservation) -> None:
        """Append an evidence record."""
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO pattern_observations (
                    pattern_id, turn_ids, evidence, evidence_roles,
                    confidence, source_type, source_id, observed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    observation.pattern_id,
                    json.dumps(observation.turn_ids),
                    observation.evidence,
                    json.dumps(observation.evidence_roles),
                    observation.confidence,
                    observation.source_type,
                    observation.source_id,
                    format_ts(utc_now()),
                ),
            )
            await conn.commit()

    async def get_observations(self, pattern_id: int) -> List[PatternObservation]:
        """Evidence records for a pattern, oldest first."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM pattern_observations WHERE pattern_id = ? ORDER BY id",
                (pattern_id,),
            )
            rows = await cursor.fetchall()

        return [
            PatternObservation(
                pattern_id=row["pattern_id"],
                turn_ids=json.loads(row["turn_ids"]),
                evidence=row["evidence"],
                evidence_roles=json.loads(row["evidence_roles"]),
                confidence=row["confidence"],
                source_type=row["source_type"],
                source_id=row["source_id"],
            )
            for row in rows
        ]

    async def link_entry(
        self,
        pattern_id: int,
        entry_uuid: str,
        source: str = "compaction",
        confidence: float = 0.5,
    ) -> None:
        """Link a pattern to an external record; relinking bumps the counter."""
        now = format_ts(utc_now())
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO pattern_entries (
                    pattern_id, entry_uuid, source, confidence, last_linked_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(pattern_id, entry_uuid) DO UPDATE SET
                    times_linked = times_linked + 1,
                    confidence = MAX(confidence, excluded.confidence),
                    last_linked_at = excluded.last_linked_at
                """,
                (pattern_id, entry_uuid, source, confidence, now),
            )
            await conn.commit()

    async def count_stale_events(self) -> int:
        """Active event patterns past their expiry, awaiting review."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT COUNT(*) FROM patterns
                WHERE kind = 'event' AND status = 'active'
                  AND expires_at IS NOT NULL AND expires_at <= ?
                """,
                (format_ts(utc_now()),),
            )
            row = await cursor.fetchone()
            return row[0]

    async def log_retrieval(
        self,
        chat_id: str,
        query_text: str,
        query_hash: str,
        degraded: bool,
        patterns: Sequence[ScoredPattern],
    ) -> None:
        """Write one retrieval audit row."""
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO memory_retrieval_logs (
                    chat_id, query_text, query_hash, degraded,
                    pattern_ids, pattern_kinds, top_score, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chat_id,
                    query_text,
                    query_hash,
                    int(degraded),
                    json.dumps([p.id for p in patterns]),
                    json.dumps([p.kind for p in patterns]),
                    patterns[0].score if patterns else None,
                    format_ts(utc_now()),
                ),
            )
            await conn.commit()
