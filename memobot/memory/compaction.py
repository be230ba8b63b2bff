"""Compaction: consolidating buffered turns into durable patterns.

A pass takes the oldest half of the uncompacted turns, asks the reasoning
engine for pattern changes, applies them through the tiered dedup, and
marks the batch consumed. Passes are single-flight across all
conversations via an advisory lock.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from ..conversation.models import ConversationTurn
from ..conversation.repository import TurnRepository
from ..storage.database import utc_now
from ..storage.locks import AdvisoryLock
from .dedup import PatternDeduplicator, filter_evidence
from .extractor import CompactionExtraction, PatternExtractor
from .models import PatternCandidate, UpsertOutcome
from .store import PatternStore

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4
RECENT_TURNS_LIMIT = 50
EXISTING_PATTERNS_FOR_EXTRACTION = 20
SUPERSEDE_CONFIDENCE = 0.8

NOTHING_TO_COMPACT = "nothing to compact"
COMPACTION_IN_PROGRESS = "compaction already in progress"

OnCompacted = Callable[[str], Awaitable[None]]


@dataclass
class CompactionStats:
    """What one pass actually changed."""

    saved_kinds: List[str] = field(default_factory=list)
    reinforced: int = 0
    disputed: int = 0
    superseded: int = 0
    stale_events: int = 0

    def summary(self) -> str:
        """Human-readable one-liner; empty when nothing happened."""
        notes: List[str] = []
        saved = len(self.saved_kinds)
        if saved:
            kinds = ", ".join(dict.fromkeys(self.saved_kinds))
            notes.append(f"saved {saved} {'memory' if saved == 1 else 'memories'} ({kinds})")
        if self.reinforced:
            notes.append(f"reinforced {self.reinforced}")
        if self.disputed:
            notes.append(f"flagged {self.disputed} as disputed")
        if self.superseded:
            notes.append(f"superseded {self.superseded}")
        if self.stale_events:
            noun = "memory" if self.stale_events == 1 else "memories"
            notes.append(f"{self.stale_events} stale event {noun} pending review")
        return " · ".join(notes)


class CompactionEngine:
    """Decides when to compact and runs compaction passes."""

    def __init__(
        self,
        turns: TurnRepository,
        store: PatternStore,
        deduplicator: PatternDeduplicator,
        extractor: PatternExtractor,
        lock: AdvisoryLock,
        token_budget: int = 12_000,
        interval_hours: float = 12.0,
        min_turns_for_time: int = 10,
        min_turns_for_force: int = 4,
    ) -> None:
        self.turns = turns
        self.store = store
        self.deduplicator = deduplicator
        self.extractor = extractor
        self.lock = lock
        self.token_budget = token_budget
        self.interval_hours = interval_hours
        self.min_turns_for_time = min_turns_for_time
        self.min_turns_for_force = min_turns_for_force

    # --- triggers ---

    def over_budget(self, buffer: Sequence[ConversationTurn]) -> bool:
        total_chars = sum(len(t.content) for t in buffer)
        return total_chars / CHARS_PER_TOKEN >= self.token_budget

    async def needs_compaction(
        self, chat_id: str, buffer: Sequence[ConversationTurn]
    ) -> bool:
        """Budget trigger, else time trigger."""
        if self.over_budget(buffer):
            return True
        if len(buffer) < self.min_turns_for_time:
            return False

        last = await self.turns.get_last_compaction_time(chat_id)
        if last is None:
            return True
        hours_since = (utc_now() - last).total_seconds() / 3600
        return hours_since >= self.interval_hours

    # --- entry points ---

    async def compact_if_needed(
        self, chat_id: str, on_compacted: Optional[OnCompacted] = None
    ) -> Optional[str]:
        """Run a pass when a trigger fires and the lock is free."""
        buffer = await self.turns.get_recent(chat_id, RECENT_TURNS_LIMIT)
        if not await self.needs_compaction(chat_id, buffer):
            return None

        if not await self.lock.try_acquire():
            logger.info("Compaction skipped, lock held", chat_id=chat_id)
            return None

        try:
            buffer = await self.turns.get_recent(chat_id, RECENT_TURNS_LIMIT)
            return await self._run(chat_id, buffer, on_compacted)
        finally:
            await self.lock.release()

    async def force_compact(
        self, chat_id: str, on_compacted: Optional[OnCompacted] = None
    ) -> Optional[str]:
        """Compact now regardless of triggers."""
        buffer = await self.turns.get_recent(chat_id, RECENT_TURNS_LIMIT)
        if len(buffer) < self.min_turns_for_force:
            await self._notify(on_compacted, NOTHING_TO_COMPACT)
            return NOTHING_TO_COMPACT

        if not await self.lock.try_acquire():
            await self._notify(on_compacted, COMPACTION_IN_PROGRESS)
            return COMPACTION_IN_PROGRESS

        try:
            buffer = await self.turns.get_recent(chat_id, RECENT_TURNS_LIMIT)
            if len(buffer) < self.min_turns_for_force:
                await self._notify(on_compacted, NOTHING_TO_COMPACT)
                return NOTHING_TO_COMPACT
            return await self._run(chat_id, buffer, on_compacted)
        finally:
            await self.lock.release()

    def schedule(
        self, chat_id: str, on_compacted: Optional[OnCompacted] = None
    ) -> "asyncio.Task[Optional[str]]":
        """Start ``compact_if_needed`` in the background."""
        task = asyncio.create_task(self.compact_if_needed(chat_id, on_compacted))
        task.add_done_callback(lambda t: self._log_task_result(chat_id, t))
        return task

    @staticmethod
    def _log_task_result(chat_id: str, task: "asyncio.Task[Optional[str]]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background compaction failed",
                chat_id=chat_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # --- pass ---

    async def _run(
        self,
        chat_id: str,
        buffer: Sequence[ConversationTurn],
        on_compacted: Optional[OnCompacted],
    ) -> Optional[str]:
        batch = list(buffer[: len(buffer) // 2])
        if not batch:
            return None

        logger.info("Compaction started", chat_id=chat_id, turns=len(batch))
        try:
            stats = await self._extract_and_apply(chat_id, batch)
        finally:
            # Consumed even when extraction fails.
            await self.turns.mark_compacted([t.id for t in batch])

        if stats is None:
            return None

        summary = stats.summary()
        logger.info("Compaction finished", chat_id=chat_id, summary=summary or "no changes")
        if summary:
            await self._notify(on_compacted, summary)
        return summary or None

    async def _extract_and_apply(
        self, chat_id: str, batch: List[ConversationTurn]
    ) -> Optional[CompactionStats]:
        existing = await self.store.get_top_patterns(EXISTING_PATTERNS_FOR_EXTRACTION)
        extraction = await self.extractor.extract(batch, existing)
        if extraction is None:
            logger.info("Compaction produced no extraction", chat_id=chat_id)
            return None

        stats = await self.apply_extraction(chat_id, extraction, batch)
        stats.stale_events = await self.store.count_stale_events()
        return stats

    async def apply_extraction(
        self,
        chat_id: str,
        extraction: CompactionExtraction,
        batch: List[ConversationTurn],
    ) -> CompactionStats:
        """Apply one validated extraction, sequentially."""
        stats = CompactionStats()

        for item in extraction.new_patterns:
            outcome = await self.deduplicator.upsert_extracted_pattern(
                PatternCandidate(
                    content=item.content,
                    kind=item.kind,
                    confidence=item.confidence,
                    signal=item.signal,
                    evidence_turn_ids=item.evidence_message_ids,
                    entry_uuids=item.entry_uuids,
                    temporal=item.temporal,
                ),
                batch,
                chat_id,
            )
            if outcome in (UpsertOutcome.INSERTED, UpsertOutcome.SUPERSEDED_AND_INSERTED):
                stats.saved_kinds.append(item.kind)
            if outcome == UpsertOutcome.SUPERSEDED_AND_INSERTED:
                stats.superseded += 1
            elif outcome == UpsertOutcome.REINFORCED:
                stats.reinforced += 1

        for item in extraction.reinforcements:
            turn_ids, roles = filter_evidence(item.evidence_message_ids, batch)
            if not turn_ids:
                continue
            if not await self.store.reinforce(item.pattern_id, item.confidence):
                logger.warning("Reinforcement for unknown pattern", pattern_id=item.pattern_id)
                continue
            await self.deduplicator.record_observation(
                item.pattern_id,
                turn_ids,
                roles,
                batch,
                item.confidence,
                item.signal,
                source_id=f"chat:{chat_id}:reinforcement:{item.pattern_id}",
            )
            for entry_uuid in item.entry_uuids:
                await self.store.link_entry(
                    item.pattern_id, entry_uuid, "compaction", item.confidence
                )
            stats.reinforced += 1

        for item in extraction.contradictions:
            if await self.store.update_status(item.pattern_id, "disputed"):
                stats.disputed += 1

        for item in extraction.supersedes:
            old = await self.store.get_pattern(item.old_pattern_id)
            if old is not None and await self.store.update_status(old.id, "superseded"):
                stats.superseded += 1
            await self.deduplicator.upsert_extracted_pattern(
                PatternCandidate(
                    content=item.new_pattern_content,
                    kind=old.kind if old is not None else "behavior",
                    confidence=SUPERSEDE_CONFIDENCE,
                    signal="explicit",
                    evidence_turn_ids=item.evidence_message_ids,
                ),
                batch,
                chat_id,
            )

        return stats

    @staticmethod
    async def _notify(on_compacted: Optional[OnCompacted], message: str) -> None:
        if on_compacted is None:
            return
        try:
            await on_compacted(message)
        except Exception as e:
            logger.warning("Compaction notification failed", error=str(e))
