"""Tests for CompactionEngine."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from memobot.llm.interface import EngineResponse, Usage
from memobot.memory.compaction import (
    COMPACTION_IN_PROGRESS,
    NOTHING_TO_COMPACT,
    CompactionEngine,
    CompactionStats,
)
from memobot.memory.dedup import PatternDeduplicator, canonical_hash
from memobot.memory.extractor import CompactionExtraction, PatternExtractor
from memobot.storage.locks import AdvisoryLock


def _response(payload) -> EngineResponse:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return EngineResponse(
        text=text, tool_requests=[], usage=Usage(), model="test-model", latency_ms=5
    )


def _extraction(**overrides):
    data = {"new_patterns": [], "reinforcements": [], "contradictions": [], "supersedes": []}
    data.update(overrides)
    return data


@pytest.fixture
def engine():
    mock = MagicMock()
    mock.provider = "anthropic"
    mock.complete = AsyncMock(return_value=_response(_extraction()))
    return mock


@pytest.fixture
def compaction(db_manager, turn_repo, pattern_store, engine):
    return CompactionEngine(
        turn_repo,
        pattern_store,
        PatternDeduplicator(pattern_store),
        PatternExtractor(engine),
        AdvisoryLock(db_manager),
        token_budget=12_000,
        interval_hours=12.0,
        min_turns_for_time=10,
        min_turns_for_force=4,
    )


async def _conversation(turn_repo, pairs: int, chat_id: str = "c1"):
    """Insert alternating user/assistant turns; return their ids."""
    ids = []
    for i in range(pairs):
        ids.append(await turn_repo.insert(chat_id, "user", f"user message {i}"))
        ids.append(await turn_repo.insert(chat_id, "assistant", f"assistant reply {i}"))
    return ids


async def _insert_pattern(store, content, kind="fact", confidence=0.6):
    return await store.insert_pattern(
        content=content,
        kind=kind,
        confidence=confidence,
        canonical_hash=canonical_hash(content),
    )


class TestCompactionStats:
    def test_empty_summary(self):
        assert CompactionStats().summary() == ""

    def test_summary_format(self):
        """Notes are joined with a middle dot; kinds are de-duplicated."""
        stats = CompactionStats(
            saved_kinds=["fact", "event", "fact"],
            reinforced=2,
            disputed=1,
            superseded=1,
            stale_events=1,
        )
        assert stats.summary() == (
            "saved 3 memories (fact, event) · reinforced 2 · flagged 1 as disputed"
            " · superseded 1 · 1 stale event memory pending review"
        )

    def test_singular_memory(self):
        assert CompactionStats(saved_kinds=["goal"]).summary() == "saved 1 memory (goal)"


class TestTriggers:
    """Tests for needs_compaction."""

    async def test_too_few_turns(self, compaction, turn_repo):
        await _conversation(turn_repo, 2)
        buffer = await turn_repo.get_recent("c1")
        assert await compaction.needs_compaction("c1", buffer) is False

    async def test_time_trigger_when_never_compacted(self, compaction, turn_repo):
        await _conversation(turn_repo, 5)
        buffer = await turn_repo.get_recent("c1")
        assert await compaction.needs_compaction("c1", buffer) is True

    async def test_time_trigger_waits_for_interval(self, compaction, turn_repo):
        """A recent compaction suppresses the time trigger."""
        ids = await _conversation(turn_repo, 1)
        await turn_repo.mark_compacted(ids)
        await _conversation(turn_repo, 5)

        buffer = await turn_repo.get_recent("c1")
        assert await compaction.needs_compaction("c1", buffer) is False

    async def test_budget_trigger(self, compaction, turn_repo):
        compaction.token_budget = 10
        await turn_repo.insert("c1", "user", "x" * 40)
        buffer = await turn_repo.get_recent("c1")
        assert await compaction.needs_compaction("c1", buffer) is True


class TestCompactionPasses:
    """Tests for compaction passes."""

    async def test_compacts_oldest_half(self, compaction, turn_repo, pattern_store, engine):
        """The oldest half is extracted, applied and marked consumed."""
        ids = await _conversation(turn_repo, 5)
        engine.complete.return_value = _response(
            _extraction(
                new_patterns=[
                    {
                        "content": "User lives in Porto",
                        "kind": "fact",
                        "confidence": 0.9,
                        "signal": "explicit",
                        "evidence_message_ids": [ids[0]],
                    }
                ]
            )
        )
        notify = AsyncMock()

        summary = await compaction.compact_if_needed("c1", notify)

        assert summary == "saved 1 memory (fact)"
        notify.assert_awaited_once_with("saved 1 memory (fact)")
        remaining = await turn_repo.get_recent("c1")
        assert [t.id for t in remaining] == ids[5:]
        assert await pattern_store.find_active_by_hash(canonical_hash("User lives in Porto"))

        prompt = engine.complete.await_args.kwargs["messages"][0].content
        assert "user message 0" in prompt
        assert "assistant reply 4" not in prompt

    async def test_lock_held_skips_pass(self, compaction, turn_repo, engine, db_manager):
        """With the lock taken nothing is extracted or marked."""
        await _conversation(turn_repo, 5)
        other = AdvisoryLock(db_manager)
        assert await other.try_acquire()

        assert await compaction.compact_if_needed("c1") is None

        engine.complete.assert_not_awaited()
        assert len(await turn_repo.get_recent("c1")) == 10

    async def test_lock_released_after_pass(self, compaction, turn_repo, db_manager):
        await _conversation(turn_repo, 5)
        await compaction.compact_if_needed("c1")

        assert await AdvisoryLock(db_manager).try_acquire()

    async def test_failed_extraction_still_consumes_batch(
        self, compaction, turn_repo, engine
    ):
        """Unparseable output marks the batch and reports nothing."""
        await _conversation(turn_repo, 5)
        engine.complete.return_value = _response("definitely not json")
        notify = AsyncMock()

        assert await compaction.compact_if_needed("c1", notify) is None

        notify.assert_not_awaited()
        assert len(await turn_repo.get_recent("c1")) == 5

    async def test_force_with_too_few_turns(self, compaction, turn_repo, engine):
        await _conversation(turn_repo, 1)
        notify = AsyncMock()

        assert await compaction.force_compact("c1", notify) == NOTHING_TO_COMPACT

        notify.assert_awaited_once_with(NOTHING_TO_COMPACT)
        engine.complete.assert_not_awaited()

    async def test_force_while_locked(self, compaction, turn_repo, db_manager):
        await _conversation(turn_repo, 3)
        await AdvisoryLock(db_manager).try_acquire()
        notify = AsyncMock()

        assert await compaction.force_compact("c1", notify) == COMPACTION_IN_PROGRESS
        notify.assert_awaited_once_with(COMPACTION_IN_PROGRESS)

    async def test_force_rereads_buffer_under_lock(self, compaction, turn_repo, engine):
        """Turns consumed by another pass before the lock is taken are not re-sent."""
        ids = await _conversation(turn_repo, 4)
        acquire = compaction.lock.try_acquire

        async def acquire_after_other_pass():
            await turn_repo.mark_compacted(ids)
            return await acquire()

        compaction.lock.try_acquire = acquire_after_other_pass
        notify = AsyncMock()

        assert await compaction.force_compact("c1", notify) == NOTHING_TO_COMPACT

        engine.complete.assert_not_awaited()
        notify.assert_awaited_once_with(NOTHING_TO_COMPACT)

    async def test_force_ignores_triggers(self, compaction, turn_repo, engine):
        """Forced passes run below the time-trigger minimum."""
        await _conversation(turn_repo, 2)

        await compaction.force_compact("c1")

        engine.complete.assert_awaited_once()
        assert len(await turn_repo.get_recent("c1")) == 2

    async def test_schedule_runs_in_background(self, compaction, turn_repo, engine):
        await _conversation(turn_repo, 5)

        task = compaction.schedule("c1")
        await task

        engine.complete.assert_awaited_once()

    async def test_notification_failure_ignored(self, compaction, turn_repo):
        await _conversation(turn_repo, 1)
        notify = AsyncMock(side_effect=RuntimeError("telegram down"))

        assert await compaction.force_compact("c1", notify) == NOTHING_TO_COMPACT


class TestApplyExtraction:
    """Tests for applying reinforcements, contradictions and supersessions."""

    async def test_lifecycle_changes(self, compaction, turn_repo, pattern_store):
        ids = await _conversation(turn_repo, 2)
        batch = await turn_repo.get_recent("c1")
        liked = await _insert_pattern(pattern_store, "User likes jazz", "preference")
        job = await _insert_pattern(pattern_store, "User works at Initech")
        city = await _insert_pattern(pattern_store, "User lives in Madrid")

        extraction = CompactionExtraction.model_validate(
            _extraction(
                reinforcements=[
                    {
                        "pattern_id": liked.id,
                        "confidence": 0.9,
                        "signal": "explicit",
                        "evidence_message_ids": [ids[0]],
                        "entry_uuids": ["e-1"],
                    }
                ],
                contradictions=[
                    {"pattern_id": job.id, "reason": "quit", "evidence_message_ids": [ids[2]]}
                ],
                supersedes=[
                    {
                        "old_pattern_id": city.id,
                        "reason": "moved",
                        "new_pattern_content": "User lives in Valencia",
                        "evidence_message_ids": [ids[2]],
                    }
                ],
            )
        )

        stats = await compaction.apply_extraction("c1", extraction, batch)

        assert stats.summary() == "reinforced 1 · flagged 1 as disputed · superseded 1"
        assert (await pattern_store.get_pattern(liked.id)).times_seen == 2
        assert (await pattern_store.get_pattern(job.id)).status == "disputed"
        assert (await pattern_store.get_pattern(city.id)).status == "superseded"

        replacement = await pattern_store.find_active_by_hash(
            canonical_hash("User lives in Valencia")
        )
        assert replacement.kind == "fact"
        assert replacement.confidence == 0.8

        observations = await pattern_store.get_observations(liked.id)
        assert observations[-1].source_id == f"chat:c1:reinforcement:{liked.id}"

    async def test_reinforcement_needs_user_evidence(
        self, compaction, turn_repo, pattern_store
    ):
        """Reinforcements citing only assistant turns are ignored."""
        ids = await _conversation(turn_repo, 1)
        batch = await turn_repo.get_recent("c1")
        liked = await _insert_pattern(pattern_store, "User likes jazz", "preference")

        extraction = CompactionExtraction.model_validate(
            _extraction(
                reinforcements=[
                    {
                        "pattern_id": liked.id,
                        "confidence": 0.9,
                        "signal": "explicit",
                        "evidence_message_ids": [ids[1]],
                    }
                ]
            )
        )
        stats = await compaction.apply_extraction("c1", extraction, batch)

        assert stats.reinforced == 0
        assert (await pattern_store.get_pattern(liked.id)).times_seen == 1

    async def test_unknown_pattern_ids_ignored(self, compaction, turn_repo):
        ids = await _conversation(turn_repo, 1)
        batch = await turn_repo.get_recent("c1")

        extraction = CompactionExtraction.model_validate(
            _extraction(
                reinforcements=[
                    {
                        "pattern_id": 404,
                        "confidence": 0.9,
                        "signal": "explicit",
                        "evidence_message_ids": [ids[0]],
                    }
                ],
                contradictions=[
                    {"pattern_id": 405, "reason": "x", "evidence_message_ids": [ids[0]]}
                ],
            )
        )
        stats = await compaction.apply_extraction("c1", extraction, batch)

        assert stats.summary() == ""
