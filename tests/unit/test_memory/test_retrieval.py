"""Tests for pattern retrieval."""

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from memobot.memory.dedup import canonical_hash
from memobot.memory.models import ScoredPattern
from memobot.memory.retrieval import (
    PatternRetriever,
    budget_cap,
    is_short_query,
    mmr_rerank,
    should_retrieve,
)


def _scored(pid, similarity, score, content="x", kind="fact"):
    return ScoredPattern(
        id=pid,
        content=content,
        kind=kind,
        canonical_hash=f"h{pid}",
        similarity=similarity,
        score=score,
    )


class TestShouldRetrieve:
    """Tests for the cheap pre-filter."""

    @pytest.mark.parametrize(
        "query",
        [
            "/start",
            "/compact now please",
            "hi",
            "ok thanks",
            "I weigh 85kg today",
            "show my weight history",
            "log 80 for today",
        ],
    )
    def test_skipped(self, query):
        assert should_retrieve(query) is False

    @pytest.mark.parametrize(
        "query",
        [
            "what should I cook tonight?",
            "how have I been sleeping lately",
            "show me everything you remember about my sister and her new job in Berlin",
        ],
    )
    def test_retrieved(self, query):
        assert should_retrieve(query) is True

    def test_short_query(self):
        assert is_short_query("what should I cook tonight?")
        assert not is_short_query("tell me what you know about my long term running goals")


class TestMmrRerank:
    def test_empty(self):
        assert mmr_rerank([]) == []

    def test_top_score_first(self):
        """The best-scoring candidate always leads."""
        ranked = mmr_rerank([_scored(1, 0.5, 0.4), _scored(2, 0.9, 0.8)])
        assert ranked[0].id == 2

    def test_diversity_promotes_less_similar(self):
        """A slightly lower score with lower redundancy can move up."""
        candidates = [
            _scored(1, 0.95, 0.90),
            _scored(2, 0.95, 0.89),
            _scored(3, 0.50, 0.85),
        ]
        ranked = mmr_rerank(candidates, lam=0.7)
        assert [p.id for p in ranked] == [1, 3, 2]

    def test_equal_scores_prefer_less_redundant(self):
        ranked = mmr_rerank([_scored(1, 0.9, 0.6), _scored(2, 0.5, 0.6)])
        assert [p.id for p in ranked] == [2, 1]

    @pytest.mark.parametrize("lam", [0.0, 0.3, 0.7, 1.0])
    @pytest.mark.parametrize("seed", range(15))
    def test_dominated_never_ranked_first(self, lam, seed):
        """A higher-or-equal score with lower-or-equal similarity always ranks earlier."""
        rng = random.Random(seed)
        grid = [0.4, 0.55, 0.7, 0.85, 1.0]
        candidates = [
            _scored(i, rng.choice(grid), rng.choice(grid)) for i in range(rng.randint(2, 12))
        ]

        position = {p.id: i for i, p in enumerate(mmr_rerank(candidates, lam=lam))}

        for a in candidates:
            for b in candidates:
                dominates = (
                    a.score >= b.score
                    and a.similarity <= b.similarity
                    and (a.score, a.similarity) != (b.score, b.similarity)
                )
                if dominates:
                    assert position[a.id] < position[b.id], (a, b)


class TestBudgetCap:
    def test_stops_at_first_overflow(self):
        """Patterns are kept in order until the budget runs out."""
        patterns = [
            _scored(1, 0.9, 0.9, content="a" * 150),
            _scored(2, 0.9, 0.9, content="b" * 150),
            _scored(3, 0.9, 0.9, content="c" * 10),
        ]
        # 100 tokens = 400 chars; each of the first two costs 200
        kept = budget_cap(patterns, budget_tokens=100)
        assert [p.id for p in kept] == [1, 2]

    def test_first_too_large(self):
        assert budget_cap([_scored(1, 0.9, 0.9, content="a" * 1000)], 10) == []


class TestPatternRetriever:
    """Tests for PatternRetriever.retrieve."""

    @pytest.fixture
    def embedder(self):
        mock = MagicMock()
        mock.embed = AsyncMock(return_value=[1.0, 0.0])
        return mock

    async def test_skipped_query_not_embedded(self, pattern_store, embedder):
        retriever = PatternRetriever(pattern_store, embedder)
        result = await retriever.retrieve("hi", chat_id="c1")

        assert result.skipped
        assert result.patterns == []
        embedder.embed.assert_not_awaited()

    async def test_retrieves_and_logs(self, pattern_store, embedder, db_manager):
        """Matching patterns are returned and the retrieval is audited."""
        pattern = await pattern_store.insert_pattern(
            content="User cooks pasta on Fridays",
            kind="temporal",
            confidence=0.9,
            canonical_hash=canonical_hash("User cooks pasta on Fridays"),
            embedding=[1.0, 0.05],
        )
        await pattern_store.insert_pattern(
            content="User dislikes running",
            kind="preference",
            confidence=0.9,
            canonical_hash=canonical_hash("User dislikes running"),
            embedding=[0.0, 1.0],
        )

        retriever = PatternRetriever(pattern_store, embedder)
        result = await retriever.retrieve("what should I cook tonight?", chat_id="c1")

        assert [p.id for p in result.patterns] == [pattern.id]
        assert result.kinds == ["temporal"]
        assert not result.degraded

        async with db_manager.get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM memory_retrieval_logs")
            row = await cursor.fetchone()
        assert row["chat_id"] == "c1"
        assert row["degraded"] == 0
        assert row["pattern_ids"] == f"[{pattern.id}]"

    async def test_short_query_uses_stricter_floor(self, embedder):
        """Short queries search with the higher similarity floor."""
        store = MagicMock()
        store.search = AsyncMock(return_value=[])
        retriever = PatternRetriever(store, embedder, min_similarity=0.4, short_min_similarity=0.52)

        await retriever.retrieve("what should I cook tonight?")
        assert store.search.await_args.kwargs["min_similarity"] == 0.52

        await retriever.retrieve(
            "remind me what I told you about the trip I was planning for next summer"
        )
        assert store.search.await_args.kwargs["min_similarity"] == 0.4

    async def test_score_floor_filters(self, embedder):
        store = MagicMock()
        store.search = AsyncMock(
            return_value=[_scored(1, 0.9, 0.8), _scored(2, 0.55, 0.45)]
        )
        retriever = PatternRetriever(store, embedder, short_min_score=0.5)

        result = await retriever.retrieve("what should I cook tonight?")
        assert [p.id for p in result.patterns] == [1]

    async def test_embedding_failure_is_degraded(self, pattern_store, db_manager):
        """Failures yield an empty degraded result instead of raising."""
        embedder = MagicMock()
        embedder.embed = AsyncMock(side_effect=RuntimeError("rate limited"))
        retriever = PatternRetriever(pattern_store, embedder)

        result = await retriever.retrieve("what should I cook tonight?", chat_id="c1")

        assert result.degraded
        assert result.patterns == []
        async with db_manager.get_connection() as conn:
            cursor = await conn.execute("SELECT degraded FROM memory_retrieval_logs")
            row = await cursor.fetchone()
        assert row["degraded"] == 1

    async def test_log_failure_ignored(self, embedder):
        store = MagicMock()
        store.search = AsyncMock(return_value=[])
        store.log_retrieval = AsyncMock(side_effect=RuntimeError("db locked"))
        retriever = PatternRetriever(store, embedder)

        result = await retriever.retrieve("what should I cook tonight?", chat_id="c1")
        assert not result.degraded

    def test_from_settings(self, embedder):
        settings = MagicMock(
            retrieval_min_similarity=0.3,
            retrieval_short_min_similarity=0.6,
            retrieval_min_score=0.2,
            retrieval_short_min_score=0.55,
            pattern_token_budget=500,
        )
        retriever = PatternRetriever.from_settings(MagicMock(), embedder, settings)
        assert retriever.short_min_similarity == 0.6
        assert retriever.token_budget == 500
