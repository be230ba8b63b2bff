"""Pattern retrieval: pre-filter, similarity search, MMR rerank, budget cap."""

import re
from typing import List, Optional, Sequence

import structlog

from .dedup import Embedder, canonical_hash, extract_weight_kg
from .models import RetrievalResult, ScoredPattern
from .store import PatternStore

logger = structlog.get_logger()

SEARCH_LIMIT = 20
MMR_LAMBDA = 0.7
CHARS_PER_TOKEN = 4
PATTERN_FORMAT_OVERHEAD = 50
SHORT_QUERY_MAX_WORDS = 8
MIN_QUERY_WORDS = 3

DIRECTIVE_VERBS = frozenset(
    {
        "show",
        "give",
        "write",
        "compose",
        "draft",
        "list",
        "log",
        "send",
        "make",
        "create",
        "read",
        "open",
    }
)

_WORD = re.compile(r"[\w']+")


def _words(query: str) -> List[str]:
    return _WORD.findall(query.lower())


def is_short_query(query: str) -> bool:
    return len(_words(query)) <= SHORT_QUERY_MAX_WORDS


def should_retrieve(query: str) -> bool:
    """Cheap check for whether a message could benefit from memory."""
    text = query.strip()
    if text.startswith("/"):
        return False

    words = _words(text)
    if len(words) < MIN_QUERY_WORDS:
        return False

    # "I weigh 85kg today" is a logging request, not a recall question
    if extract_weight_kg(text) is not None:
        return False

    if len(words) <= SHORT_QUERY_MAX_WORDS and words[0] in DIRECTIVE_VERBS:
        return False

    return True


def mmr_rerank(
    patterns: Sequence[ScoredPattern], lam: float = MMR_LAMBDA
) -> List[ScoredPattern]:
    """Order candidates by maximal marginal relevance.

    Pairwise similarity between two patterns is approximated by the
    product of their similarities to the query.
    """
    if not patterns:
        return []

    # Ties go to the less redundant candidate.
    remaining = sorted(patterns, key=lambda p: (-p.score, p.similarity))
    selected = [remaining.pop(0)]

    while remaining:
        best_idx = 0
        best_mmr = float("-inf")
        for i, candidate in enumerate(remaining):
            max_sim = max(candidate.similarity * s.similarity for s in selected)
            mmr = lam * candidate.score - (1 - lam) * max_sim
            if mmr > best_mmr:
                best_mmr = mmr
                best_idx = i
        selected.append(remaining.pop(best_idx))

    return selected


def budget_cap(
    patterns: Sequence[ScoredPattern], budget_tokens: int
) -> List[ScoredPattern]:
    """Keep patterns in order until the next one would exceed the budget."""
    max_chars = budget_tokens * CHARS_PER_TOKEN
    total = 0
    kept: List[ScoredPattern] = []
    for pattern in patterns:
        cost = len(pattern.content) + PATTERN_FORMAT_OVERHEAD
        if total + cost > max_chars:
            break
        total += cost
        kept.append(pattern)
    return kept


class PatternRetriever:
    """Assembles the working memory set for a prompt."""

    def __init__(
        self,
        store: PatternStore,
        embedder: Embedder,
        min_similarity: float = 0.40,
        short_min_similarity: float = 0.52,
        min_score: float = 0.35,
        short_min_score: float = 0.50,
        token_budget: int = 2000,
    ) -> None:
        self.store = store
        self._embedder = embedder
        self.min_similarity = min_similarity
        self.short_min_similarity = short_min_similarity
        self.min_score = min_score
        self.short_min_score = short_min_score
        self.token_budget = token_budget

    @classmethod
    def from_settings(
        cls, store: PatternStore, embedder: Embedder, settings
    ) -> "PatternRetriever":
        return cls(
            store,
            embedder,
            min_similarity=settings.retrieval_min_similarity,
            short_min_similarity=settings.retrieval_short_min_similarity,
            min_score=settings.retrieval_min_score,
            short_min_score=settings.retrieval_short_min_score,
            token_budget=settings.pattern_token_budget,
        )

    async def retrieve(self, query: str, chat_id: Optional[str] = None) -> RetrievalResult:
        """Retrieve, rerank and cap patterns relevant to ``query``.

        Never raises: any failure yields an empty, degraded result.
        """
        if not should_retrieve(query):
            logger.debug("Retrieval skipped by pre-filter", query=query[:80])
            return RetrievalResult(skipped=True)

        short = is_short_query(query)
        floor = self.short_min_similarity if short else self.min_similarity
        score_floor = self.short_min_score if short else self.min_score

        try:
            embedding = await self._embedder.embed(query)
            candidates = await self.store.search(
                embedding, limit=SEARCH_LIMIT, min_similarity=floor
            )
            ranked = [p for p in mmr_rerank(candidates) if p.score >= score_floor]
            result = RetrievalResult(patterns=budget_cap(ranked, self.token_budget))
        except Exception as e:
            logger.warning("Pattern retrieval failed", error=str(e))
            result = RetrievalResult(degraded=True)

        if chat_id is not None:
            await self._log(chat_id, query, result)

        logger.info(
            "Patterns retrieved",
            count=len(result.patterns),
            degraded=result.degraded,
            short_query=short,
        )
        return result

    async def _log(self, chat_id: str, query: str, result: RetrievalResult) -> None:
        try:
            await self.store.log_retrieval(
                chat_id=chat_id,
                query_text=query,
                query_hash=canonical_hash(query),
                degraded=result.degraded,
                patterns=result.patterns,
            )
        except Exception as e:
            logger.warning("Failed to log retrieval", error=str(e))
