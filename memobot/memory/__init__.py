"""Long-term pattern memory: store, dedup, retrieval, compaction."""

from .compaction import CompactionEngine
from .dedup import PatternDeduplicator
from .extractor import PatternExtractor
from .models import Pattern, PatternCandidate, RetrievalResult, ScoredPattern, UpsertOutcome
from .retrieval import PatternRetriever
from .store import PatternStore

__all__ = [
    "CompactionEngine",
    "Pattern",
    "PatternCandidate",
    "PatternDeduplicator",
    "PatternExtractor",
    "PatternRetriever",
    "PatternStore",
    "RetrievalResult",
    "ScoredPattern",
    "UpsertOutcome",
]
