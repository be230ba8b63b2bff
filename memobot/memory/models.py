"""Memory data models."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..storage.database import parse_ts

PatternKind = Literal[
    "behavior",
    "emotion",
    "belief",
    "goal",
    "preference",
    "temporal",
    "causal",
    "fact",
    "event",
]
PatternStatus = Literal["active", "disputed", "superseded"]
Signal = Literal["explicit", "implicit"]


class Pattern(BaseModel):
    """A durable memory unit."""

    id: int
    content: str
    kind: PatternKind = "behavior"
    confidence: float = 0.5
    strength: float = 1.0
    times_seen: int = 1
    status: PatternStatus = "active"
    canonical_hash: str
    embedding: Optional[List[float]] = None
    temporal: Optional[Dict[str, Any]] = None
    source_type: str = "chat_compaction"
    source_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Pattern":
        """Create from database row."""
        data = dict(row)
        data.pop("embedding_model", None)
        for field_name in ("embedding", "temporal"):
            raw = data.get(field_name)
            data[field_name] = json.loads(raw) if raw else None
        for field_name in ("expires_at", "first_seen", "last_seen", "created_at"):
            data[field_name] = parse_ts(data.get(field_name))
        return cls(**data)


class ScoredPattern(Pattern):
    """A pattern returned by similarity search."""

    similarity: float = 0.0
    score: float = 0.0


class PatternObservation(BaseModel):
    """Evidence binding a pattern to the turns that justified it."""

    pattern_id: int
    turn_ids: List[int]
    evidence: str
    evidence_roles: List[str]
    confidence: float = Field(ge=0.0, le=1.0)
    source_type: str = "chat_compaction"
    source_id: Optional[str] = None


@dataclass
class PatternCandidate:
    """A pattern proposed by extraction, before deduplication."""

    content: str
    kind: str = "behavior"
    confidence: float = 0.5
    signal: str = "explicit"
    evidence_turn_ids: List[int] = field(default_factory=list)
    entry_uuids: List[str] = field(default_factory=list)
    temporal: Dict[str, Any] = field(default_factory=dict)


class UpsertOutcome(str, Enum):
    """What the tiered dedup did with one candidate."""

    SKIPPED_NO_EVIDENCE = "skipped_no_evidence"
    DUPLICATE = "duplicate"
    REINFORCED = "reinforced"
    INSERTED = "inserted"
    SUPERSEDED_AND_INSERTED = "superseded_and_inserted"


@dataclass
class RetrievalResult:
    """Working memory set for one prompt."""

    patterns: List[ScoredPattern] = field(default_factory=list)
    degraded: bool = False
    skipped: bool = False

    @property
    def kinds(self) -> List[str]:
        """Distinct kinds in rank order."""
        seen: List[str] = []
        for p in self.patterns:
            if p.kind and p.kind not in seen:
                seen.append(p.kind)
        return seen
