"""Tiered deduplication for extracted patterns.

A candidate passes through three tiers before it is stored:

1. exact: sha256 of the normalized content against live patterns
2. semantic: nearest live pattern by embedding at or above
   ``SEMANTIC_DUPLICATE_FLOOR``; a match is reinforced instead of
   duplicated, unless both texts state a body weight that disagrees, in
   which case the old pattern is superseded
3. insertion of a new pattern with provenance and evidence
"""

import hashlib
import re
from datetime import timedelta
from typing import List, Optional, Protocol, Sequence, Tuple

import structlog

from ..conversation.models import EVIDENCE_ROLES, ConversationTurn
from ..storage.database import utc_now
from .models import PatternCandidate, PatternObservation, UpsertOutcome
from .store import PatternStore

logger = structlog.get_logger()

SEMANTIC_DUPLICATE_FLOOR = 0.82
NUMERIC_FACT_EPSILON_KG = 0.5
IMPLICIT_SIGNAL_WEIGHT = 0.5
EVENT_TTL = timedelta(days=540)
SOURCE_ID_MAX_CHARS = 150
EVIDENCE_MAX_CHARS = 500

LB_TO_KG = 0.45359237

_WEIGHT_WORDS = re.compile(
    r"\b(weigh|weighs|weighed|weighing|weight|weights|bodyweight|scale)\b",
    re.IGNORECASE,
)
_WEIGHT_VALUE = re.compile(
    r"(\d+(?:[.,]\d+)?)\s*(kg|kgs|kilograms?|lbs?|pounds?)\b",
    re.IGNORECASE,
)
_WHITESPACE = re.compile(r"\s+")


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


def normalize_content(content: str) -> str:
    """Lower-case, collapse whitespace, trim."""
    return _WHITESPACE.sub(" ", content.lower()).strip()


def canonical_hash(content: str) -> str:
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def extract_weight_kg(text: str) -> Optional[float]:
    """Body-weight value stated in ``text``, normalized to kilograms.

    Requires weight vocabulary and a number with a mass unit; anything
    else is not a weight statement.
    """
    if not _WEIGHT_WORDS.search(text):
        return None
    match = _WEIGHT_VALUE.search(text)
    if not match:
        return None

    value = float(match.group(1).replace(",", "."))
    unit = match.group(2).lower()
    if unit.startswith(("lb", "pound")):
        value *= LB_TO_KG
    return value


def has_numeric_conflict(
    candidate: str, existing: str, epsilon_kg: float = NUMERIC_FACT_EPSILON_KG
) -> bool:
    """True when both texts state body weights that differ beyond epsilon."""
    new_kg = extract_weight_kg(candidate)
    old_kg = extract_weight_kg(existing)
    if new_kg is None or old_kg is None:
        return False
    return abs(new_kg - old_kg) > epsilon_kg


def filter_evidence(
    turn_ids: Sequence[int], batch: Sequence[ConversationTurn]
) -> Tuple[List[int], List[str]]:
    """Keep ids of user/tool_result turns from ``batch``.

    Returns the surviving ids in citation order and their distinct roles.
    """
    by_id = {turn.id: turn for turn in batch}
    filtered: List[int] = []
    roles: List[str] = []
    for turn_id in turn_ids:
        turn = by_id.get(turn_id)
        if turn is None or turn.role not in EVIDENCE_ROLES:
            continue
        if turn_id not in filtered:
            filtered.append(turn_id)
        if turn.role not in roles:
            roles.append(turn.role)
    return filtered, roles


def evidence_text(turn_ids: Sequence[int], batch: Sequence[ConversationTurn]) -> str:
    wanted = set(turn_ids)
    joined = " | ".join(t.content for t in batch if t.id in wanted)
    return joined[:EVIDENCE_MAX_CHARS]


def build_source_id(chat_id: str, turn_ids: Sequence[int]) -> str:
    ids = ",".join(str(i) for i in sorted(set(turn_ids)))
    return f"chat:{chat_id}:msg:{ids}"[:SOURCE_ID_MAX_CHARS]


class PatternDeduplicator:
    """Applies the dedup tiers and writes the outcome to the store."""

    def __init__(
        self,
        store: PatternStore,
        embedder: Optional[Embedder] = None,
        numeric_epsilon_kg: float = NUMERIC_FACT_EPSILON_KG,
        implicit_signal_weight: float = IMPLICIT_SIGNAL_WEIGHT,
    ) -> None:
        self.store = store
        self._embedder = embedder
        self._epsilon_kg = numeric_epsilon_kg
        self._implicit_weight = implicit_signal_weight

    def observation_confidence(self, confidence: float, signal: str) -> float:
        if signal == "implicit":
            return confidence * self._implicit_weight
        return confidence

    async def record_observation(
        self,
        pattern_id: int,
        turn_ids: Sequence[int],
        roles: Sequence[str],
        batch: Sequence[ConversationTurn],
        confidence: float,
        signal: str,
        source_id: str,
    ) -> None:
        await self.store.insert_observation(
            PatternObservation(
                pattern_id=pattern_id,
                turn_ids=list(turn_ids),
                evidence=evidence_text(turn_ids, batch),
                evidence_roles=list(roles),
                confidence=self.observation_confidence(confidence, signal),
                source_id=source_id,
            )
        )

    async def _embed(self, content: str) -> Optional[List[float]]:
        if not self._embedder:
            return None
        try:
            return await self._embedder.embed(content)
        except Exception as e:
            logger.warning("Pattern embedding failed", error=str(e))
            return None

    async def upsert_extracted_pattern(
        self,
        candidate: PatternCandidate,
        batch: Sequence[ConversationTurn],
        chat_id: str,
    ) -> UpsertOutcome:
        """Store ``candidate`` unless it duplicates an existing pattern."""
        turn_ids, roles = filter_evidence(candidate.evidence_turn_ids, batch)
        if not turn_ids:
            logger.debug(
                "Pattern candidate has no admissible evidence",
                content=candidate.content[:80],
            )
            return UpsertOutcome.SKIPPED_NO_EVIDENCE

        content_hash = canonical_hash(candidate.content)
        if await self.store.find_active_by_hash(content_hash):
            return UpsertOutcome.DUPLICATE

        source_id = build_source_id(chat_id, turn_ids)
        embedding = await self._embed(candidate.content)
        superseded = False

        if embedding:
            matches = await self.store.find_similar(
                embedding, limit=1, min_similarity=SEMANTIC_DUPLICATE_FLOOR
            )
            if matches:
                best = matches[0]
                if has_numeric_conflict(candidate.content, best.content, self._epsilon_kg):
                    await self.store.update_status(best.id, "superseded")
                    superseded = True
                    logger.info(
                        "Numeric fact superseded",
                        pattern_id=best.id,
                        similarity=round(best.similarity, 3),
                    )
                else:
                    await self.store.reinforce(best.id, candidate.confidence)
                    await self.store.insert_alias(best.id, candidate.content, embedding)
                    await self.record_observation(
                        best.id,
                        turn_ids,
                        roles,
                        batch,
                        candidate.confidence,
                        candidate.signal,
                        source_id,
                    )
                    return UpsertOutcome.REINFORCED

        expires_at = utc_now() + EVENT_TTL if candidate.kind == "event" else None
        pattern = await self.store.insert_pattern(
            content=candidate.content,
            kind=candidate.kind,
            confidence=candidate.confidence,
            canonical_hash=content_hash,
            embedding=embedding,
            temporal=candidate.temporal or None,
            source_id=source_id,
            expires_at=expires_at,
        )
        await self.record_observation(
            pattern.id,
            turn_ids,
            roles,
            batch,
            candidate.confidence,
            candidate.signal,
            source_id,
        )
        for entry_uuid in candidate.entry_uuids:
            await self.store.link_entry(
                pattern.id, entry_uuid, "compaction", candidate.confidence
            )

        if superseded:
            return UpsertOutcome.SUPERSEDED_AND_INSERTED
        return UpsertOutcome.INSERTED
