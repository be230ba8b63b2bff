"""LLM-based pattern extraction from conversation turns."""

import json
import re
from typing import Any, Optional, Sequence

import structlog
from pydantic import BaseModel, Field, ValidationError

from ..conversation.models import ConversationTurn
from ..llm.interface import ReasoningEngine, TranscriptMessage
from ..llm.usage import UsageRecorder
from .models import Pattern, PatternKind, Signal

logger = structlog.get_logger()

EXTRACTION_MAX_TOKENS = 2048

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

_ROLE_LABELS = {"user": "User", "tool_result": "Tool Result", "assistant": "Assistant"}

EXTRACT_PATTERNS_PROMPT = """\
Analyze these conversation messages and extract patterns, facts, and events.

Existing patterns (for reference, to reinforce or contradict):
{existing}

Messages to analyze:
<untrusted>
{messages}
</untrusted>

Extract patterns following these rules:
- Atomic patterns only (one claim each)
- Maximum {max_new} new patterns
- Replace pronouns with specific nouns
- Resolve entity references to canonical names
- Only cite user or tool_result messages as evidence (never assistant messages)
- signal: "explicit" for direct user statements, "implicit" for inferred patterns
- Choose kinds carefully:
  - fact: durable biographical detail (name, city, role, allergies, relationships)
  - event: specific one-time occurrence (trip, appointment, move, launch)
  - temporal: recurring timing pattern (e.g. "usually Sundays")
  - belief: opinion/value stance rather than concrete biography

Return JSON matching this schema:
{{
  "new_patterns": [{{ "content": "...", "kind": "behavior|emotion|belief|goal|preference|temporal|causal|fact|event", "confidence": 0.0-1.0, "signal": "explicit|implicit", "evidence_message_ids": [...], "entry_uuids": [...], "temporal": {{}} }}],
  "reinforcements": [{{ "pattern_id": N, "confidence": 0.0-1.0, "signal": "explicit|implicit", "evidence_message_ids": [...], "entry_uuids": [...] }}],
  "contradictions": [{{ "pattern_id": N, "reason": "...", "evidence_message_ids": [...] }}],
  "supersedes": [{{ "old_pattern_id": N, "reason": "...", "new_pattern_content": "...", "evidence_message_ids": [...] }}]
}}"""


class ExtractedPattern(BaseModel):
    content: str = Field(min_length=1)
    kind: PatternKind
    confidence: float = Field(ge=0.0, le=1.0)
    signal: Signal
    evidence_message_ids: list[int]
    entry_uuids: list[str] = Field(default_factory=list)
    temporal: dict[str, Any] = Field(default_factory=dict)


class Reinforcement(BaseModel):
    pattern_id: int
    confidence: float = Field(ge=0.0, le=1.0)
    signal: Signal
    evidence_message_ids: list[int]
    entry_uuids: list[str] = Field(default_factory=list)


class Contradiction(BaseModel):
    pattern_id: int
    reason: str
    evidence_message_ids: list[int]


class Supersession(BaseModel):
    old_pattern_id: int
    reason: str
    new_pattern_content: str = Field(min_length=1)
    evidence_message_ids: list[int]


class CompactionExtraction(BaseModel):
    """Validated extraction result for one compaction pass."""

    new_patterns: list[ExtractedPattern]
    reinforcements: list[Reinforcement]
    contradictions: list[Contradiction]
    supersedes: list[Supersession]


def strip_json_fence(text: str) -> str:
    """Unwrap a ```json fenced block if the model added one."""
    match = _FENCED_JSON.search(text)
    return match.group(1) if match else text


def format_turns(turns: Sequence[ConversationTurn]) -> str:
    return "\n".join(
        f"[id:{t.id}] {_ROLE_LABELS.get(t.role, t.role)}: {t.content}" for t in turns
    )


class PatternExtractor:
    """Extracts pattern changes from a batch of turns using the reasoning engine."""

    def __init__(
        self,
        engine: ReasoningEngine,
        usage_recorder: Optional[UsageRecorder] = None,
        max_new_patterns: int = 7,
    ) -> None:
        self._engine = engine
        self._usage = usage_recorder
        self.max_new_patterns = max_new_patterns

    def build_prompt(
        self, turns: Sequence[ConversationTurn], existing: Sequence[Pattern]
    ) -> str:
        existing_text = (
            "\n".join(f"[id:{p.id}] {p.content}" for p in existing) if existing else "None"
        )
        return EXTRACT_PATTERNS_PROMPT.format(
            existing=existing_text,
            messages=format_turns(turns),
            max_new=self.max_new_patterns,
        )

    def parse(self, text: str) -> Optional[CompactionExtraction]:
        """Parse and validate a raw engine response; None when unusable."""
        try:
            extraction = CompactionExtraction.model_validate(
                json.loads(strip_json_fence(text))
            )
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Pattern extraction parse error", error=str(exc)[:300])
            return None

        if len(extraction.new_patterns) > self.max_new_patterns:
            logger.warning(
                "Pattern extraction exceeded new pattern limit",
                count=len(extraction.new_patterns),
                limit=self.max_new_patterns,
            )
            return None
        return extraction

    async def extract(
        self, turns: Sequence[ConversationTurn], existing: Sequence[Pattern]
    ) -> Optional[CompactionExtraction]:
        """Run extraction over ``turns``. Never raises."""
        prompt = self.build_prompt(turns, existing)

        try:
            response = await self._engine.complete(
                system="",
                messages=[TranscriptMessage(role="user", content=prompt)],
                max_tokens=EXTRACTION_MAX_TOKENS,
                json_output=True,
            )
        except Exception as exc:
            logger.warning("Pattern extraction failed", error=str(exc))
            return None

        if self._usage:
            await self._usage.record(
                provider=self._engine.provider,
                model=response.model,
                purpose="compaction",
                usage=response.usage,
                latency_ms=response.latency_ms,
            )

        if not response.text:
            return None
        return self.parse(response.text)
