"""Per-message agent: memory retrieval, tool loop, persistence."""

import asyncio
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from ..conversation.models import ConversationTurn
from ..conversation.repository import TurnRepository
from ..llm.interface import TranscriptMessage
from ..memory.compaction import CompactionEngine, OnCompacted
from ..memory.models import RetrievalResult
from ..memory.retrieval import PatternRetriever
from .loop import LoopResult, ToolLoop
from .prompt import build_system_prompt

logger = structlog.get_logger()

RECENT_TURNS_LIMIT = 50
ACTIVITY_MAX_KINDS = 3


@dataclass
class AgentResult:
    """Reply text (None when the engine produced nothing) and activity line."""

    response: Optional[str]
    activity: str


def rebuild_history(turns: Sequence[ConversationTurn]) -> list[TranscriptMessage]:
    """User and assistant turns as a transcript; tool results are live-only."""
    messages = [
        TranscriptMessage(role=t.role, content=t.content)
        for t in turns
        if t.role in ("user", "assistant")
    ]
    while messages and messages[0].role != "user":
        messages.pop(0)
    return messages


def build_activity(retrieval: RetrievalResult, loop_result: LoopResult) -> str:
    """One-line summary of what happened behind the reply."""
    parts: list[str] = []
    if retrieval.patterns:
        kinds = ", ".join(retrieval.kinds[:ACTIVITY_MAX_KINDS])
        count = len(retrieval.patterns)
        parts.append(f"used {count} memories ({kinds})" if kinds else f"used {count} memories")
    if retrieval.degraded:
        parts.append("memory degraded")
    if loop_result.tool_call_count:
        parts.append(
            f"{loop_result.tool_call_count} tools ({', '.join(loop_result.tool_names)})"
        )
    return " | ".join(parts)


class Agent:
    """Handles one inbound message end to end."""

    def __init__(
        self,
        turns: TurnRepository,
        retriever: PatternRetriever,
        loop: ToolLoop,
        compaction: Optional[CompactionEngine] = None,
        timezone: str = "UTC",
    ) -> None:
        self.turns = turns
        self.retriever = retriever
        self.loop = loop
        self.compaction = compaction
        self.timezone = timezone
        self._background: set[asyncio.Task] = set()

    async def run(
        self,
        chat_id: str,
        message: str,
        external_message_id: Optional[str] = None,
        on_compacted: Optional[OnCompacted] = None,
    ) -> AgentResult:
        """Answer ``message`` and schedule compaction."""
        await self.turns.insert(
            chat_id, "user", message, external_message_id=external_message_id
        )

        retrieval = await self.retriever.retrieve(message, chat_id=chat_id)

        system_prompt = build_system_prompt(
            retrieval.patterns,
            retrieval.degraded,
            tool_names=[t.name for t in self.loop.executor.registry.list_tools()],
            timezone=self.timezone,
        )
        history = rebuild_history(await self.turns.get_recent(chat_id, RECENT_TURNS_LIMIT))

        loop_result = await self.loop.run(system_prompt, history, chat_id)
        activity = build_activity(retrieval, loop_result)

        response = loop_result.text or None
        if response:
            await self.turns.insert(chat_id, "assistant", response)

        logger.info(
            "Agent turn complete",
            chat_id=chat_id,
            patterns=len(retrieval.patterns),
            degraded=retrieval.degraded,
            tool_calls=loop_result.tool_call_count,
            has_response=response is not None,
        )

        if self.compaction is not None:
            task = self.compaction.schedule(chat_id, on_compacted)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return AgentResult(response=response, activity=activity)

    async def wait_background(self) -> None:
        """Wait for scheduled compactions (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
