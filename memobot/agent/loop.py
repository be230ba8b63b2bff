"""Bounded tool-calling loop over a reasoning engine.

Stops on final text, on the tool-call ceiling, on the wall-clock
deadline, or when the engine repeats the exact previous tool request.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from ..conversation.repository import TurnRepository
from ..llm.interface import ReasoningEngine, TranscriptMessage
from ..llm.usage import UsageRecorder
from ..tools.executor import ToolExecutor

logger = structlog.get_logger()

MAX_TOOL_CALLS = 15
WALL_CLOCK_TIMEOUT_SECONDS = 120.0


@dataclass
class LoopResult:
    """Final text plus what the loop did to get it."""

    text: str
    tool_call_count: int = 0
    tool_names: list[str] = field(default_factory=list)
    stop_reason: str = "final"


def best_effort_text(messages: list[TranscriptMessage]) -> str:
    """Last non-empty assistant text in ``messages``."""
    for msg in reversed(messages):
        if msg.role == "assistant" and msg.content.strip():
            return msg.content
    return ""


class ToolLoop:
    """Drives the engine through tool calls until it answers."""

    def __init__(
        self,
        engine: ReasoningEngine,
        executor: ToolExecutor,
        turns: Optional[TurnRepository] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        max_tool_calls: int = MAX_TOOL_CALLS,
        timeout_seconds: float = WALL_CLOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.turns = turns
        self._usage = usage_recorder
        self.max_tool_calls = max_tool_calls
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    async def run(
        self,
        system_prompt: str,
        history: list[TranscriptMessage],
        chat_id: str,
    ) -> LoopResult:
        """Run the loop; the caller's ``history`` is not modified."""
        transcript = list(history)
        run_start = len(transcript)
        tools = self.executor.registry.specs()
        start = self._clock()
        count = 0
        names: list[str] = []
        last_signature: Optional[str] = None

        def stop(reason: str) -> LoopResult:
            logger.info(
                "Tool loop stopped",
                chat_id=chat_id,
                reason=reason,
                tool_calls=count,
            )
            return LoopResult(
                text=best_effort_text(transcript[run_start:]),
                tool_call_count=count,
                tool_names=list(names),
                stop_reason=reason,
            )

        while True:
            if self._clock() - start >= self.timeout_seconds:
                return stop("timeout")
            if count >= self.max_tool_calls:
                return stop("max_tool_calls")

            response = await self.engine.complete(
                system=system_prompt, messages=transcript, tools=tools or None
            )
            if self._usage:
                await self._usage.record(
                    provider=self.engine.provider,
                    model=response.model,
                    purpose="agent",
                    usage=response.usage,
                    latency_ms=response.latency_ms,
                )

            if not response.tool_requests:
                return LoopResult(
                    text=response.text.strip(),
                    tool_call_count=count,
                    tool_names=list(names),
                )

            transcript.append(
                TranscriptMessage(
                    role="assistant",
                    content=response.text,
                    tool_requests=list(response.tool_requests),
                )
            )

            for request in response.tool_requests:
                if count >= self.max_tool_calls:
                    return stop("max_tool_calls")
                if request.signature == last_signature:
                    return stop("no_progress")
                last_signature = request.signature

                result = await self.executor.execute(
                    request.name, request.arguments, parse_error=request.parse_error
                )
                count += 1
                if request.name not in names:
                    names.append(request.name)

                transcript.append(
                    TranscriptMessage(
                        role="tool", content=result.content, tool_call_id=request.id
                    )
                )
                if self.turns is not None:
                    await self.turns.insert(
                        chat_id,
                        "tool_result",
                        self.executor.truncate_for_storage(request.name, result.content),
                        tool_call_id=request.id,
                    )
