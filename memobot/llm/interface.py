"""Reasoning engine interface and shared types.

Defines the Protocol for reasoning engines and a provider-neutral
transcript. The agent loop and the pattern extractor only see these
types; each engine converts them to its SDK's wire format.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol

TranscriptRole = Literal["user", "assistant", "tool"]


@dataclass
class ToolRequest:
    """One tool invocation requested by the engine.

    ``parse_error`` is set when the engine sent arguments that are not a
    JSON object; ``raw_arguments`` then holds what was received.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: Optional[str] = None
    parse_error: Optional[str] = None

    @property
    def signature(self) -> str:
        """Name plus serialized arguments, for repeat detection."""
        if self.parse_error is not None:
            return f"{self.name}:{self.raw_arguments}"
        return f"{self.name}:{json.dumps(self.arguments, sort_keys=True)}"


@dataclass
class TranscriptMessage:
    """Provider-neutral transcript entry.

    Assistant messages may carry ``tool_requests``; ``tool`` messages carry
    the result for ``tool_call_id``.
    """

    role: TranscriptRole
    content: str = ""
    tool_requests: list[ToolRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None


@dataclass
class ToolSpec:
    """Tool schema offered to the engine."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class Usage:
    """Token counters and estimated cost of one engine call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


@dataclass
class EngineResponse:
    """Unified response from any reasoning engine."""

    text: str
    tool_requests: list[ToolRequest]
    usage: Usage
    model: str
    latency_ms: int


class ReasoningEngine(Protocol):
    """Protocol implemented by every reasoning engine backend."""

    provider: str
    model: str

    async def complete(
        self,
        system: str,
        messages: list[TranscriptMessage],
        tools: Optional[list[ToolSpec]] = None,
        max_tokens: int = 4096,
        json_output: bool = False,
    ) -> EngineResponse:
        """Run one completion over the transcript.

        Args:
            system: System instructions.
            messages: Ordered transcript, oldest first.
            tools: Tool schemas the engine may call.
            max_tokens: Output token ceiling.
            json_output: Ask the engine for a bare JSON object.

        Returns:
            EngineResponse with either final text or tool requests.
        """
        ...
