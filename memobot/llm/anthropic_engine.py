"""Anthropic Messages API reasoning engine."""

import time
from typing import Any, Optional

import structlog
from anthropic import AsyncAnthropic

from .interface import EngineResponse, ToolRequest, ToolSpec, TranscriptMessage, Usage
from .openai_engine import JSON_ONLY_INSTRUCTION
from .usage import estimate_cost

logger = structlog.get_logger()


def to_anthropic_messages(messages: list[TranscriptMessage]) -> list[dict[str, Any]]:
    """Convert the neutral transcript to Messages API content.

    Consecutive tool results are grouped into one user message, as the
    API expects them to directly follow the assistant's tool_use turn.
    """
    result: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            }
            last = result[-1] if result else None
            if (
                last
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and last["content"]
                and last["content"][0].get("type") == "tool_result"
            ):
                last["content"].append(block)
            else:
                result.append({"role": "user", "content": [block]})
        elif msg.role == "assistant" and msg.tool_requests:
            content: list[dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for req in msg.tool_requests:
                content.append(
                    {
                        "type": "tool_use",
                        "id": req.id,
                        "name": req.name,
                        "input": req.arguments,
                    }
                )
            result.append({"role": "assistant", "content": content})
        else:
            result.append({"role": msg.role, "content": msg.content})
    return result


def to_anthropic_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters,
        }
        for tool in tools
    ]


class AnthropicEngine:
    """Reasoning engine backed by the Anthropic Messages API."""

    provider = "anthropic"

    def __init__(
        self,
        model: str,
        api_key: str,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.model = model

    async def complete(
        self,
        system: str,
        messages: list[TranscriptMessage],
        tools: Optional[list[ToolSpec]] = None,
        max_tokens: int = 4096,
        json_output: bool = False,
    ) -> EngineResponse:
        """Send a Messages API request."""
        if json_output:
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION}" if system else JSON_ONLY_INSTRUCTION

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": to_anthropic_messages(messages),
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = to_anthropic_tools(tools)

        start = time.monotonic()
        response = await self.client.messages.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        texts: list[str] = []
        tool_requests: list[ToolRequest] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_requests.append(
                    ToolRequest(id=block.id, name=block.name, arguments=dict(block.input))
                )

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens

        return EngineResponse(
            text="\n".join(t for t in texts if t),
            tool_requests=tool_requests,
            usage=Usage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=estimate_cost(self.model, input_tokens, output_tokens),
            ),
            model=response.model or self.model,
            latency_ms=latency_ms,
        )
