"""OpenAI chat-completions reasoning engine.

Uses the openai SDK; any OpenAI-compatible endpoint works via ``base_url``.
"""

import json
import time
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from .interface import EngineResponse, ToolRequest, ToolSpec, TranscriptMessage, Usage
from .usage import estimate_cost

logger = structlog.get_logger()

JSON_ONLY_INSTRUCTION = "Return valid JSON only. Do not include markdown fences."


def to_openai_messages(
    system: str, messages: list[TranscriptMessage]
) -> list[dict[str, Any]]:
    """Convert the neutral transcript to chat-completions messages."""
    result: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for msg in messages:
        if msg.role == "tool":
            result.append(
                {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
            )
        elif msg.role == "assistant" and msg.tool_requests:
            result.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": req.id,
                            "type": "function",
                            "function": {
                                "name": req.name,
                                "arguments": req.raw_arguments
                                if req.raw_arguments is not None
                                else json.dumps(req.arguments),
                            },
                        }
                        for req in msg.tool_requests
                    ],
                }
            )
        else:
            result.append({"role": msg.role, "content": msg.content})
    return result


def to_openai_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def parse_tool_call(call: Any) -> ToolRequest:
    """Decode one tool call, keeping malformed arguments as a parse error."""
    raw = call.function.arguments or "{}"
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as exc:
        return ToolRequest(
            id=call.id,
            name=call.function.name,
            raw_arguments=raw,
            parse_error=f"invalid JSON arguments: {exc.msg}",
        )
    if not isinstance(arguments, dict):
        return ToolRequest(
            id=call.id,
            name=call.function.name,
            raw_arguments=raw,
            parse_error="arguments must be a JSON object",
        )
    return ToolRequest(
        id=call.id, name=call.function.name, arguments=arguments, raw_arguments=raw
    )


class OpenAIEngine:
    """Reasoning engine backed by OpenAI chat completions."""

    provider = "openai"

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model

    async def complete(
        self,
        system: str,
        messages: list[TranscriptMessage],
        tools: Optional[list[ToolSpec]] = None,
        max_tokens: int = 4096,
        json_output: bool = False,
    ) -> EngineResponse:
        """Send a chat completion request."""
        if json_output:
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION}" if system else JSON_ONLY_INSTRUCTION

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(system, messages),
            "max_tokens": max_tokens,
        }
        if tools:
            kwargs["tools"] = to_openai_tools(tools)
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}

        start = time.monotonic()
        response = await self.client.chat.completions.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        choice = response.choices[0]
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        tool_requests = [parse_tool_call(call) for call in choice.message.tool_calls or []]

        return EngineResponse(
            text=choice.message.content or "",
            tool_requests=tool_requests,
            usage=Usage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=estimate_cost(self.model, input_tokens, output_tokens),
            ),
            model=response.model or self.model,
            latency_ms=latency_ms,
        )
