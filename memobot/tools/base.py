"""Base protocol for agent tools."""

from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel

from ..llm.interface import ToolSpec

TruncationMode = Literal["none", "lines", "chars"]


@dataclass
class ToolResult:
    """Outcome of one tool invocation. Errors are text, never raised."""

    content: str
    is_error: bool = False


@runtime_checkable
class Tool(Protocol):
    """Protocol for tools the reasoning engine can call."""

    name: str
    description: str
    args_model: type[BaseModel]
    truncation: TruncationMode

    async def run(self, args: BaseModel) -> str:
        """Execute with validated arguments and return result text."""
        ...


def tool_spec(tool: Tool) -> ToolSpec:
    """JSON-schema description of ``tool`` for the engine."""
    schema = tool.args_model.model_json_schema()
    schema.pop("title", None)
    return ToolSpec(name=tool.name, description=tool.description, parameters=schema)
