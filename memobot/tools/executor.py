"""Tool executor: dispatches tool requests and converts failures to text."""

from typing import Any, Optional

import structlog
from pydantic import ValidationError

from .base import ToolResult
from .registry import ToolRegistry
from .truncation import truncate_tool_result

logger = structlog.get_logger()


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolExecutor:
    """Run named tools. Never raises for tool-level problems."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(
        self,
        name: str,
        args: Optional[dict[str, Any]],
        parse_error: Optional[str] = None,
    ) -> ToolResult:
        """Execute ``name`` with ``args``.

        Unknown tools, undecodable or invalid arguments and errors raised by
        the tool all come back as an ``Error: ...`` result.
        """
        tool = self._registry.get(name)
        if tool is None:
            logger.warning("Unknown tool requested", tool=name)
            return ToolResult(content=f"Error: Unknown tool: {name}", is_error=True)

        if parse_error is not None:
            logger.warning("Tool arguments not decodable", tool=name, error=parse_error)
            return ToolResult(
                content=f"Error: Invalid arguments for {name}: {parse_error}",
                is_error=True,
            )

        try:
            validated = tool.args_model.model_validate(args or {})
        except ValidationError as exc:
            return ToolResult(
                content=f"Error: Invalid arguments for {name}: {_validation_summary(exc)}",
                is_error=True,
            )

        try:
            content = await tool.run(validated)
        except Exception as exc:
            logger.error("Tool execution failed", tool=name, error=str(exc))
            return ToolResult(content=f"Error: {exc}", is_error=True)

        logger.info("Tool executed", tool=name, result_chars=len(content))
        return ToolResult(content=content)

    def truncate_for_storage(self, name: str, content: str) -> str:
        """Shorten a result the way its tool asks for."""
        tool = self._registry.get(name)
        mode = tool.truncation if tool is not None else "chars"
        return truncate_tool_result(content, mode)
