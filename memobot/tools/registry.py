"""Tool registration and lookup."""

from typing import Optional

import structlog

from ..llm.interface import ToolSpec
from .base import Tool, tool_spec

logger = structlog.get_logger()


class ToolRegistry:
    """Registry of tools offered to the reasoning engine."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool. A later registration replaces an earlier one."""
        if tool.name in self._tools:
            logger.warning("Tool re-registered", name=tool.name)
        self._tools[tool.name] = tool
        logger.info("Tool registered", name=tool.name)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        """List all registered tools."""
        return list(self._tools.values())

    def specs(self) -> list[ToolSpec]:
        return [tool_spec(tool) for tool in self._tools.values()]
