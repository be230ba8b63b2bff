"""Tools the reasoning engine can call."""

from .base import Tool, ToolResult, tool_spec
from .executor import ToolExecutor
from .memory_search import SearchMemoryTool
from .registry import ToolRegistry
from .truncation import truncate_tool_result
from .weight import LogWeightTool, WeightHistoryTool

__all__ = [
    "LogWeightTool",
    "SearchMemoryTool",
    "Tool",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "WeightHistoryTool",
    "tool_spec",
    "truncate_tool_result",
]
