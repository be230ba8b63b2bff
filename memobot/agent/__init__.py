"""Agent: per-message orchestration and the bounded tool loop."""

from .agent import Agent, AgentResult
from .loop import LoopResult, ToolLoop

__all__ = ["Agent", "AgentResult", "LoopResult", "ToolLoop"]
