"""Reasoning engines, embeddings and usage accounting."""

from .embeddings import EmbeddingProvider
from .factory import create_reasoning_engine
from .interface import (
    EngineResponse,
    ReasoningEngine,
    ToolRequest,
    ToolSpec,
    TranscriptMessage,
    Usage,
)
from .usage import UsageRecorder

__all__ = [
    "EmbeddingProvider",
    "EngineResponse",
    "ReasoningEngine",
    "ToolRequest",
    "ToolSpec",
    "TranscriptMessage",
    "Usage",
    "UsageRecorder",
    "create_reasoning_engine",
]
