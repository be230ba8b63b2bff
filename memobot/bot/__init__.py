"""Telegram surface: update gate, delivery, orchestrator."""

from .gate import AssembledMessage, ConversationQueue, DedupCache, InboundEvent, UpdateGate

__all__ = [
    "AssembledMessage",
    "ConversationQueue",
    "DedupCache",
    "InboundEvent",
    "UpdateGate",
]
