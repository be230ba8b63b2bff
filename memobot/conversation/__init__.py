"""Conversation turn log."""

from .models import EVIDENCE_ROLES, ConversationTurn
from .repository import TurnRepository

__all__ = ["ConversationTurn", "EVIDENCE_ROLES", "TurnRepository"]
