"""Pydantic models for conversation turns."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel

from ..storage.database import parse_ts

TurnRole = Literal["user", "assistant", "tool_result"]

# Roles allowed to justify a memory claim.
EVIDENCE_ROLES = frozenset({"user", "tool_result"})


class ConversationTurn(BaseModel):
    """One stored exchange unit."""

    id: int
    chat_id: str
    role: TurnRole
    content: str
    external_message_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    compacted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_evidence(self) -> bool:
        return self.role in EVIDENCE_ROLES

    @classmethod
    def from_row(cls, row: Any) -> "ConversationTurn":
        """Create from database row."""
        data = dict(row)
        for field in ("compacted_at", "created_at"):
            data[field] = parse_ts(data.get(field))
        return cls(**data)
