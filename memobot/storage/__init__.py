"""Persistence: SQLite manager and the compaction lock."""

from .database import DatabaseManager
from .locks import AdvisoryLock

__all__ = ["AdvisoryLock", "DatabaseManager"]
