"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from memobot.conversation.repository import TurnRepository
from memobot.memory.store import PatternStore
from memobot.storage.database import DatabaseManager


@pytest.fixture
async def db_manager():
    """Create test database manager with migrations applied."""
    with tempfile.TemporaryDirectory() as temp_dir:
        db_path = Path(temp_dir) / "test.db"
        manager = DatabaseManager(f"sqlite:///{db_path}")
        await manager.initialize()
        yield manager
        await manager.close()


@pytest.fixture
def turn_repo(db_manager):
    return TurnRepository(db_manager)


@pytest.fixture
def pattern_store(db_manager):
    return PatternStore(db_manager, embedding_model="test-embedding")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()
