"""Tests for TurnRepository."""

from memobot.conversation.models import ConversationTurn


class TestTurnRepository:
    """Tests for the turn log."""

    async def test_insert_and_get_recent(self, turn_repo):
        """Turns come back oldest first."""
        await turn_repo.insert("c1", "user", "hello")
        await turn_repo.insert("c1", "assistant", "hi!")
        await turn_repo.insert("c2", "user", "other chat")

        turns = await turn_repo.get_recent("c1")
        assert [t.content for t in turns] == ["hello", "hi!"]
        assert all(isinstance(t, ConversationTurn) for t in turns)
        assert turns[0].created_at is not None

    async def test_get_recent_limit_keeps_newest(self, turn_repo):
        for i in range(5):
            await turn_repo.insert("c1", "user", f"m{i}")

        turns = await turn_repo.get_recent("c1", limit=2)
        assert [t.content for t in turns] == ["m3", "m4"]

    async def test_external_message_id_is_idempotent(self, turn_repo):
        """A redelivered message does not create a second turn."""
        first = await turn_repo.insert("c1", "user", "hello", external_message_id="c1:5")
        second = await turn_repo.insert("c1", "user", "hello", external_message_id="c1:5")

        assert first == second
        assert len(await turn_repo.get_recent("c1")) == 1

    async def test_mark_compacted_hides_turns(self, turn_repo):
        """Compacted turns leave the buffer and are marked only once."""
        ids = [await turn_repo.insert("c1", "user", f"m{i}") for i in range(3)]

        assert await turn_repo.mark_compacted(ids[:2]) == 2
        assert await turn_repo.mark_compacted(ids[:2]) == 0

        remaining = await turn_repo.get_recent("c1")
        assert [t.id for t in remaining] == [ids[2]]

    async def test_last_compaction_time(self, turn_repo):
        assert await turn_repo.get_last_compaction_time("c1") is None

        turn_id = await turn_repo.insert("c1", "user", "m")
        await turn_repo.mark_compacted([turn_id])

        assert await turn_repo.get_last_compaction_time("c1") is not None

    async def test_evidence_roles(self, turn_repo):
        await turn_repo.insert("c1", "user", "u")
        await turn_repo.insert("c1", "assistant", "a")
        await turn_repo.insert("c1", "tool_result", "t", tool_call_id="call_1")

        turns = await turn_repo.get_recent("c1")
        assert [t.is_evidence for t in turns] == [True, False, True]
        assert turns[2].tool_call_id == "call_1"
