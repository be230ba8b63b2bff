"""Tests for MessageOrchestrator."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import Chat, Message, Update, User

from memobot.agent.agent import AgentResult
from memobot.bot.gate import AssembledMessage, Attachment, UpdateGate
from memobot.bot.orchestrator import (
    FALLBACK_REPLY,
    MessageOrchestrator,
    event_from_update,
    format_reply,
)


@pytest.fixture
def settings():
    mock = MagicMock()
    mock.allowed_chat_id = 1
    return mock


@pytest.fixture
def agent():
    mock = MagicMock()
    mock.run = AsyncMock(return_value=AgentResult(response="Hello!", activity=""))
    return mock


@pytest.fixture
def compaction():
    mock = MagicMock()
    mock.force_compact = AsyncMock(return_value="saved 1 memory (fact)")
    return mock


@pytest.fixture
def delivery():
    mock = MagicMock()
    mock.send = AsyncMock()
    mock.bot = None
    return mock


@pytest.fixture
def orchestrator(settings, agent, compaction, delivery):
    return MessageOrchestrator(
        settings, agent=agent, compaction=compaction, delivery=delivery, gate=UpdateGate()
    )


def _msg(text: str, chat_id: int = 1, attachment=None) -> AssembledMessage:
    return AssembledMessage(chat_id=chat_id, text=text, message_id=77, attachment=attachment)


class TestFormatReply:
    def test_no_activity(self):
        assert format_reply("hi", "") == "hi"

    def test_activity_escaped_in_italics(self):
        """The activity line is HTML-escaped and italicized."""
        assert format_reply("hi", "2 tools (a<b)") == "hi\n\n<i>2 tools (a&lt;b)</i>"


class TestEventFromUpdate:
    def test_text_message(self):
        """A PTB text update maps to an InboundEvent."""
        message = Message(
            message_id=5,
            date=datetime(2026, 1, 1, tzinfo=timezone.utc),
            chat=Chat(id=10, type="private"),
            from_user=User(id=3, first_name="Sam", is_bot=False),
            text="hi there",
        )
        event = event_from_update(Update(update_id=99, message=message))

        assert event is not None
        assert event.update_id == 99
        assert event.chat_id == 10
        assert event.message_id == 5
        assert event.sender_id == 3
        assert event.text == "hi there"
        assert event.attachment is None

    def test_update_without_message(self):
        assert event_from_update(Update(update_id=1)) is None


class TestMessageOrchestrator:
    """Tests for message handling."""

    async def test_answers_through_agent(self, orchestrator, agent, delivery):
        """A normal message is answered by the agent."""
        agent.run.return_value = AgentResult(
            response="Hello!", activity="used 2 memories (fact)"
        )
        await orchestrator.handle_message(_msg("how am I doing lately?"))

        agent.run.assert_awaited_once()
        args, kwargs = agent.run.await_args
        assert args == ("1", "how am I doing lately?")
        assert kwargs["external_message_id"] == "1:77"
        delivery.send.assert_awaited_once_with(
            1, "Hello!\n\n<i>used 2 memories (fact)</i>"
        )

    async def test_unauthorized_chat_ignored(self, orchestrator, agent, delivery):
        """Messages from other chats are dropped."""
        await orchestrator.handle_message(_msg("hello", chat_id=2))

        agent.run.assert_not_awaited()
        delivery.send.assert_not_awaited()

    async def test_start_command(self, orchestrator, agent, delivery):
        await orchestrator.handle_message(_msg("/start"))

        agent.run.assert_not_awaited()
        delivery.send.assert_awaited_once()

    async def test_compact_command(self, orchestrator, compaction, delivery):
        """/compact forces a pass; its notification callback does the reporting."""
        await orchestrator.handle_message(_msg("/compact"))

        compaction.force_compact.assert_awaited_once()
        assert compaction.force_compact.await_args.args[0] == "1"
        delivery.send.assert_not_awaited()

    async def test_compact_with_no_changes(self, orchestrator, compaction, delivery):
        """A pass that changed nothing is still acknowledged."""
        compaction.force_compact.return_value = None
        await orchestrator.handle_message(_msg("/compact"))

        delivery.send.assert_awaited_once()
        assert "nothing new" in delivery.send.await_args.args[1]

    async def test_agent_failure_sends_fallback(self, orchestrator, agent, delivery):
        """Engine errors become a short apology."""
        agent.run.side_effect = RuntimeError("provider down")
        await orchestrator.handle_message(_msg("what did I say yesterday?"))

        delivery.send.assert_awaited_once_with(1, FALLBACK_REPLY)

    async def test_attachment_without_extractor(self, orchestrator, agent, delivery):
        """Without media support attachments get a polite note."""
        await orchestrator.handle_message(
            _msg("", attachment=Attachment(kind="voice", file_id="v1"))
        )

        agent.run.assert_not_awaited()
        assert "voice" in delivery.send.await_args.args[1]

    async def test_empty_response_placeholder(self, orchestrator, agent, delivery):
        agent.run.return_value = AgentResult(response=None, activity="")
        await orchestrator.handle_message(_msg("tell me something"))

        delivery.send.assert_awaited_once()
        assert delivery.send.await_args.args[1]

    def test_handler_installed_on_gate(self, orchestrator):
        assert orchestrator.gate._handler == orchestrator.handle_message


@pytest.fixture
def media():
    mock = MagicMock()
    mock.to_text = AsyncMock(return_value="I weighed 80 kg today")
    return mock


@pytest.fixture
def media_orchestrator(settings, agent, compaction, delivery, media):
    return MessageOrchestrator(
        settings,
        agent=agent,
        compaction=compaction,
        delivery=delivery,
        gate=UpdateGate(),
        media=media,
    )


class TestAttachments:
    """Tests for attachment handling before the agent runs."""

    async def test_voice_transcript_goes_to_agent(self, media_orchestrator, agent, media):
        voice = Attachment(kind="voice", file_id="v1", duration_seconds=4)
        await media_orchestrator.handle_message(_msg("", attachment=voice))

        media.to_text.assert_awaited_once_with(voice, caption="")
        assert agent.run.await_args.args == ("1", "I weighed 80 kg today")

    async def test_photo_caption_passed_as_context(self, media_orchestrator, agent, media):
        photo = Attachment(kind="photo", file_id="p1")
        media.to_text.return_value = "Menu: pasta 12"
        await media_orchestrator.handle_message(_msg("dinner", attachment=photo))

        media.to_text.assert_awaited_once_with(photo, caption="dinner")
        assert agent.run.await_args.args == ("1", "Menu: pasta 12")

    async def test_empty_photo_text_explained(
        self, media_orchestrator, agent, media, delivery
    ):
        media.to_text.return_value = ""
        await media_orchestrator.handle_message(
            _msg("", attachment=Attachment(kind="photo", file_id="p1"))
        )

        agent.run.assert_not_awaited()
        assert "couldn't extract any text from that image" in delivery.send.await_args.args[1]

    async def test_empty_voice_transcript_is_silent(
        self, media_orchestrator, agent, media, delivery
    ):
        media.to_text.return_value = ""
        await media_orchestrator.handle_message(
            _msg("", attachment=Attachment(kind="voice", file_id="v1"))
        )

        agent.run.assert_not_awaited()
        delivery.send.assert_not_awaited()

    async def test_extraction_failure_reported(
        self, media_orchestrator, agent, media, delivery
    ):
        media.to_text.side_effect = RuntimeError("download failed")
        await media_orchestrator.handle_message(
            _msg("", attachment=Attachment(kind="document", file_id="d1"))
        )

        agent.run.assert_not_awaited()
        delivery.send.assert_awaited_once_with(1, "Sorry, I couldn't process that document.")
