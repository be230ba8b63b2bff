"""Message orchestrator: single entry point for all Telegram updates.

Every update is converted to an ``InboundEvent`` and fed through the
``UpdateGate``; the gate calls back into ``handle_message`` once per
logical turn, in order per chat.
"""

import asyncio
import html
from typing import Any, Optional

import structlog
from telegram import BotCommand, Update
from telegram.ext import Application, ContextTypes, TypeHandler

from ..agent.agent import Agent
from ..config.settings import Settings
from ..memory.compaction import CompactionEngine
from .delivery import Delivery
from .gate import AssembledMessage, Attachment, InboundEvent, UpdateGate
from .media import MediaExtractor

logger = structlog.get_logger()

FALLBACK_REPLY = "Sorry, something went wrong while answering. Please try again."
EMPTY_REPLY = "I don't have an answer for that right now."
EMPTY_EXTRACTION_REPLIES = {
    "photo": (
        "I couldn't extract any text from that image. "
        "Try a clearer image or add a caption."
    ),
    "document": "I couldn't extract any text from that document.",
}


def event_from_update(update: Update) -> Optional[InboundEvent]:
    """Map a python-telegram-bot ``Update`` to an ``InboundEvent``."""
    query = update.callback_query
    if query is not None:
        msg = query.message
        return InboundEvent(
            update_id=update.update_id,
            chat_id=msg.chat.id if msg else None,
            message_id=msg.message_id if msg else None,
            date=msg.date if msg else None,
            callback_id=query.id,
            callback_data=query.data,
        )

    msg = update.message
    if msg is None:
        return None

    attachment: Optional[Attachment] = None
    if msg.voice:
        attachment = Attachment(
            kind="voice",
            file_id=msg.voice.file_id,
            duration_seconds=msg.voice.duration
            if isinstance(msg.voice.duration, int)
            else int(msg.voice.duration.total_seconds()),
        )
    elif msg.photo:
        attachment = Attachment(kind="photo", file_id=msg.photo[-1].file_id)
    elif msg.document:
        attachment = Attachment(
            kind="document",
            file_id=msg.document.file_id,
            file_name=msg.document.file_name,
            mime_type=msg.document.mime_type,
        )

    return InboundEvent(
        update_id=update.update_id,
        chat_id=msg.chat.id,
        message_id=msg.message_id,
        sender_id=msg.from_user.id if msg.from_user else 0,
        text=msg.text,
        caption=msg.caption,
        date=msg.date,
        media_group_id=msg.media_group_id,
        attachment=attachment,
    )


def format_reply(response: str, activity: str) -> str:
    """Reply text with the activity line appended in italics."""
    if not activity:
        return response
    return f"{response}\n\n<i>{html.escape(activity)}</i>"


class MessageOrchestrator:
    """Routes gated messages to the agent and replies via ``Delivery``."""

    def __init__(
        self,
        settings: Settings,
        agent: Agent,
        compaction: CompactionEngine,
        delivery: Delivery,
        gate: Optional[UpdateGate] = None,
        media: Optional[MediaExtractor] = None,
    ) -> None:
        self.settings = settings
        self.agent = agent
        self.compaction = compaction
        self.delivery = delivery
        self.media = media
        self.gate = gate or UpdateGate()
        self.gate.set_handler(self.handle_message)

    def register_handlers(self, app: Application) -> None:
        """Route every update through the gate."""

        async def acknowledge(callback_id: str) -> None:
            await app.bot.answer_callback_query(callback_id)

        self.gate.set_acknowledger(acknowledge)
        app.add_handler(TypeHandler(Update, self.on_update))
        logger.info("Handlers registered")

    async def get_bot_commands(self) -> list:  # type: ignore[type-arg]
        return [
            BotCommand("start", "Say hello"),
            BotCommand("compact", "Consolidate recent conversation into memory now"),
        ]

    async def on_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        event = event_from_update(update)
        if event is None:
            return
        self.gate.process_event(event)

    def _is_allowed(self, chat_id: int) -> bool:
        allowed = self.settings.allowed_chat_id
        return allowed is None or chat_id == allowed

    async def handle_message(self, msg: AssembledMessage) -> None:
        """Handle one logical turn from the gate."""
        if not self._is_allowed(msg.chat_id):
            logger.warning("Message from unauthorized chat ignored", chat_id=msg.chat_id)
            return

        text = msg.text.strip()
        command = text.split()[0].split("@")[0].lower() if text.startswith("/") else None

        if command == "/start":
            await self.delivery.send(
                msg.chat_id,
                "Hi! Talk to me about anything. I remember what matters over time.\n"
                "Commands: /compact (save memories now)",
            )
            return

        if command == "/compact":
            await self._force_compact(msg.chat_id)
            return

        if msg.attachment is not None:
            extracted = await self._attachment_text(msg, msg.attachment)
            if not extracted:
                return
            text = extracted
        elif not text:
            return

        await self._answer(msg, text)

    async def _attachment_text(
        self, msg: AssembledMessage, attachment: Attachment
    ) -> Optional[str]:
        """Text for an attachment, or None after telling the user why not."""
        if self.media is None:
            await self.delivery.send(
                msg.chat_id, f"I can't read {attachment.kind} messages yet."
            )
            return None

        try:
            text = await self.media.to_text(attachment, caption=msg.text)
        except Exception as e:
            logger.error(
                "Attachment extraction failed",
                chat_id=msg.chat_id,
                kind=attachment.kind,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.delivery.send(
                msg.chat_id, f"Sorry, I couldn't process that {attachment.kind}."
            )
            return None

        if not text:
            reply = EMPTY_EXTRACTION_REPLIES.get(attachment.kind)
            if reply:
                await self.delivery.send(msg.chat_id, reply)
            return None
        return text

    async def _answer(self, msg: AssembledMessage, text: str) -> None:
        chat_id = str(msg.chat_id)

        async def on_compacted(summary: str) -> None:
            await self.delivery.send(msg.chat_id, f"<i>memory: {html.escape(summary)}</i>")

        typing = self._start_typing_heartbeat(msg.chat_id)
        try:
            result = await self.agent.run(
                chat_id,
                text,
                external_message_id=f"{chat_id}:{msg.message_id}",
                on_compacted=on_compacted,
            )
        except Exception as e:
            logger.error(
                "Agent run failed",
                chat_id=chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.delivery.send(msg.chat_id, FALLBACK_REPLY)
            return
        finally:
            typing.cancel()

        await self.delivery.send(
            msg.chat_id, format_reply(result.response or EMPTY_REPLY, result.activity)
        )

    async def _force_compact(self, chat_id: int) -> None:
        async def report(summary: str) -> None:
            await self.delivery.send(chat_id, f"<i>memory: {html.escape(summary)}</i>")

        try:
            summary = await self.compaction.force_compact(str(chat_id), report)
        except Exception as e:
            logger.error("Forced compaction failed", chat_id=chat_id, error=str(e))
            await self.delivery.send(chat_id, "Compaction failed. Please try again later.")
            return

        if summary is None:
            await self.delivery.send(chat_id, "<i>memory: compacted, nothing new to remember</i>")

    def _start_typing_heartbeat(
        self, chat_id: int, interval: float = 4.0
    ) -> "asyncio.Task[None]":
        """Send the typing action until the returned task is cancelled."""
        bot: Any = getattr(self.delivery, "bot", None)

        async def _heartbeat() -> None:
            if bot is None:
                return
            while True:
                try:
                    await bot.send_chat_action(chat_id=chat_id, action="typing")
                except Exception as e:
                    logger.debug("Typing indicator failed", error=str(e))
                await asyncio.sleep(interval)

        return asyncio.create_task(_heartbeat())
