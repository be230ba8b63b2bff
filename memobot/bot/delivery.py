"""Outbound message delivery to Telegram."""

import asyncio
import html
import re
from typing import Any, List, Optional, Protocol

import structlog
from telegram.error import BadRequest, NetworkError, RetryAfter

logger = structlog.get_logger()

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
SEND_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0

_TAG = re.compile(r"<[^>]+>")


class Delivery(Protocol):
    """Anything that can put text in front of the user."""

    async def send(self, chat_id: int, text: str) -> None: ...


def split_message(text: str, limit: int = TELEGRAM_MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on paragraph, then line, then hard boundaries to fit ``limit``."""
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = window.rfind("\n\n")
        if cut <= 0:
            cut = window.rfind("\n")
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip("\n")
    if remaining.strip():
        chunks.append(remaining)
    return chunks


def html_to_plain(text: str) -> str:
    return html.unescape(_TAG.sub("", text))


def _is_parse_error(exc: BadRequest) -> bool:
    message = str(exc).lower()
    return "parse" in message and "entit" in message


class TelegramDelivery:
    """Sends HTML messages with chunking, retry and plain-text fallback."""

    def __init__(
        self,
        bot: Any,
        attempts: int = SEND_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
    ) -> None:
        self._bot = bot
        self._attempts = attempts
        self._backoff_base = backoff_base

    @property
    def bot(self) -> Any:
        return self._bot

    async def send(self, chat_id: int, text: str) -> None:
        for chunk in split_message(text):
            await self._send_chunk(chat_id, chunk)

    async def _send_chunk(self, chat_id: int, text: str) -> None:
        parse_mode: Optional[str] = "HTML"
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._bot.send_message(
                    chat_id=chat_id, text=text, parse_mode=parse_mode
                )
                return
            except BadRequest as e:
                if parse_mode is None or not _is_parse_error(e):
                    raise
                logger.warning(
                    "Failed to send HTML response, retrying as plain text",
                    error=str(e),
                )
                text = html_to_plain(text)
                parse_mode = None
                attempt -= 1
            except RetryAfter as e:
                if attempt >= self._attempts:
                    raise
                delay = e.retry_after
                await asyncio.sleep(
                    delay.total_seconds() if hasattr(delay, "total_seconds") else delay
                )
            except NetworkError as e:
                if attempt >= self._attempts:
                    logger.error("Message delivery failed", chat_id=chat_id, error=str(e))
                    raise
                delay = self._backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "Transient delivery error, retrying",
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
