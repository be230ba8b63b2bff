"""Inbound update gate: dedup, per-chat ordering, fragment reassembly.

Telegram may redeliver updates, splits long pastes into several
consecutive messages and sends albums as one message per item. The gate
drops redeliveries, glues split pastes and album captions back together,
and hands each resulting message to the handler strictly in order per
chat while different chats proceed concurrently.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Set, Tuple

import structlog

logger = structlog.get_logger()

DEDUP_TTL_SECONDS = 300.0
DEDUP_MAX_ENTRIES = 2000
FRAGMENT_TIMEOUT_SECONDS = 1.5
FRAGMENT_START_THRESHOLD = 4000
FRAGMENT_HARD_CAP = 50_000
MEDIA_GROUP_TIMEOUT_SECONDS = 0.5
FRAGMENT_SEPARATOR = "\n"
MEDIA_GROUP_PLACEHOLDER = "[media group]"

AttachmentKind = Literal["photo", "document", "voice"]


@dataclass
class Attachment:
    """File reference carried by a photo, document or voice message."""

    kind: AttachmentKind
    file_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    duration_seconds: Optional[int] = None


@dataclass
class InboundEvent:
    """Transport-neutral view of one platform update."""

    update_id: int
    chat_id: Optional[int] = None
    message_id: Optional[int] = None
    sender_id: int = 0
    text: Optional[str] = None
    caption: Optional[str] = None
    date: Optional[datetime] = None
    callback_id: Optional[str] = None
    callback_data: Optional[str] = None
    media_group_id: Optional[str] = None
    attachment: Optional[Attachment] = None

    @property
    def is_callback(self) -> bool:
        return self.callback_id is not None

    def dedup_keys(self) -> List[str]:
        keys = [f"update:{self.update_id}"]
        if self.callback_id is not None:
            keys.append(f"callback:{self.callback_id}")
        if self.chat_id is not None and self.message_id is not None:
            keys.append(f"message:{self.chat_id}:{self.message_id}")
        return keys


@dataclass
class AssembledMessage:
    """One logical user turn, ready for the agent."""

    chat_id: int
    text: str
    message_id: int
    date: Optional[datetime] = None
    attachment: Optional[Attachment] = None
    callback_data: Optional[str] = None


MessageHandler = Callable[[AssembledMessage], Awaitable[None]]
Acknowledger = Callable[[str], Awaitable[None]]


@dataclass
class _DedupEntry:
    keys: List[str]
    expires_at: float


class DedupCache:
    """Recently seen update identities, bounded by TTL and entry count.

    One entry is kept per accepted event and covers all of its identity
    keys; a hit on any key marks a later event as a duplicate.
    """

    def __init__(
        self,
        ttl_seconds: float = DEDUP_TTL_SECONDS,
        max_entries: int = DEDUP_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _DedupEntry]" = OrderedDict()
        self._index: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        self._evict_expired()
        return key in self._index

    def _drop(self, entry_id: str) -> None:
        entry = self._entries.pop(entry_id)
        for key in entry.keys:
            if self._index.get(key) == entry_id:
                del self._index[key]

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [eid for eid, e in self._entries.items() if e.expires_at <= now]
        for entry_id in expired:
            self._drop(entry_id)

    def check_and_record(self, keys: List[str]) -> bool:
        """Return True if any key was seen; otherwise remember all of them."""
        self._evict_expired()
        if any(key in self._index for key in keys):
            return True

        entry_id = keys[0]
        self._entries[entry_id] = _DedupEntry(
            keys=list(keys), expires_at=self._clock() + self.ttl_seconds
        )
        for key in keys:
            self._index[key] = entry_id

        while len(self._entries) > self.max_entries:
            self._drop(next(iter(self._entries)))
        return False

    def clear(self) -> None:
        self._entries.clear()
        self._index.clear()


class ConversationQueue:
    """Per-key FIFO: one task at a time per key, keys run concurrently."""

    def __init__(self) -> None:
        self._tails: Dict[str, asyncio.Task] = {}
        self._live: Dict[str, Set[asyncio.Task]] = {}

    def enqueue(self, key: str, job: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Chain ``job`` after everything already queued for ``key``."""
        previous = self._tails.get(key)

        async def runner() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                await job()
            except Exception as e:
                logger.error(
                    "Queued handler failed",
                    key=key,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        task = asyncio.get_running_loop().create_task(runner())
        self._tails[key] = task
        self._live.setdefault(key, set()).add(task)
        task.add_done_callback(lambda t: self._forget(key, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tails.get(key) is task:
            del self._tails[key]
        live = self._live.get(key)
        if live is not None:
            live.discard(task)
            if not live:
                del self._live[key]

    def pending_keys(self) -> List[str]:
        return list(self._live)

    async def drain(self, key: Optional[str] = None) -> None:
        """Wait until the queue for ``key`` (or every queue) is empty."""
        while True:
            if key is None:
                tasks = [t for live in self._live.values() for t in live]
            else:
                tasks = list(self._live.get(key, ()))
            if not tasks:
                return
            await asyncio.wait(tasks)

    def clear(self) -> None:
        """Cancel every queued and running job."""
        for live in self._live.values():
            for task in live:
                task.cancel()
        self._tails.clear()


@dataclass
class _FragmentBuffer:
    chat_id: int
    fragments: List[str]
    first_message_id: int
    first_date: Optional[datetime]
    last_message_id: int
    last_seen: float
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def size(self) -> int:
        return sum(len(f) for f in self.fragments)


@dataclass
class _MediaGroupBuffer:
    chat_id: int
    first_message_id: int
    first_date: Optional[datetime]
    captions: List[str] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None


class UpdateGate:
    """Entry point for every inbound platform update."""

    def __init__(
        self,
        handler: Optional[MessageHandler] = None,
        acknowledge: Optional[Acknowledger] = None,
        dedup: Optional[DedupCache] = None,
        queue: Optional[ConversationQueue] = None,
        fragment_timeout: float = FRAGMENT_TIMEOUT_SECONDS,
        fragment_start_threshold: int = FRAGMENT_START_THRESHOLD,
        fragment_hard_cap: int = FRAGMENT_HARD_CAP,
        media_group_timeout: float = MEDIA_GROUP_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handler = handler
        self._acknowledge = acknowledge
        self.dedup = dedup or DedupCache(clock=clock)
        self.queue = queue or ConversationQueue()
        self.fragment_timeout = fragment_timeout
        self.fragment_start_threshold = fragment_start_threshold
        self.fragment_hard_cap = fragment_hard_cap
        self.media_group_timeout = media_group_timeout
        self._clock = clock
        self._fragments: Dict[Tuple[int, int], _FragmentBuffer] = {}
        self._media_groups: Dict[str, _MediaGroupBuffer] = {}
        self._ack_tasks: set = set()

    def set_handler(self, handler: Optional[MessageHandler]) -> None:
        self._handler = handler

    def set_acknowledger(self, acknowledge: Optional[Acknowledger]) -> None:
        self._acknowledge = acknowledge

    def process_event(self, event: InboundEvent) -> None:
        """Accept one update. Returns immediately; work runs on the loop."""
        duplicate = self.dedup.check_and_record(event.dedup_keys())

        if event.is_callback:
            self._ack(event.callback_id)

        if duplicate:
            logger.debug("Duplicate update dropped", update_id=event.update_id)
            return

        if self._handler is None:
            logger.warning("No message handler registered", update_id=event.update_id)
            return

        if event.chat_id is None or event.message_id is None:
            return

        if event.is_callback:
            if event.callback_data:
                self._emit(
                    AssembledMessage(
                        chat_id=event.chat_id,
                        text=event.callback_data,
                        message_id=event.message_id,
                        date=event.date,
                        callback_data=event.callback_data,
                    )
                )
            return

        # Album items carry a photo or document, so each is emitted on its own
        # for extraction; only attachment-less album events are coalesced.
        if event.attachment is not None:
            self._emit(
                AssembledMessage(
                    chat_id=event.chat_id,
                    text=event.caption or "",
                    message_id=event.message_id,
                    date=event.date,
                    attachment=event.attachment,
                )
            )
            return

        if event.media_group_id:
            self._buffer_media_group(event)
            return

        if event.text:
            if self._try_buffer_fragment(event):
                return
            self._emit(
                AssembledMessage(
                    chat_id=event.chat_id,
                    text=event.text,
                    message_id=event.message_id,
                    date=event.date,
                )
            )

    # --- delivery ---

    def _emit(self, message: AssembledMessage) -> None:
        handler = self._handler
        if handler is None:
            return
        self.queue.enqueue(str(message.chat_id), lambda: handler(message))

    def _ack(self, callback_id: str) -> None:
        if self._acknowledge is None:
            return

        async def run() -> None:
            try:
                await self._acknowledge(callback_id)
            except Exception as e:
                logger.warning("Callback acknowledgment failed", error=str(e))

        task = asyncio.get_running_loop().create_task(run())
        self._ack_tasks.add(task)
        task.add_done_callback(self._ack_tasks.discard)

    # --- fragments ---

    def _try_buffer_fragment(self, event: InboundEvent) -> bool:
        text = event.text or ""
        key = (event.chat_id, event.sender_id)
        now = self._clock()
        existing = self._fragments.get(key)

        if existing is not None:
            contiguous = event.message_id == existing.last_message_id + 1
            in_window = now - existing.last_seen < self.fragment_timeout
            under_cap = existing.size + len(text) <= self.fragment_hard_cap
            if contiguous and in_window and under_cap:
                existing.fragments.append(text)
                existing.last_message_id = event.message_id
                existing.last_seen = now
                self._restart_timer(existing, key)
                return True
            self._flush_fragment(key)

        if len(text) >= self.fragment_start_threshold:
            buffer = _FragmentBuffer(
                chat_id=event.chat_id,
                fragments=[text],
                first_message_id=event.message_id,
                first_date=event.date,
                last_message_id=event.message_id,
                last_seen=now,
            )
            self._fragments[key] = buffer
            self._restart_timer(buffer, key)
            return True

        return False

    def _restart_timer(self, buffer: _FragmentBuffer, key: Tuple[int, int]) -> None:
        if buffer.timer is not None:
            buffer.timer.cancel()
        buffer.timer = asyncio.get_running_loop().call_later(
            self.fragment_timeout, self._flush_fragment, key
        )

    def _flush_fragment(self, key: Tuple[int, int]) -> None:
        buffer = self._fragments.pop(key, None)
        if buffer is None:
            return
        if buffer.timer is not None:
            buffer.timer.cancel()

        logger.debug(
            "Flushing fragment buffer",
            chat_id=buffer.chat_id,
            fragments=len(buffer.fragments),
        )
        self._emit(
            AssembledMessage(
                chat_id=buffer.chat_id,
                text=FRAGMENT_SEPARATOR.join(buffer.fragments),
                message_id=buffer.first_message_id,
                date=buffer.first_date,
            )
        )

    # --- media groups ---

    def _buffer_media_group(self, event: InboundEvent) -> None:
        group_id = event.media_group_id
        buffer = self._media_groups.get(group_id)
        if buffer is None:
            buffer = _MediaGroupBuffer(
                chat_id=event.chat_id,
                first_message_id=event.message_id,
                first_date=event.date,
            )
            self._media_groups[group_id] = buffer

        if event.caption:
            buffer.captions.append(event.caption)
        if buffer.timer is not None:
            buffer.timer.cancel()
        buffer.timer = asyncio.get_running_loop().call_later(
            self.media_group_timeout, self._flush_media_group, group_id
        )

    def _flush_media_group(self, group_id: str) -> None:
        buffer = self._media_groups.pop(group_id, None)
        if buffer is None:
            return
        if buffer.timer is not None:
            buffer.timer.cancel()

        text = FRAGMENT_SEPARATOR.join(c for c in buffer.captions if c)
        self._emit(
            AssembledMessage(
                chat_id=buffer.chat_id,
                text=text or MEDIA_GROUP_PLACEHOLDER,
                message_id=buffer.first_message_id,
                date=buffer.first_date,
            )
        )

    def clear_buffers(self) -> None:
        """Cancel pending flush timers and drop buffered input."""
        for buffer in self._fragments.values():
            if buffer.timer is not None:
                buffer.timer.cancel()
        for buffer in self._media_groups.values():
            if buffer.timer is not None:
                buffer.timer.cancel()
        self._fragments.clear()
        self._media_groups.clear()
