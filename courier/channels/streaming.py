"""
Streaming delivery with edit-in-place.

Backend fragments are buffered and flushed on a fixed interval: the first
flush sends a new message, later flushes edit it. The transport can only edit
the message most recently sent and caps message length, so once the buffer
outgrows the cap the open message is closed at a readable boundary and the
remainder continues in a fresh message.
"""

import asyncio
import re
from typing import Any

from loguru import logger

from courier.channels.base import BaseTransport
from courier.config.schema import EDIT_INTERVAL, MESSAGE_LIMIT

_SENTENCE_END = re.compile(r"[.!?]\s")


def find_split_point(text: str, max_len: int) -> int:
    """
    Find a split index at or before ``max_len``.

    Prefers the end of a sentence (terminator plus whitespace), then the last
    newline, then the last space, each only when it lies at or past the
    midpoint.
    Falls back to a hard split at ``max_len``.
    """
    if len(text) <= max_len:
        return len(text)

    half = max_len * 0.5
    head = text[:max_len]

    sentence_end = 0
    for match in _SENTENCE_END.finditer(head):
        sentence_end = match.end()
    if sentence_end >= half:
        return sentence_end

    last_newline = head.rfind("\n")
    if last_newline >= 0 and last_newline + 1 >= half:
        return last_newline + 1

    last_space = head.rfind(" ")
    if last_space >= 0 and last_space + 1 >= half:
        return last_space + 1

    return max_len


class MessageStream:
    """
    Streams one outbound turn to one conversation.

    Sends go straight to the transport (no retry wrapper). A failed flush is
    logged and picked up again on the next tick or at finalize.
    """

    def __init__(
        self,
        target: str,
        transport: BaseTransport,
        log: Any = None,
        *,
        limit: int = MESSAGE_LIMIT,
        flush_interval: float = EDIT_INTERVAL,
    ):
        self.target = target
        self.limit = limit
        self.flush_interval = flush_interval
        self._transport = transport
        self._log = log or logger.bind(component="streaming")

        self._content = ""
        self._pending: list[str] = []
        self._handle: Any = None
        self._completed_handles: list[Any] = []
        self._last_flush_length = 0
        self._did_stream = False
        self._finalized = False
        self._cancelled = False

        self._flush_lock = asyncio.Lock()
        self._timer_stopped = False
        self._ticking = False
        self._timer: asyncio.Task | None = asyncio.get_running_loop().create_task(
            self._flush_loop()
        )

    @property
    def content(self) -> str:
        """Accumulated text of the open message. Queued fragments are not included."""
        return self._content

    @property
    def handle(self) -> Any:
        return self._handle

    @property
    def completed_handles(self) -> list[Any]:
        """Handles of messages closed out by overflow, oldest first."""
        return list(self._completed_handles)

    @property
    def did_stream(self) -> bool:
        """True if at least one message was delivered during streaming."""
        return self._did_stream

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_terminal(self) -> bool:
        return self._finalized or self._cancelled

    def append(self, text: str) -> None:
        """Queue a fragment. Flushed by the timer, never synchronously."""
        if self._finalized or self._cancelled or not text:
            return
        self._pending.append(text)

    def cancel(self) -> None:
        """Stop streaming. Already sent messages are left as they are."""
        if self._finalized or self._cancelled:
            return
        self._cancelled = True
        self._pending.clear()
        self._stop_timer()

    async def finalize(self) -> None:
        """Stop the timer and flush whatever is left."""
        if self._finalized:
            return
        self._finalized = True
        self._stop_timer()
        if self._cancelled:
            return

        # Waits for an in-flight timer flush to finish first.
        async with self._flush_lock:
            await self._drain_and_sync()

    def _stop_timer(self) -> None:
        self._timer_stopped = True
        task, self._timer = self._timer, None
        # A tick in progress finishes its send and then exits the loop.
        if task is not None and not task.done() and not self._ticking:
            task.cancel()

    async def _flush_loop(self) -> None:
        while not self._timer_stopped:
            await asyncio.sleep(self.flush_interval)
            if self._timer_stopped:
                break
            self._ticking = True
            try:
                await self._process_pending()
            finally:
                self._ticking = False

    async def _process_pending(self) -> None:
        if self._cancelled or self._flush_lock.locked():
            return
        if not self._pending and not self._is_dirty():
            return
        async with self._flush_lock:
            await self._drain_and_sync()

    def _is_dirty(self) -> bool:
        text = self._content.strip()
        return bool(text) and len(text) != self._last_flush_length

    async def _drain_and_sync(self) -> None:
        try:
            if self._pending:
                self._content += "".join(self._pending)
                self._pending.clear()

            if len(self._content) > self.limit:
                await self._handle_overflow()
            else:
                await self._flush()
        except Exception as e:
            self._log.error(f"Stream processing error for {self.target}: {e}")

    async def _flush(self) -> bool:
        """Send or edit the open message. Returns False if the send failed."""
        text = self._content.strip()
        if self._cancelled:
            return False
        if not text or len(text) == self._last_flush_length:
            return True

        try:
            if self._handle is None:
                handle = await self._transport.send(self.target, {"text": text})
                if handle is not None:
                    self._handle = handle
                    self._did_stream = True
            else:
                await self._transport.send(self.target, {"text": text, "edit": self._handle})
            self._last_flush_length = len(text)
            return True
        except Exception as e:
            self._log.error(f"Stream flush error for {self.target}: {e}")
            return False

    async def _handle_overflow(self) -> None:
        """Close the open message at a boundary and carry the rest into a new one."""
        while len(self._content) > self.limit:
            split = find_split_point(self._content, self.limit)
            current = self._content[:split].strip()
            overflow = self._content[split:].strip()

            if current:
                whole = self._content
                self._content = current
                if not await self._flush():
                    # Keep everything buffered; the next tick splits again.
                    self._content = whole
                    return

            if self._handle is not None:
                self._completed_handles.append(self._handle)
                self._handle = None
            self._content = overflow
            self._last_flush_length = 0
            self._log.debug(
                f"Stream for {self.target} overflowed at {split} chars, "
                f"{len(overflow)} chars carried over"
            )

        await self._flush()


class StreamManager:
    """
    Keeps at most one live stream per conversation.

    Creating a stream for a conversation that already has a live one cancels
    the old one first: a new inbound message always wins over an in-flight
    reply to the previous one.
    """

    def __init__(
        self,
        *,
        limit: int = MESSAGE_LIMIT,
        flush_interval: float = EDIT_INTERVAL,
        log: Any = None,
    ):
        self.limit = limit
        self.flush_interval = flush_interval
        self._log = log or logger.bind(component="streaming")
        self._streams: dict[str, MessageStream] = {}

    def __len__(self) -> int:
        return sum(1 for s in self._streams.values() if not s.is_terminal)

    def __contains__(self, conversation: object) -> bool:
        return isinstance(conversation, str) and self.get(conversation) is not None

    def create(
        self,
        conversation: str,
        transport: BaseTransport,
        log: Any = None,
    ) -> MessageStream:
        """Start a stream for ``conversation``, interrupting any live one."""
        log = log or self._log
        existing = self._streams.get(conversation)
        if existing is not None and not existing.is_terminal:
            log.info(f"Interrupting existing stream for {conversation}")
            existing.cancel()

        stream = MessageStream(
            conversation,
            transport,
            log,
            limit=self.limit,
            flush_interval=self.flush_interval,
        )
        self._streams[conversation] = stream
        return stream

    def get(self, conversation: str) -> MessageStream | None:
        """Return the live stream for ``conversation``, if any."""
        stream = self._streams.get(conversation)
        if stream is not None and stream.is_terminal:
            del self._streams[conversation]
            return None
        return stream

    def interrupt(self, conversation: str) -> bool:
        """Cancel and drop the live stream. Returns True if there was one."""
        stream = self._streams.pop(conversation, None)
        if stream is None or stream.is_terminal:
            return False
        stream.cancel()
        return True

    async def finalize(self, conversation: str) -> bool:
        """Finalize and drop the stream. Returns whether it streamed anything."""
        stream = self._streams.get(conversation)
        if stream is None:
            return False
        await stream.finalize()
        # A newer stream may have replaced this one while we were flushing.
        if self._streams.get(conversation) is stream:
            del self._streams[conversation]
        return stream.did_stream

    def cancel_all(self) -> None:
        """Cancel every tracked stream (shutdown)."""
        for stream in self._streams.values():
            stream.cancel()
        self._streams.clear()
