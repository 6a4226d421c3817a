"""Typing indicator with per-conversation ref-counting."""

import asyncio

from loguru import logger

from courier.channels.base import BaseTransport

# Composing presence expires on the transport after roughly 10s.
TYPING_REFRESH_INTERVAL = 5.0


class TypingIndicator:
    """
    Shows "composing" while at least one reply is in progress for a target.

    Concurrent callers for the same target share one refresh loop; the last
    ``stop`` sends "paused".
    """

    def __init__(self, transport: BaseTransport, refresh_interval: float = TYPING_REFRESH_INTERVAL):
        self._transport = transport
        self._interval = refresh_interval
        self._counts: dict[str, int] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # "paused" sends in flight; the loop only keeps weak references.
        self._pending: set[asyncio.Task] = set()

    def is_active(self, target: str) -> bool:
        return self._counts.get(target, 0) > 0

    def start(self, target: str) -> None:
        """Start (or join) the typing indicator for ``target``."""
        self._counts[target] = self._counts.get(target, 0) + 1
        if target in self._tasks:
            return
        self._tasks[target] = asyncio.create_task(self._typing_loop(target))

    def stop(self, target: str) -> None:
        """Release one reference; the last one stops the indicator."""
        if target not in self._counts:
            return

        self._counts[target] = max(0, self._counts[target] - 1)
        if self._counts[target] > 0:
            return

        self._counts.pop(target, None)
        task = self._tasks.pop(target, None)
        if task:
            task.cancel()
        paused = asyncio.create_task(self._send_safe(target, "paused"))
        self._pending.add(paused)
        paused.add_done_callback(self._pending.discard)

    def clear_all(self) -> None:
        """Drop every indicator without sending "paused" (shutdown)."""
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        self._counts.clear()

    async def _typing_loop(self, target: str) -> None:
        try:
            while True:
                await self._send_safe(target, "composing")
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            pass

    async def _send_safe(self, target: str, state: str) -> None:
        try:
            await self._transport.send_presence(target, state)
        except Exception as e:
            logger.debug(f"Typing indicator error for {target}: {e}")
