"""
Periodic heartbeat timer.

Drives lease renewal at a fixed interval. The timer is an asyncio task on
the caller's event loop, not a worker thread, so renewals interleave with
other coroutines of the same process.

Invariants:
    - A tick never overlaps the previous tick
    - stop() never interrupts a tick that is in progress; it waits for it
      so a renewal write cannot land after a release
    - An exception in the callback is logged and the timer keeps running
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Heartbeat:
    """Calls an async callback every interval seconds.

    Example:
        >>> heartbeat = Heartbeat(10.0, coordinator.renew)
        >>> heartbeat.start()
        >>> ...
        >>> await heartbeat.stop()
    """

    def __init__(self, interval_seconds: float, callback: Callable[[], Awaitable[object]]) -> None:
        """Initialize the heartbeat.

        Args:
            interval_seconds: Delay between the end of one tick and the next
            callback: Coroutine function invoked on every tick
        """
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._ticking = False
        self._tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def start(self) -> None:
        """Start ticking. Restarting a running heartbeat is a no-op."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_event_loop().create_task(self._loop())

    async def stop(self) -> None:
        """Stop ticking, waiting for an in-progress tick to finish."""
        self._running = False
        task = self._task
        self._task = None
        if task is None or task is asyncio.current_task():
            return

        if not self._ticking:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            if not self._running:
                break

            self._ticking = True
            try:
                await self._callback()
            except Exception as e:
                logger.error(f"Heartbeat callback failed: {e}", exc_info=True)
            finally:
                self._ticking = False
                self._tick_count += 1
