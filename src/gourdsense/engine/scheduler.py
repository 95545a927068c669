"""Cancellable fixed-interval scheduler for the scan loop."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class RepeatingTask:
    """Run ``callback`` every ``interval`` seconds on the event loop.

    Ticks never overlap: the next one is scheduled only after the current
    callback returns. Ticks that fall due while a slow callback is running are
    dropped, so at most one tick is ever pending.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. A no-op if already running."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop and wait for an in-flight tick to unwind."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self._interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            await self._callback()
            next_at += self._interval
            now = loop.time()
            if next_at < now:
                skipped = int((now - next_at) // self._interval) + 1
                logger.debug("Scan tick overran, skipping %d tick(s)", skipped)
                next_at += skipped * self._interval
