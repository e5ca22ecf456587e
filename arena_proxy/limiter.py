"""FIFO concurrency limiter for outbound upstream calls.

A single page load on the site fans out into dozens of distinct content
requests, while the upstream API rate-limits per key far below that. Capping
the number of simultaneous upstream calls keeps us under the limit without
serializing the whole site.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Awaitable, Callable, Deque, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """Permit-based limiter that admits waiters in strict arrival order.

    A released slot is handed directly to the oldest waiter, so ``active``
    never exceeds ``limit`` and a late arrival can never overtake the queue.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"concurrency limit must be >= 1, got {limit}")
        self._limit = limit
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        """Wait for a slot. Returns once the caller holds one."""
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        log.debug(
            "limiter.queued active=%d waiting=%d", self._active, len(self._waiters)
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was already handed to us; pass it on.
                self.release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(fut)
            raise

    def release(self) -> None:
        """Give the slot to the oldest live waiter, or free it."""
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task()`` while holding a slot; the slot is always released."""
        async with self.slot():
            return await task()
