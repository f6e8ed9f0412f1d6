from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from evalgrid.abort import until_aborted

# Permits per provider kind unless configured
DEFAULT_CAPACITY = 6


class Permit:
    def __init__(self, semaphore: Semaphore) -> None:
        self._semaphore = semaphore
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._semaphore._release()


class Semaphore:
    """Counting permit pool. Waiters are granted permits in FIFO order."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._available = capacity
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def available(self) -> int:
        return self._available

    async def acquire(self, abort: asyncio.Event | None = None) -> Permit:
        """Wait for a permit; raises RunAborted if `abort` is set first."""
        return await until_aborted(self._acquire(), abort)

    async def _acquire(self) -> Permit:
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return Permit(self)
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Granted just before cancellation, hand it on
                self._release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            raise
        return Permit(self)

    def _release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._available += 1

    @asynccontextmanager
    async def hold(self, abort: asyncio.Event | None = None) -> AsyncIterator[Permit]:
        permit = await self.acquire(abort)
        try:
            yield permit
        finally:
            permit.release()


class LimiterRegistry:
    """One Semaphore per provider kind, shared by every model of that kind."""

    def __init__(
        self,
        capacities: dict[str, int] | None = None,
        default_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._capacities = dict(capacities or {})
        self._default_capacity = default_capacity
        self._limiters: dict[str, Semaphore] = {}

    def get(self, kind: str) -> Semaphore:
        limiter = self._limiters.get(kind)
        if limiter is None:
            limiter = Semaphore(self._capacities.get(kind, self._default_capacity))
            self._limiters[kind] = limiter
        return limiter
