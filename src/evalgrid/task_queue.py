from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable

from evalgrid.log import get_logger

logger = get_logger(__name__)

Work = Callable[[], Awaitable[object]]


class ParallelTaskQueue:
    """
    Runs queued coroutine factories with at most `concurrency` in flight.

    Units start in enqueue order. A unit that raises does not affect its
    siblings; units are expected to record their own failures, anything that
    escapes is only logged.
    """

    def __init__(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._pending: deque[Work] = deque()
        self._running: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> int:
        return len(self._running)

    def enqueue(self, work: Work) -> None:
        self._pending.append(work)
        self._idle.clear()
        self._fill()

    async def completed(self) -> None:
        """Wait until every enqueued unit, including late additions, has settled."""
        await self._idle.wait()

    def cancel(self) -> None:
        self._pending.clear()
        for task in list(self._running):
            task.cancel()
        if not self._running:
            self._idle.set()

    def _fill(self) -> None:
        while self._pending and len(self._running) < self.concurrency:
            work = self._pending.popleft()
            task = asyncio.ensure_future(self._execute(work))
            self._running.add(task)
            task.add_done_callback(self._settled)

    async def _execute(self, work: Work) -> None:
        try:
            await work()
        except Exception:
            logger.exception("queued unit raised")

    def _settled(self, task: asyncio.Task[None]) -> None:
        self._running.discard(task)
        self._fill()
        if not self._running and not self._pending:
            self._idle.set()
