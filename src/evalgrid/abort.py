from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from evalgrid.errors import RunAborted

T = TypeVar("T")


async def until_aborted(awaitable: Awaitable[T], abort: asyncio.Event | None) -> T:
    """
    Await `awaitable`, or cancel it and raise RunAborted as soon as `abort` is set.

    A result that is already available when the abort arrives is returned.
    """
    if abort is None:
        return await awaitable
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RunAborted()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
    if task.cancelled():
        raise RunAborted()
    return task.result()
