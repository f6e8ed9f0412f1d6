from __future__ import annotations

import asyncio
from typing import AsyncIterator

import httpx

from evalgrid.abort import until_aborted


async def sse(response: httpx.Response, abort: asyncio.Event | None = None) -> AsyncIterator[str]:
    """
    Yield the data payload of each Server-Sent Event in a streaming response.

    Multi-line `data:` fields are joined with newlines. Comments and other
    fields (`event:`, `id:`, `retry:`) are skipped. Raises RunAborted as soon
    as `abort` is set, also while the stream is stalled between chunks.
    """
    lines = response.aiter_lines()
    data: list[str] = []
    try:
        while True:
            line = await until_aborted(_next_line(lines), abort)
            if line is None:
                break
            if not line:
                if data:
                    yield "\n".join(data)
                    data = []
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "data":
                data.append(value)
    finally:
        await lines.aclose()
    if data:
        yield "\n".join(data)


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None
