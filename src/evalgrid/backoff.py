from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from evalgrid.abort import until_aborted
from evalgrid.errors import HttpError, RunAborted
from evalgrid.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException, int], bool]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.5
    max_jitter: float = 0.25


def should_retry_http_error(error: BaseException, attempt: int) -> bool:
    """Retry network failures, 429 and 5xx. Other 4xx are not transient."""
    if isinstance(error, HttpError):
        return error.status == 429 or error.status >= 500
    return isinstance(error, httpx.TransportError)


async def exponential_backoff(
    operation: Callable[[], Awaitable[T]],
    should_retry: RetryPredicate = should_retry_http_error,
    max_attempts: int = 4,
    base_delay: float = 0.5,
    max_jitter: float = 0.25,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    abort: asyncio.Event | None = None,
) -> T:
    """
    Run `operation`, retrying failures with exponential delay and jitter.

    The delay before retry n (1-based) is `base_delay * 2**(n - 1)` plus a
    uniform jitter in `[0, max_jitter)`. When the predicate declines or the
    attempts run out, the last error propagates unchanged. Aborts are never
    retried, and a set `abort` interrupts the wait between attempts.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except RunAborted:
            raise
        except Exception as exc:
            attempt += 1
            if attempt >= max_attempts or not should_retry(exc, attempt):
                raise
            delay = base_delay * 2 ** (attempt - 1) + random.uniform(0, max_jitter)
            logger.info("attempt %d failed (%s), retrying in %.2fs", attempt, exc, delay)
            await until_aborted(sleep(delay), abort)
