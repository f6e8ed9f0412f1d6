import asyncio

import httpx
import pytest

from evalgrid.backoff import exponential_backoff, should_retry_http_error
from evalgrid.errors import HttpError, RunAborted


class Recorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_returns_value_after_two_retries():
    sleep = Recorder()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise HttpError("unavailable", 503)
        return "ok"

    result = await exponential_backoff(op, should_retry=lambda e, a: True, max_jitter=0, sleep=sleep)

    assert result == "ok"
    assert calls == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_fails_immediately_when_predicate_declines():
    sleep = Recorder()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise ValueError("nope")

    with pytest.raises(ValueError, match="nope"):
        await exponential_backoff(op, should_retry=lambda e, a: False, sleep=sleep)

    assert calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_last_error_propagates_unchanged_at_ceiling():
    sleep = Recorder()
    errors = []

    async def op():
        err = HttpError("busy", 429)
        errors.append(err)
        raise err

    with pytest.raises(HttpError) as excinfo:
        await exponential_backoff(op, should_retry=lambda e, a: True, max_attempts=3, max_jitter=0, sleep=sleep)

    assert len(errors) == 3
    assert excinfo.value is errors[-1]
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_jitter_is_added_to_delay():
    sleep = Recorder()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise HttpError("unavailable", 500)
        return calls

    await exponential_backoff(op, should_retry=lambda e, a: True, base_delay=1.0, max_jitter=0.5, sleep=sleep)

    assert 1.0 <= sleep.delays[0] < 1.5


@pytest.mark.asyncio
async def test_abort_is_never_retried():
    sleep = Recorder()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise RunAborted()

    with pytest.raises(RunAborted):
        await exponential_backoff(op, should_retry=lambda e, a: True, sleep=sleep)

    assert calls == 1


@pytest.mark.asyncio
async def test_abort_interrupts_the_wait_between_attempts():
    abort = asyncio.Event()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        asyncio.get_running_loop().call_later(0.05, abort.set)
        raise HttpError("unavailable", 503)

    with pytest.raises(RunAborted):
        await asyncio.wait_for(
            exponential_backoff(op, should_retry=lambda e, a: True, base_delay=10, max_jitter=0, abort=abort),
            timeout=2,
        )

    assert calls == 1


@pytest.mark.parametrize(
    "error, expected",
    [
        (HttpError("rate limited", 429), True),
        (HttpError("server", 500), True),
        (HttpError("gateway", 503), True),
        (HttpError("bad request", 400), False),
        (HttpError("unauthorized", 401), False),
        (HttpError("not found", 404), False),
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (ValueError("bug"), False),
    ],
)
def test_should_retry_http_error(error, expected):
    assert should_retry_http_error(error, 1) is expected
