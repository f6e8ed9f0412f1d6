from __future__ import annotations

import base64
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from evalgrid.abort import until_aborted
from evalgrid.backoff import RetryPolicy, exponential_backoff, should_retry_http_error
from evalgrid.errors import HttpError, ProtocolError
from evalgrid.models import FilePart
from evalgrid.providers.base import RunContext
from evalgrid.semaphore import Semaphore

IMAGE_MIME_TYPES = ["image/png", "image/jpeg", "image/webp", "image/gif"]


def split_config(config: dict[str, Any] | None) -> tuple[list[str] | None, str | None, dict[str, Any]]:
    """Separate the reserved `mimeTypes` and `apiBaseUrl` keys from request passthrough fields."""
    options = dict(config or {})
    mime_types = options.pop("mimeTypes", None)
    base_url = options.pop("apiBaseUrl", None)
    if mime_types is not None:
        mime_types = [str(m) for m in mime_types]
    return mime_types, base_url, options


def data_url(part: FilePart) -> str:
    return f"data:{part.mime_type};base64,{base64.b64encode(part.data).decode('ascii')}"


def parse_event(payload: str) -> dict[str, Any]:
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Failed to parse stream event: {payload[:200]!r}") from exc
    if not isinstance(event, dict):
        raise ProtocolError(f"Unexpected stream event: {payload[:200]!r}")
    return event


def error_text(error: Any, default: str = "Unknown error") -> str:
    """Message of an in-stream error, which providers send as an object or a bare string."""
    if isinstance(error, dict):
        return str(error.get("message") or default)
    if isinstance(error, str) and error:
        return error
    return default


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        kind = error.get("type") or "error"
        return f"{kind}: {error['message']}"
    return response.reason_phrase or f"HTTP {response.status_code}"


async def _send(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    body: dict[str, Any],
) -> httpx.Response:
    request = client.build_request("POST", url, headers=headers, json=body)
    response = await client.send(request, stream=True)
    if response.status_code >= 400:
        try:
            await response.aread()
        finally:
            await response.aclose()
        raise HttpError(f"Failed to run model: {_error_message(response)}", response.status_code)
    return response


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    limiter: Semaphore,
    url: str,
    headers: dict[str, str],
    body: dict[str, Any],
    context: RunContext,
    retry: RetryPolicy,
) -> AsyncIterator[httpx.Response]:
    """POST `body` and yield the streaming response, holding a limiter permit throughout."""
    async with limiter.hold(context.abort):

        async def attempt() -> httpx.Response:
            return await until_aborted(_send(client, url, headers, body), context.abort)

        response = await exponential_backoff(
            attempt,
            should_retry=should_retry_http_error,
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_jitter=retry.max_jitter,
            abort=context.abort,
        )
        try:
            yield response
        finally:
            await response.aclose()
