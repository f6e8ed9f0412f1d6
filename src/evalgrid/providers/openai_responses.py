from __future__ import annotations

from typing import Any, AsyncIterator

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from evalgrid.backoff import RetryPolicy
from evalgrid.errors import ProtocolError, ProviderError
from evalgrid.models import Conversation, ConversationTurn, FilePart, OutputPart, TokenUsage
from evalgrid.pricing import calculate_cost
from evalgrid.providers.base import Completed, RunContext, Session, StreamEvent, TextDelta
from evalgrid.providers.common import (
    IMAGE_MIME_TYPES,
    data_url,
    error_text,
    open_stream,
    parse_event,
    split_config,
)
from evalgrid.providers.openai import OPENAI_BASE, CostFunction
from evalgrid.semaphore import Semaphore
from evalgrid.sse import sse


class _Usage(BaseModel):
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


class _ContentItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None


class _OutputItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    role: str | None = None
    content: list[_ContentItem] | None = None


class ResponsesResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    output_text: str | None = None
    usage: _Usage | None = None
    output: list[_OutputItem] | None = None


def _parse_result(response: Any) -> ResponsesResult:
    try:
        return ResponsesResult.model_validate(response)
    except ValidationError as exc:
        raise ProtocolError(f"Unexpected responses payload: {exc}") from exc


class OpenAiResponses:
    """OpenAI Responses API. Only the `response.completed` payload is trusted for output."""

    def __init__(
        self,
        model: str,
        api_key: str,
        client: httpx.AsyncClient,
        limiter: Semaphore,
        config: dict[str, Any] | None = None,
        *,
        retry: RetryPolicy = RetryPolicy(),
        cost_function: CostFunction | None = calculate_cost,
    ) -> None:
        mime_types, api_base_url, options = split_config(config)
        self.model = model
        self.api_key = api_key
        self.client = client
        self.base_url = (api_base_url or OPENAI_BASE).rstrip("/")
        self.retry = retry
        self.cost_function = cost_function
        self.request_options = options
        self._limiter = limiter
        self._mime_types = mime_types or list(IMAGE_MIME_TYPES)

    @property
    def id(self) -> str:
        return f"openai-responses:{self.model}"

    @property
    def limiter(self) -> Semaphore:
        return self._limiter

    @property
    def mime_types(self) -> list[str]:
        return self._mime_types

    def build_request(self, conversation: Conversation, context: RunContext) -> dict[str, Any]:
        previous = context.session.state if context.session and context.session.state else []
        new = [_to_response_message(turn) for turn in conversation]
        messages = previous + [m for m in new if m["role"] != "system"] if previous else new
        return {
            "model": self.model,
            **self.request_options,
            "stream": True,
            "store": False,
            "input": messages,
        }

    async def run(self, conversation: Conversation, context: RunContext) -> AsyncIterator[StreamEvent]:
        request = self.build_request(conversation, context)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        full_text: list[str] = []
        completed: Any = None

        async with open_stream(
            self.client,
            self._limiter,
            f"{self.base_url}/responses",
            headers,
            request,
            context,
            self.retry,
        ) as response:
            async for payload in sse(response, context.abort):
                event = parse_event(payload)
                kind = event.get("type")
                if kind == "response.output_text.delta":
                    text = self.extract_delta_output(event)
                    full_text.append(text)
                    yield TextDelta(text)
                elif kind == "response.refusal.delta":
                    text = self.extract_refusal_delta(event)
                    full_text.append(text)
                    yield TextDelta(text)
                elif kind == "response.completed":
                    completed = event.get("response")
                    if not isinstance(completed, dict):
                        raise ProtocolError("Failed to run model: malformed completion")
                elif kind == "response.error":
                    raise ProviderError(f"Failed to run model: {error_text(event.get('error'))}")
                elif kind == "response.failed":
                    message = error_text(event.get("error"), str(event.get("reason") or "Unknown error"))
                    raise ProviderError(f"Failed to run model: {message}")

        if completed is None:
            raise ProtocolError("Failed to run model: missing completion")

        result = _parse_result(completed)
        text = result.output_text if result.output_text is not None else "".join(full_text)
        state = request["input"] + [{"role": "assistant", "content": text, "type": "message"}]
        yield Completed(response=completed, session=Session(state=state))

    def extract_delta_output(self, event: dict[str, Any]) -> str:
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""

    def extract_refusal_delta(self, event: dict[str, Any]) -> str:
        return self.extract_delta_output(event)

    def extract_output(self, response: Any) -> list[OutputPart]:
        result = _parse_result(response)
        if result.output_text:
            return [result.output_text]
        for item in result.output or []:
            if item.type == "message":
                for content in item.content or []:
                    if content.type == "output_text" and content.text is not None:
                        return [content.text]
        return [""]

    def extract_token_usage(self, response: Any) -> TokenUsage:
        usage = _parse_result(response).usage or _Usage()
        input_tokens = usage.input_tokens or 0
        output_tokens = usage.output_tokens or 0
        total_tokens = usage.total_tokens if usage.total_tokens is not None else input_tokens + output_tokens
        cost = self.cost_function(self.model, input_tokens, output_tokens) if self.cost_function else None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            cost_dollars=cost,
        )


def _to_response_message(turn: ConversationTurn) -> dict[str, Any]:
    content: list[dict[str, Any]] = []
    for part in turn.content:
        if isinstance(part, FilePart):
            content.append({"type": "input_image", "image_url": data_url(part), "detail": "auto"})
        else:
            content.append({"type": "input_text", "text": part.text})
    if len(content) == 1 and content[0]["type"] == "input_text":
        return {"role": turn.role, "content": content[0]["text"], "type": "message"}
    return {"role": turn.role, "content": content, "type": "message"}
