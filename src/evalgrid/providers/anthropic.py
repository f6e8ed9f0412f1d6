from __future__ import annotations

import base64
from typing import Any, AsyncIterator

import httpx

from evalgrid.backoff import RetryPolicy
from evalgrid.errors import ProtocolError, ProviderError
from evalgrid.models import Conversation, FilePart, OutputPart, PromptPart, TokenUsage
from evalgrid.pricing import calculate_cost
from evalgrid.providers.base import Completed, RunContext, Session, StreamEvent, TextDelta
from evalgrid.providers.common import IMAGE_MIME_TYPES, error_text, open_stream, parse_event, split_config
from evalgrid.providers.openai import CostFunction
from evalgrid.semaphore import Semaphore
from evalgrid.sse import sse

ANTHROPIC_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class Anthropic:
    """Anthropic Messages API over SSE."""

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
        self.base_url = (api_base_url or ANTHROPIC_BASE).rstrip("/")
        self.retry = retry
        self.cost_function = cost_function
        self.request_options = options
        self._limiter = limiter
        self._mime_types = mime_types or [*IMAGE_MIME_TYPES, "application/pdf"]

    @property
    def id(self) -> str:
        return f"anthropic:{self.model}"

    @property
    def limiter(self) -> Semaphore:
        return self._limiter

    @property
    def mime_types(self) -> list[str]:
        return self._mime_types

    def build_request(self, conversation: Conversation, context: RunContext) -> dict[str, Any]:
        state = context.session.state if context.session and context.session.state else {}
        system_texts: list[str] = []
        messages: list[dict[str, Any]] = list(state.get("messages", []))
        for turn in conversation:
            if turn.role in ("system", "developer"):
                system_texts.extend(p.text for p in turn.content if not isinstance(p, FilePart))
                continue
            messages.append({"role": turn.role, "content": [_to_content_block(p) for p in turn.content]})

        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            **self.request_options,
            "messages": messages,
            "stream": True,
        }
        system = state.get("system") or ("\n\n".join(system_texts) if system_texts else None)
        if system:
            request["system"] = system
        return request

    async def run(self, conversation: Conversation, context: RunContext) -> AsyncIterator[StreamEvent]:
        request = self.build_request(conversation, context)
        headers = {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}
        message: dict[str, Any] | None = None
        text: list[str] = []
        usage: dict[str, Any] = {}
        stop_reason = None
        stopped = False

        async with open_stream(
            self.client,
            self._limiter,
            f"{self.base_url}/messages",
            headers,
            request,
            context,
            self.retry,
        ) as response:
            async for payload in sse(response, context.abort):
                event = parse_event(payload)
                kind = event.get("type")
                if kind == "message_start":
                    if not isinstance(event.get("message"), dict):
                        raise ProtocolError("Failed to run model: malformed message_start")
                    message = dict(event["message"])
                    usage.update(message.get("usage") or {})
                elif kind == "content_block_delta":
                    delta = self.extract_delta_output(event)
                    if delta:
                        text.append(delta)
                        yield TextDelta(delta)
                elif kind == "message_delta":
                    delta = event.get("delta")
                    if isinstance(delta, dict):
                        stop_reason = delta.get("stop_reason", stop_reason)
                    if isinstance(event.get("usage"), dict):
                        usage.update(event["usage"])
                elif kind == "message_stop":
                    stopped = True
                elif kind == "error":
                    raise ProviderError(f"Failed to run model: {error_text(event.get('error'))}")

        if not stopped or message is None:
            raise ProtocolError("Failed to run model: missing completion")

        final = {
            **message,
            "content": [{"type": "text", "text": "".join(text)}],
            "stop_reason": stop_reason,
            "usage": usage,
        }
        state = {
            "system": request.get("system"),
            "messages": request["messages"] + [{"role": "assistant", "content": final["content"]}],
        }
        yield Completed(response=final, session=Session(state=state))

    def extract_delta_output(self, event: dict[str, Any]) -> str:
        delta = event.get("delta")
        if not isinstance(delta, dict) or delta.get("type") != "text_delta":
            return ""
        text = delta.get("text")
        return text if isinstance(text, str) else ""

    def extract_output(self, response: dict[str, Any]) -> list[OutputPart]:
        content = response.get("content")
        if not isinstance(content, list):
            raise ProtocolError("Unexpected messages payload")
        texts = [block.get("text", "") for block in content if block.get("type") == "text"]
        return ["".join(texts)]

    def extract_token_usage(self, response: dict[str, Any]) -> TokenUsage:
        usage = response.get("usage") or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        cost = self.cost_function(self.model, input_tokens, output_tokens) if self.cost_function else None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost_dollars=cost,
        )


def _to_content_block(part: PromptPart) -> dict[str, Any]:
    if isinstance(part, FilePart):
        block_type = "document" if part.mime_type == "application/pdf" else "image"
        return {
            "type": block_type,
            "source": {
                "type": "base64",
                "media_type": part.mime_type,
                "data": base64.b64encode(part.data).decode("ascii"),
            },
        }
    return {"type": "text", "text": part.text}
