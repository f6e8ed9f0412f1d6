from __future__ import annotations

from typing import Any, AsyncIterator, Callable

import httpx

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
from evalgrid.semaphore import Semaphore
from evalgrid.sse import sse

OPENAI_BASE = "https://api.openai.com/v1"
OPENROUTER_BASE = "https://openrouter.ai/api/v1"

CostFunction = Callable[[str, int, int], "float | None"]


class OpenAiChat:
    """Chat-completions streaming API, shared by OpenAI and OpenRouter."""

    def __init__(
        self,
        model: str,
        api_key: str,
        client: httpx.AsyncClient,
        limiter: Semaphore,
        config: dict[str, Any] | None = None,
        *,
        kind: str = "openai",
        base_url: str = OPENAI_BASE,
        retry: RetryPolicy = RetryPolicy(),
        cost_function: CostFunction | None = calculate_cost,
    ) -> None:
        mime_types, api_base_url, options = split_config(config)
        self.model = model
        self.kind = kind
        self.api_key = api_key
        self.client = client
        self.base_url = (api_base_url or base_url).rstrip("/")
        self.retry = retry
        self.cost_function = cost_function
        self.request_options = options
        self._limiter = limiter
        self._mime_types = mime_types or list(IMAGE_MIME_TYPES)

    @property
    def id(self) -> str:
        return f"{self.kind}:{self.model}"

    @property
    def limiter(self) -> Semaphore:
        return self._limiter

    @property
    def mime_types(self) -> list[str]:
        return self._mime_types

    def build_request(self, conversation: Conversation, context: RunContext) -> dict[str, Any]:
        previous = context.session.state if context.session and context.session.state else []
        messages = _merge_messages(previous, [_to_chat_message(turn) for turn in conversation])
        return {
            "model": self.model,
            **self.request_options,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    async def run(self, conversation: Conversation, context: RunContext) -> AsyncIterator[StreamEvent]:
        request = self.build_request(conversation, context)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        content: list[str] = []
        refusal: list[str] = []
        finish_reason = None
        usage = None
        response_id = None
        done = False

        async with open_stream(
            self.client,
            self._limiter,
            f"{self.base_url}/chat/completions",
            headers,
            request,
            context,
            self.retry,
        ) as response:
            async for payload in sse(response, context.abort):
                if payload.strip() == "[DONE]":
                    done = True
                    break
                event = parse_event(payload)
                if "error" in event:
                    raise ProviderError(f"Failed to run model: {error_text(event['error'])}")
                response_id = event.get("id", response_id)
                if isinstance(event.get("usage"), dict):
                    usage = event["usage"]
                for choice in event.get("choices") or []:
                    if not isinstance(choice, dict) or not isinstance(choice.get("delta") or {}, dict):
                        raise ProtocolError(f"Unexpected chat completion chunk: {payload[:200]!r}")
                    delta = choice.get("delta") or {}
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
                    if isinstance(delta.get("content"), str) and delta["content"]:
                        content.append(delta["content"])
                        yield TextDelta(delta["content"])
                    if isinstance(delta.get("refusal"), str) and delta["refusal"]:
                        refusal.append(delta["refusal"])
                        yield TextDelta(delta["refusal"])

        if not done:
            raise ProtocolError("Failed to run model: missing completion")

        message = {
            "role": "assistant",
            "content": "".join(content) if content else None,
            "refusal": "".join(refusal) if refusal else None,
        }
        final = {
            "id": response_id,
            "object": "chat.completion",
            "model": self.model,
            "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
            "usage": usage,
        }
        history = request["messages"] + [
            {"role": "assistant", "content": message["content"] or message["refusal"] or ""}
        ]
        yield Completed(response=final, session=Session(state=history))

    def extract_output(self, response: dict[str, Any]) -> list[OutputPart]:
        try:
            message = response["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProtocolError("Unexpected chat completion payload") from exc
        return [message.get("content") or message.get("refusal") or ""]

    def extract_token_usage(self, response: dict[str, Any]) -> TokenUsage:
        usage = response.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or 0)
        total_tokens = int(usage.get("total_tokens") or input_tokens + output_tokens)
        cost = self.cost_function(self.model, input_tokens, output_tokens) if self.cost_function else None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            cost_dollars=cost,
        )


def _to_chat_message(turn: ConversationTurn) -> dict[str, Any]:
    parts: list[dict[str, Any]] = []
    for part in turn.content:
        if isinstance(part, FilePart):
            parts.append({"type": "image_url", "image_url": {"url": data_url(part)}})
        else:
            parts.append({"type": "text", "text": part.text})
    if len(parts) == 1 and parts[0]["type"] == "text":
        return {"role": turn.role, "content": parts[0]["text"]}
    return {"role": turn.role, "content": parts}


def _merge_messages(previous: list[dict[str, Any]], new: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if not previous:
        return new
    return previous + [m for m in new if m["role"] != "system"]
