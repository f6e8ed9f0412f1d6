from __future__ import annotations

import base64
from typing import Any, AsyncIterator

import httpx

from evalgrid.backoff import RetryPolicy
from evalgrid.errors import ProtocolError, ProviderError
from evalgrid.models import Conversation, FilePart, OutputPart, PromptPart, TokenUsage
from evalgrid.pricing import calculate_cost
from evalgrid.providers.base import Completed, RunContext, Session, StreamEvent, TextDelta
from evalgrid.providers.common import error_text, open_stream, parse_event, split_config
from evalgrid.providers.openai import CostFunction
from evalgrid.semaphore import Semaphore
from evalgrid.sse import sse

GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_MIME_TYPES = ["image/*", "audio/*", "video/*", "text/*", "application/pdf"]


class Gemini:
    """Gemini `streamGenerateContent` over SSE. The stream has no end marker; a finish reason marks completion."""

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
        self.base_url = (api_base_url or GEMINI_BASE).rstrip("/")
        self.retry = retry
        self.cost_function = cost_function
        self.request_options = options
        self._limiter = limiter
        self._mime_types = mime_types or list(GEMINI_MIME_TYPES)

    @property
    def id(self) -> str:
        return f"gemini:{self.model}"

    @property
    def limiter(self) -> Semaphore:
        return self._limiter

    @property
    def mime_types(self) -> list[str]:
        return self._mime_types

    def build_request(self, conversation: Conversation, context: RunContext) -> dict[str, Any]:
        state = context.session.state if context.session and context.session.state else {}
        system_texts: list[str] = []
        contents: list[dict[str, Any]] = list(state.get("contents", []))
        for turn in conversation:
            if turn.role in ("system", "developer"):
                system_texts.extend(p.text for p in turn.content if not isinstance(p, FilePart))
                continue
            role = "model" if turn.role == "assistant" else "user"
            contents.append({"role": role, "parts": [_to_part(p) for p in turn.content]})

        request: dict[str, Any] = {**self.request_options, "contents": contents}
        system = state.get("systemInstruction")
        if system is None and system_texts:
            system = {"parts": [{"text": "\n\n".join(system_texts)}]}
        if system is not None:
            request["systemInstruction"] = system
        return request

    async def run(self, conversation: Conversation, context: RunContext) -> AsyncIterator[StreamEvent]:
        request = self.build_request(conversation, context)
        headers = {"x-goog-api-key": self.api_key}
        parts: list[dict[str, Any]] = []
        usage: dict[str, Any] = {}
        finish_reason = None
        model_version = None

        async with open_stream(
            self.client,
            self._limiter,
            f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse",
            headers,
            request,
            context,
            self.retry,
        ) as response:
            async for payload in sse(response, context.abort):
                event = parse_event(payload)
                if "error" in event:
                    raise ProviderError(f"Failed to run model: {error_text(event['error'])}")
                feedback = event.get("promptFeedback")
                if isinstance(feedback, dict) and feedback.get("blockReason"):
                    raise ProviderError(f"Prompt blocked: {feedback['blockReason']}")
                model_version = event.get("modelVersion", model_version)
                if isinstance(event.get("usageMetadata"), dict):
                    usage = event["usageMetadata"]
                candidates = event.get("candidates")
                if not isinstance(candidates, list) or not candidates:
                    continue
                candidate = candidates[0]
                if not isinstance(candidate, dict):
                    raise ProtocolError("Unexpected Gemini candidate")
                if candidate.get("finishReason"):
                    finish_reason = candidate["finishReason"]
                content = candidate.get("content")
                for part in (content.get("parts") or [] if isinstance(content, dict) else []):
                    if not isinstance(part, dict):
                        continue
                    text = part.get("text")
                    if isinstance(text, str) and text:
                        if parts and "text" in parts[-1]:
                            parts[-1] = {"text": parts[-1]["text"] + text}
                        else:
                            parts.append({"text": text})
                        yield TextDelta(text)
                    elif isinstance(part.get("inlineData"), dict):
                        parts.append({"inlineData": part["inlineData"]})

        if finish_reason is None:
            raise ProtocolError("Failed to run model: missing completion")

        final = {
            "candidates": [{"content": {"role": "model", "parts": parts}, "finishReason": finish_reason}],
            "usageMetadata": usage,
            "modelVersion": model_version,
        }
        state = {
            "systemInstruction": request.get("systemInstruction"),
            "contents": request["contents"] + [{"role": "model", "parts": parts}],
        }
        yield Completed(response=final, session=Session(state=state))

    def extract_output(self, response: dict[str, Any]) -> list[OutputPart]:
        try:
            parts = response["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProtocolError("Unexpected Gemini payload") from exc
        output: list[OutputPart] = []
        for i, part in enumerate(parts):
            if "text" in part:
                output.append(part["text"])
            elif "inlineData" in part:
                inline = part["inlineData"]
                output.append(
                    FilePart(
                        name=f"output-{i}",
                        mime_type=inline.get("mimeType", "application/octet-stream"),
                        data=base64.b64decode(inline.get("data", "")),
                    )
                )
        return output or [""]

    def extract_token_usage(self, response: dict[str, Any]) -> TokenUsage:
        usage = response.get("usageMetadata") or {}
        input_tokens = int(usage.get("promptTokenCount") or 0)
        output_tokens = int(usage.get("candidatesTokenCount") or 0)
        total_tokens = int(usage.get("totalTokenCount") or input_tokens + output_tokens)
        cost = self.cost_function(self.model, input_tokens, output_tokens) if self.cost_function else None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            cost_dollars=cost,
        )


def _to_part(part: PromptPart) -> dict[str, Any]:
    if isinstance(part, FilePart):
        return {
            "inlineData": {
                "mimeType": part.mime_type,
                "data": base64.b64encode(part.data).decode("ascii"),
            }
        }
    return {"text": part.text}
