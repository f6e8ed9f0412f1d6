from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from evalgrid.models import Conversation, FilePart, OutputPart, TokenUsage
from evalgrid.providers.base import Completed, RunContext, Session, StreamEvent, TextDelta
from evalgrid.providers.common import split_config
from evalgrid.semaphore import Semaphore


class Echo:
    """
    Local provider that answers with the text of the prompt.

    Useful for dry runs of a config and for testing pipelines offline. The
    model name is ignored.
    """

    def __init__(self, model: str, limiter: Semaphore, config: dict[str, Any] | None = None) -> None:
        mime_types, _, _ = split_config(config)
        self.model = model
        self._limiter = limiter
        self._mime_types = mime_types or ["*/*"]

    @property
    def id(self) -> str:
        return f"echo:{self.model}"

    @property
    def limiter(self) -> Semaphore:
        return self._limiter

    @property
    def mime_types(self) -> list[str]:
        return self._mime_types

    async def run(self, conversation: Conversation, context: RunContext) -> AsyncIterator[StreamEvent]:
        texts: list[str] = []
        for turn in conversation:
            if turn.role == "system":
                continue
            for part in turn.content:
                texts.append(f"[{part.name}]" if isinstance(part, FilePart) else part.text)
        text = "\n".join(texts)
        async with self._limiter.hold(context.abort):
            words = text.split(" ")
            for i, word in enumerate(words):
                context.check()
                await asyncio.sleep(0)
                yield TextDelta(word if i == len(words) - 1 else word + " ")
        previous = context.session.state if context.session and context.session.state else []
        yield Completed(response={"output": text}, session=Session(state=[*previous, text]))

    def extract_output(self, response: dict[str, Any]) -> list[OutputPart]:
        return [response.get("output", "")]

    def extract_token_usage(self, response: dict[str, Any]) -> TokenUsage:
        return TokenUsage()
