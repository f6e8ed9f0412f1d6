from __future__ import annotations

import asyncio
import fnmatch
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, Union, runtime_checkable

from evalgrid.errors import ProtocolError, RunAborted, UnsupportedContentError
from evalgrid.models import Conversation, FilePart, OutputPart, TokenUsage
from evalgrid.semaphore import Semaphore


@dataclass
class Session:
    """Provider-native conversation state carried between pipeline steps."""

    state: Any = None


@dataclass
class RunContext:
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    session: Session | None = None

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()

    def check(self) -> None:
        if self.abort.is_set():
            raise RunAborted()


@dataclass
class TextDelta:
    text: str


@dataclass
class Completed:
    """Terminal stream event. `response` is the authoritative provider payload."""

    response: Any
    session: Session | None = None


StreamEvent = Union[TextDelta, Completed]


@runtime_checkable
class ModelProvider(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def limiter(self) -> Semaphore: ...

    @property
    def mime_types(self) -> list[str]: ...

    def run(self, conversation: Conversation, context: RunContext) -> AsyncIterator[StreamEvent]:
        """Stream TextDelta events, then exactly one Completed event."""
        ...

    def extract_output(self, response: Any) -> list[OutputPart]: ...

    def extract_token_usage(self, response: Any) -> TokenUsage: ...


@dataclass
class ModelCall:
    """Result of one completed provider invocation."""

    output: list[OutputPart]
    raw: Any
    token_usage: TokenUsage
    session: Session | None = None


def mime_supported(mime_type: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(mime_type, pattern) for pattern in patterns)


async def call_model(
    model: ModelProvider,
    conversation: Conversation,
    context: RunContext,
) -> AsyncIterator[Union[str, ModelCall]]:
    """
    Run one conversation through a provider.

    Yields streamed text fragments, then a single ModelCall built from the
    provider's completion payload.
    """
    for turn in conversation:
        for part in turn.content:
            if isinstance(part, FilePart) and not mime_supported(part.mime_type, model.mime_types):
                raise UnsupportedContentError(
                    f"{model.id} does not support {part.mime_type} ({part.name})"
                )
    context.check()
    completed: Completed | None = None
    async for event in model.run(conversation, context):
        if isinstance(event, TextDelta):
            yield event.text
        else:
            completed = event
    if completed is None:
        raise ProtocolError(f"{model.id} finished without a completion")
    yield ModelCall(
        output=model.extract_output(completed.response),
        raw=completed.response,
        token_usage=model.extract_token_usage(completed.response),
        session=completed.session,
    )
