from __future__ import annotations

import time
from typing import Any, AsyncIterator, Callable, Union

import httpx
from jinja2 import TemplateError

from evalgrid.errors import EvalGridError
from evalgrid.log import get_logger
from evalgrid.models import Output, OutputPart, PipelinePrompt, Prompt, TestOutput
from evalgrid.pipeline import PipelineEvaluator, PipelineResult
from evalgrid.providers.base import ModelCall, ModelProvider, RunContext, call_model
from evalgrid.template import PromptFormatter

logger = get_logger(__name__)


class TestEnvironment:
    """A model paired with a prompt: runs one test row's variables end to end."""

    __test__ = False

    def __init__(self, model: ModelProvider, prompt: Prompt, max_steps: int | None = None) -> None:
        self.model = model
        self.prompt = prompt
        self.pipeline: PipelineEvaluator | None = None
        self.formatter: PromptFormatter | None = None
        if isinstance(prompt, PipelinePrompt):
            self.pipeline = PipelineEvaluator(prompt, max_steps=max_steps)
        else:
            self.formatter = PromptFormatter(prompt)

    async def stream(
        self,
        variables: dict[str, Any],
        context: RunContext | None = None,
    ) -> AsyncIterator[Union[str, TestOutput]]:
        """
        Yield streamed text fragments, then exactly one TestOutput.

        Provider, protocol and pipeline failures end up in `TestOutput.error`;
        they are never raised to the caller.
        """
        context = context or RunContext()
        start = time.perf_counter()
        final: ModelCall | PipelineResult | None = None
        try:
            if self.pipeline is not None:
                source = self.pipeline.run(self.model, variables, context)
            else:
                source = call_model(self.model, self.formatter.format(variables), context)
            async for item in source:
                if isinstance(item, str):
                    yield item
                else:
                    final = item
        except (EvalGridError, TemplateError, httpx.HTTPError) as exc:
            logger.info("%s failed: %s", self.model.id, exc)
            yield TestOutput(error=str(exc) or type(exc).__name__, latency_ms=_elapsed_ms(start))
            return

        if final is None:
            yield TestOutput(error=f"{self.model.id} produced no result", latency_ms=_elapsed_ms(start))
            return
        yield TestOutput(
            output=normalize_output(final.output),
            raw_output=final.raw,
            latency_ms=_elapsed_ms(start),
            token_usage=final.token_usage,
            history=final.history if isinstance(final, PipelineResult) else None,
        )

    async def run(
        self,
        variables: dict[str, Any],
        context: RunContext | None = None,
        on_partial: Callable[[str], None] | None = None,
    ) -> TestOutput:
        """Drain `stream`, passing the text received so far to `on_partial`."""
        text = ""
        async for item in self.stream(variables, context):
            if isinstance(item, TestOutput):
                return item
            text += item
            if on_partial is not None:
                on_partial(text)
        raise RuntimeError("environment stream ended without a TestOutput")


def normalize_output(parts: list[OutputPart]) -> Output:
    if len(parts) == 1 and isinstance(parts[0], str):
        return parts[0]
    return list(parts)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
