"""
Pipeline prompts: a graph of prompt steps evaluated against one test row.

Each step names the variables it depends on and the variable it writes. The
evaluator repeatedly fires the first runnable step (declaration order) until
none is runnable. A step becomes runnable again when one of its dependencies
is re-bound, which is how loops are written:

    $pipeline:
      - prompt: "Write one paragraph about {{ topic }}."
        outputAs: writing
      - deps: [writing]
        if: "history | length < 10"
        prompt: "Rewrite this paragraph to be more interesting: {{ writing }}"
        outputAs: writing

Termination is up to the `if` expression. There is no implicit iteration
cap; `max_steps` adds an explicit one that fails the row when exceeded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from jinja2 import TemplateError

from evalgrid.errors import PipelineError
from evalgrid.log import get_logger
from evalgrid.models import HistoryEntry, Output, OutputPart, PipelinePrompt, PipelineStep, TokenUsage
from evalgrid.providers.base import ModelCall, ModelProvider, RunContext, Session, call_model
from evalgrid.template import PromptFormatter, compile_expression

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    output: list[OutputPart]
    raw: Any
    token_usage: TokenUsage
    history: list[HistoryEntry] = field(default_factory=list)


class _CompiledStep:
    def __init__(self, index: int, step: PipelineStep) -> None:
        self.index = index
        self.id = step.id or f"step-{index}"
        self.deps = list(step.deps)
        self.output_as = step.output_as
        self.session = step.session
        self.formatter = PromptFormatter(step.prompt)
        self.condition = compile_expression(step.if_) if step.if_ else None


@dataclass
class _State:
    bindings: dict[str, Any]
    versions: dict[str, int] = field(default_factory=dict)
    fired: dict[int, dict[str, int]] = field(default_factory=dict)
    sessions: dict[str, Session | None] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)

    def history_view(self) -> list[dict[str, Any]]:
        return [{"id": h.id, "output": h.output} for h in self.history]


class PipelineEvaluator:
    def __init__(self, pipeline: PipelinePrompt, max_steps: int | None = None) -> None:
        self.steps = [_CompiledStep(i, step) for i, step in enumerate(pipeline.pipeline)]
        self.max_steps = max_steps

    def _runnable(self, step: _CompiledStep, state: _State) -> bool:
        if any(dep not in state.bindings for dep in step.deps):
            return False
        last = state.fired.get(step.index)
        if last is not None and all(state.versions.get(d, 0) == v for d, v in last.items()):
            return False
        if step.condition is None:
            return True
        scope = {**state.bindings, "vars": state.bindings, "history": state.history_view()}
        try:
            return bool(step.condition(**scope))
        except TemplateError as exc:
            raise PipelineError(f"Condition of {step.id} failed: {exc}") from exc

    def next_step(self, state: _State) -> _CompiledStep | None:
        for step in self.steps:
            if self._runnable(step, state):
                return step
        return None

    async def run(
        self,
        model: ModelProvider,
        variables: dict[str, Any],
        context: RunContext,
    ) -> AsyncIterator[Union[str, PipelineResult]]:
        """Yield streamed text of each step in turn, then one PipelineResult."""
        state = _State(bindings=dict(variables))
        usage = TokenUsage()
        last: ModelCall | None = None

        while True:
            context.check()
            step = self.next_step(state)
            if step is None:
                break
            if self.max_steps is not None and len(state.history) >= self.max_steps:
                raise PipelineError(
                    f"Pipeline exceeded max_steps={self.max_steps} (next step: {step.id})"
                )

            try:
                conversation = step.formatter.format({**state.bindings, "history": state.history_view()})
            except TemplateError as exc:
                raise PipelineError(f"Failed to render {step.id}: {exc}") from exc
            session = None
            if step.session and step.deps:
                session = state.sessions.get(step.deps[0])
            step_context = RunContext(abort=context.abort, session=session)

            call: ModelCall | None = None
            async for item in call_model(model, conversation, step_context):
                if isinstance(item, ModelCall):
                    call = item
                else:
                    yield item
            assert call is not None

            # Snapshot before rebinding so a step that writes its own dep runs again
            seen = {d: state.versions.get(d, 0) for d in step.deps}
            state.bindings[step.output_as] = _as_value(call.output)
            state.versions[step.output_as] = state.versions.get(step.output_as, 0) + 1
            state.fired[step.index] = seen
            state.sessions[step.output_as] = call.session
            state.history.append(HistoryEntry(id=step.id, prompt=conversation, output=_as_value(call.output)))
            usage = _add_usage(usage, call.token_usage)
            last = call
            logger.debug("pipeline step %s fired (%d so far)", step.id, len(state.history))

        if last is None:
            raise PipelineError("No pipeline step was runnable")
        yield PipelineResult(output=last.output, raw=last.raw, token_usage=usage, history=state.history)


def _as_value(output: list[OutputPart]) -> Output:
    if all(isinstance(part, str) for part in output):
        return "".join(output)
    return list(output)


def _add_usage(a: TokenUsage, b: TokenUsage) -> TokenUsage:
    if a.cost_dollars is None and b.cost_dollars is None:
        cost = None
    else:
        cost = (a.cost_dollars or 0.0) + (b.cost_dollars or 0.0)
    return TokenUsage(
        input_tokens=a.input_tokens + b.input_tokens,
        output_tokens=a.output_tokens + b.output_tokens,
        total_tokens=a.total_tokens + b.total_tokens,
        cost_dollars=cost,
    )
