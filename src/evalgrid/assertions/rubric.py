from __future__ import annotations

import json
from typing import Any, Sequence

from pydantic import BaseModel, ValidationError

from evalgrid.assertions.base import fail, output_text
from evalgrid.environment import TestEnvironment
from evalgrid.models import AssertionResult, ProviderSpec, TestOutput, TestResult
from evalgrid.providers.base import ModelProvider, RunContext

LLM_RUBRIC_PROMPT = """\
You are grading output according to a user-specified rubric. If the statement \
in the rubric is true, the output passes the test.

--- OUTPUT ---
{{ output }}

--- RUBRIC ---
{{ rubric }}

Return JSON only: {"pass": boolean, "message": "brief explanation"}
"""

CONSISTENCY_PROMPT = """\
You are checking outputs that different models produced for the same input. \
Decide whether the outputs, taken together, satisfy the criteria.

{% for item in output %}--- OUTPUT {{ loop.index0 }} ---
{{ item }}

{% endfor %}--- CRITERIA ---
{{ criteria }}

Return JSON only: {"pass": boolean, "message": "brief explanation"}
"""

SELECT_BEST_PROMPT = """\
You are comparing outputs that different models produced for the same input. \
Select the single output that best satisfies the criteria.

{% for item in output %}--- OUTPUT {{ loop.index0 }} ---
{{ item }}

{% endfor %}--- CRITERIA ---
{{ criteria }}

Return JSON only: {"best": <index of the best output>, "message": "brief explanation"}
"""


class RubricArgs(BaseModel):
    rubric: str
    prompt: str | None = None
    provider: str | ProviderSpec | None = None


class RowRubricArgs(BaseModel):
    criteria: str
    prompt: str | None = None
    provider: str | ProviderSpec | None = None


class _BestChoice(BaseModel):
    best: int
    message: str | None = None


def extract_json_objects(text: str) -> list[Any]:
    """Return every top-level JSON object embedded in free text, in order."""
    decoder = json.JSONDecoder()
    objects: list[Any] = []
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        objects.append(obj)
        pos = text.find("{", end)
    return objects


class _RubricBase:
    """Runs a grading prompt through a model and hands back its text."""

    def __init__(self, model: ModelProvider, prompt: str, test_vars: dict[str, Any], abort) -> None:
        self._env: TestEnvironment | None = TestEnvironment(model, prompt)
        self.test_vars = test_vars
        self.abort = abort

    async def _grade(self, variables: dict[str, Any]) -> tuple[str, TestOutput]:
        if self._env is None:
            raise RuntimeError("assertion has been destroyed")
        result = await self._env.run({**self.test_vars, **variables}, RunContext(abort=self.abort))
        return output_text(result.output), result

    def destroy(self) -> None:
        self._env = None


class LlmRubric(_RubricBase):
    kind = "cell"

    def __init__(self, args: RubricArgs, test_vars: dict[str, Any], model: ModelProvider, abort) -> None:
        super().__init__(model, args.prompt or LLM_RUBRIC_PROMPT, test_vars, abort)
        self.rubric = args.rubric

    async def run(self, output: TestOutput) -> AssertionResult:
        text, result = await self._grade({"output": output_text(output.output), "rubric": self.rubric})
        if not text:
            return fail(f"Rubric did not succeed: {result.error or 'No error message'}")
        return _parse_verdict(text)


class Consistency(_RubricBase):
    kind = "row"

    def __init__(self, args: RowRubricArgs, test_vars: dict[str, Any], model: ModelProvider, abort) -> None:
        super().__init__(model, args.prompt or CONSISTENCY_PROMPT, test_vars, abort)
        self.criteria = args.criteria

    async def run(self, results: Sequence[TestResult]) -> list[AssertionResult]:
        outputs = [output_text(r.output) for r in results]
        text, result = await self._grade({"output": outputs, "criteria": self.criteria})
        if not text:
            verdict = fail(f"Rubric did not succeed: {result.error or 'No error message'}")
        else:
            verdict = _parse_verdict(text)
        return [verdict.model_copy() for _ in results]


class SelectBest(_RubricBase):
    kind = "row"

    def __init__(self, args: RowRubricArgs, test_vars: dict[str, Any], model: ModelProvider, abort) -> None:
        super().__init__(model, args.prompt or SELECT_BEST_PROMPT, test_vars, abort)
        self.criteria = args.criteria

    async def run(self, results: Sequence[TestResult]) -> list[AssertionResult]:
        outputs = [output_text(r.output) for r in results]
        text, result = await self._grade({"output": outputs, "criteria": self.criteria})
        if not text:
            return [fail(f"Rubric did not succeed: {result.error or 'No error message'}") for _ in results]

        objects = extract_json_objects(text)
        try:
            choice = _BestChoice.model_validate(objects[0])
        except (IndexError, ValidationError):
            return [fail(f'Invalid rubric output: "{text}"') for _ in results]
        if not 0 <= choice.best < len(results):
            return [fail(f"Rubric selected index {choice.best}, out of range") for _ in results]

        return [
            AssertionResult(pass_=True, message=choice.message)
            if i == choice.best
            else fail(f"Output {choice.best} was selected as best")
            for i in range(len(results))
        ]


def _parse_verdict(text: str) -> AssertionResult:
    objects = extract_json_objects(text)
    try:
        return AssertionResult.model_validate(objects[0])
    except (IndexError, ValidationError):
        return fail(f'Invalid rubric output: "{text}"')
