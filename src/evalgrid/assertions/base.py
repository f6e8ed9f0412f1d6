from __future__ import annotations

from typing import Literal, Protocol, Sequence, Union, runtime_checkable

from evalgrid.log import get_logger
from evalgrid.models import AssertionResult, Output, TestOutput, TestResult

logger = get_logger(__name__)


@runtime_checkable
class CellAssertion(Protocol):
    """Judges one cell's output."""

    kind: Literal["cell"]

    async def run(self, output: TestOutput) -> AssertionResult: ...


@runtime_checkable
class RowAssertion(Protocol):
    """Judges every provider's output for one test; returns one result per position."""

    kind: Literal["row"]

    async def run(self, results: Sequence[TestResult]) -> list[AssertionResult]: ...


Assertion = Union[CellAssertion, RowAssertion]


def output_text(output: Output | None, sep: str = " ") -> str:
    """Text of an output; binary parts are dropped and text parts joined."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return sep.join(part for part in output if isinstance(part, str))


def fail(message: str) -> AssertionResult:
    return AssertionResult(pass_=False, message=message)


async def run_cell_assertion(assertion: CellAssertion, output: TestOutput) -> AssertionResult:
    try:
        return await assertion.run(output)
    except Exception as exc:
        logger.warning("assertion %s raised: %s", type(assertion).__name__, exc)
        return fail(f"Assertion error: {exc}")


async def run_row_assertion(assertion: RowAssertion, results: Sequence[TestResult]) -> list[AssertionResult]:
    try:
        row = await assertion.run(results)
    except Exception as exc:
        logger.warning("row assertion %s raised: %s", type(assertion).__name__, exc)
        return [fail(f"Assertion error: {exc}") for _ in results]
    if len(row) != len(results):
        return [fail(f"Row assertion returned {len(row)} results for {len(results)} outputs") for _ in results]
    return row
