from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from evalgrid.assertions.base import fail, output_text
from evalgrid.models import AssertionResult, TestOutput
from evalgrid.template import render_text


def _render(value: str, test_vars: dict[str, Any]) -> str:
    if "{{" in value or "{%" in value:
        return render_text(value, test_vars)
    return value


class _EqualsArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: str
    ignore_case: bool = Field(default=False, alias="ignoreCase")
    trim: bool = True


class Equals:
    kind = "cell"
    args_model = _EqualsArgs

    def __init__(self, args: _EqualsArgs, test_vars: dict[str, Any]) -> None:
        self.expected = _render(args.value, test_vars)
        self.ignore_case = args.ignore_case
        self.trim = args.trim

    async def run(self, output: TestOutput) -> AssertionResult:
        actual = output_text(output.output, sep="")
        expected = self.expected
        if self.trim:
            actual, expected = actual.strip(), expected.strip()
        if self.ignore_case:
            actual, expected = actual.lower(), expected.lower()
        if actual == expected:
            return AssertionResult(pass_=True)
        return fail(f"Expected {expected!r}, got {actual!r}")


class _ContainsArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    needle: str
    ignore_case: bool = Field(default=False, alias="ignoreCase")


class Contains:
    kind = "cell"
    args_model = _ContainsArgs

    def __init__(self, args: _ContainsArgs, test_vars: dict[str, Any]) -> None:
        self.needle = _render(args.needle, test_vars)
        self.ignore_case = args.ignore_case

    async def run(self, output: TestOutput) -> AssertionResult:
        haystack = output_text(output.output, sep="")
        needle = self.needle
        if self.ignore_case:
            haystack, needle = haystack.lower(), needle.lower()
        if needle in haystack:
            return AssertionResult(pass_=True)
        return fail(f"Output does not contain {self.needle!r}")


class _RegexArgs(BaseModel):
    pattern: str
    flags: str = ""


_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


class Regex:
    kind = "cell"
    args_model = _RegexArgs

    def __init__(self, args: _RegexArgs, test_vars: dict[str, Any]) -> None:
        flags = 0
        for flag in args.flags:
            if flag not in _FLAGS:
                raise ValueError(f"Unknown regex flag {flag!r}")
            flags |= _FLAGS[flag]
        self.regex = re.compile(_render(args.pattern, test_vars), flags)

    async def run(self, output: TestOutput) -> AssertionResult:
        if self.regex.search(output_text(output.output, sep="")):
            return AssertionResult(pass_=True)
        return fail(f"Output does not match /{self.regex.pattern}/")
