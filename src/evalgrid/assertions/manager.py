from __future__ import annotations

import asyncio
import re
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from evalgrid.assertions.base import Assertion
from evalgrid.assertions.basic import Contains, Equals, Regex
from evalgrid.assertions.rubric import Consistency, LlmRubric, RowRubricArgs, RubricArgs, SelectBest
from evalgrid.config import Settings
from evalgrid.errors import ConfigError
from evalgrid.log import get_logger
from evalgrid.models import AssertionSpec, ProviderSpec
from evalgrid.providers.manager import ProviderManager, deep_equals

logger = get_logger(__name__)

Factory = Callable[[dict[str, Any], dict[str, Any], "AssertionManager"], Assertion]


def _simple(cls) -> Factory:
    def factory(args: dict[str, Any], test_vars: dict[str, Any], mgr: AssertionManager) -> Assertion:
        return cls(cls.args_model.model_validate(args), test_vars)

    return factory


def _rubric(cls, args_model: type[BaseModel]) -> Factory:
    def factory(args: dict[str, Any], test_vars: dict[str, Any], mgr: AssertionManager) -> Assertion:
        parsed = args_model.model_validate(args)
        return cls(parsed, test_vars, mgr.grader(parsed.provider), mgr.abort)

    return factory


ASSERTIONS: dict[str, Factory] = {
    "equals": _simple(Equals),
    "contains": _simple(Contains),
    "regex": _simple(Regex),
    "llm-rubric": _rubric(LlmRubric, RubricArgs),
    "consistency": _rubric(Consistency, RowRubricArgs),
    "select-best": _rubric(SelectBest, RowRubricArgs),
}


class AssertionManager:
    """
    Builds assertions from `{type, vars}` specs.

    Row assertions with the same type, arguments and test variables are
    shared, so a row assertion listed on every cell of a test runs once.
    """

    def __init__(
        self,
        provider_manager: ProviderManager,
        settings: Settings | None = None,
        abort: asyncio.Event | None = None,
    ) -> None:
        self.provider_manager = provider_manager
        self.settings = settings or provider_manager.settings
        self.abort = abort or asyncio.Event()
        self._assertions: list[Assertion] = []
        self._rows: list[tuple[str, dict[str, Any], dict[str, Any], Assertion]] = []
        self._destroyed = False

    def grader(self, provider: str | ProviderSpec | None):
        if provider is None:
            return self.provider_manager.get_provider(self.settings.rubric_provider)
        if isinstance(provider, str):
            return self.provider_manager.get_provider(provider)
        return self.provider_manager.get_provider(provider.id, provider.config)

    def get_assertion(self, spec: AssertionSpec, test_vars: dict[str, Any]) -> Assertion:
        if self._destroyed:
            raise RuntimeError("AssertionManager has been destroyed")
        factory = ASSERTIONS.get(spec.type)
        if factory is None:
            known = ", ".join(sorted(ASSERTIONS))
            raise ConfigError(f"Unknown assertion type {spec.type!r} (known: {known})")

        for type_, args, vars_, cached in self._rows:
            if type_ == spec.type and deep_equals(args, spec.vars) and deep_equals(vars_, test_vars):
                return cached

        try:
            assertion = factory(spec.vars, test_vars, self)
        except (ValidationError, ValueError, re.error) as exc:
            raise ConfigError(f"Invalid {spec.type} arguments: {exc}") from exc

        self._assertions.append(assertion)
        if assertion.kind == "row":
            self._rows.append((spec.type, spec.vars, test_vars, assertion))
        return assertion

    def destroy(self) -> None:
        if self._destroyed:
            raise RuntimeError("AssertionManager.destroy() called twice")
        self._destroyed = True
        for assertion in self._assertions:
            destroy = getattr(assertion, "destroy", None)
            if destroy is not None:
                destroy()
        logger.debug("destroyed %d assertions", len(self._assertions))
        self._assertions.clear()
        self._rows.clear()
