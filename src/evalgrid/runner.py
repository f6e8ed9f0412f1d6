from __future__ import annotations

import asyncio
import time
import uuid
from typing import Callable

from evalgrid.assertions.base import CellAssertion, RowAssertion, run_cell_assertion, run_row_assertion
from evalgrid.assertions.manager import AssertionManager
from evalgrid.config import Settings
from evalgrid.environment import TestEnvironment
from evalgrid.errors import ConfigError
from evalgrid.log import get_logger
from evalgrid.models import (
    EvalConfig,
    Prompt,
    Run,
    RunEnv,
    TestCase,
    TestOutput,
    TestResult,
)
from evalgrid.providers.base import RunContext
from evalgrid.providers.manager import ProviderManager
from evalgrid.task_queue import ParallelTaskQueue

logger = get_logger(__name__)

UpdateCallback = Callable[[int, int, TestResult], None]


def merge_default_test(tests: list[TestCase], default: TestCase | None) -> list[TestCase]:
    """Shallow-merge default vars under each test's vars and prepend default asserts."""
    if default is None:
        return list(tests)
    merged = []
    for test in tests:
        merged.append(
            TestCase(
                description=test.description if test.description is not None else default.description,
                vars={**default.vars, **test.vars},
                assert_=[*default.assert_, *test.assert_],
            )
        )
    return merged


def build_environments(
    config: EvalConfig,
    provider_manager: ProviderManager,
    max_steps: int | None = None,
) -> tuple[list[TestEnvironment], list[RunEnv]]:
    if not config.providers:
        raise ConfigError("Config defines no providers")
    envs: list[TestEnvironment] = []
    run_envs: list[RunEnv] = []
    for provider in config.providers:
        if isinstance(provider, str):
            model = provider_manager.get_provider(provider)
            prompts: list[Prompt] = config.prompts
        else:
            model = provider_manager.get_provider(provider.id, provider.config)
            prompts = provider.prompts if provider.prompts is not None else config.prompts
        if not prompts:
            raise ConfigError(f"No prompts for provider {model.id}")
        for prompt in prompts:
            envs.append(TestEnvironment(model, prompt, max_steps=max_steps))
            run_envs.append(RunEnv(provider=provider, prompt=prompt))
    return envs, run_envs


def _apply_output(result: TestResult, output: TestOutput) -> None:
    for field in TestOutput.model_fields:
        setattr(result, field, getattr(output, field))


def _recompute_pass(result: TestResult) -> None:
    result.pass_ = result.error is None and all(r.pass_ for r in result.assertion_results)


async def run_tests(
    config: EvalConfig,
    provider_manager: ProviderManager,
    settings: Settings | None = None,
    *,
    abort: asyncio.Event | None = None,
    on_update: UpdateCallback | None = None,
) -> Run:
    """
    Run every test against every (provider, prompt) environment.

    All environments and assertions are built before any provider call, so
    configuration errors surface immediately. Results are filled in place as
    cells stream; row assertions run once the whole matrix has settled.
    """
    settings = settings or provider_manager.settings
    abort = abort or asyncio.Event()
    envs, run_envs = build_environments(config, provider_manager, settings.pipeline_max_steps)
    tests = merge_default_test(config.tests, config.default_test)

    run = Run(
        id=str(uuid.uuid4()),
        timestamp=int(time.time() * 1000),
        description=config.description,
        envs=run_envs,
        tests=tests,
    )

    mgr = AssertionManager(provider_manager, settings, abort)
    cell_assertions: list[list[CellAssertion]] = []
    row_assertions: list[list[RowAssertion]] = []
    for test in tests:
        cells: list[CellAssertion] = []
        rows: list[RowAssertion] = []
        for spec in test.assert_:
            assertion = mgr.get_assertion(spec, test.vars)
            if assertion.kind == "row":
                if not any(assertion is r for r in rows):
                    rows.append(assertion)
            else:
                cells.append(assertion)
        cell_assertions.append(cells)
        row_assertions.append(rows)

    queue = ParallelTaskQueue(settings.max_concurrency)

    def notify(test_idx: int, env_idx: int, result: TestResult) -> None:
        if on_update is not None:
            on_update(test_idx, env_idx, result)

    def make_unit(test_idx: int, env_idx: int, env: TestEnvironment, result: TestResult):
        test = tests[test_idx]

        async def unit() -> None:
            if abort.is_set():
                result.error = "Run aborted"
                result.pass_ = False
                notify(test_idx, env_idx, result)
                return

            def on_partial(text: str) -> None:
                result.output = text
                notify(test_idx, env_idx, result)

            output = await env.run(test.vars, RunContext(abort=abort), on_partial=on_partial)
            _apply_output(result, output)
            if output.error is not None:
                result.pass_ = False
                notify(test_idx, env_idx, result)
                return

            for assertion in cell_assertions[test_idx]:
                result.assertion_results.append(await run_cell_assertion(assertion, output))
            _recompute_pass(result)
            notify(test_idx, env_idx, result)

        return unit

    logger.info("running %d test(s) x %d environment(s)", len(tests), len(envs))
    for test_idx in range(len(tests)):
        row: list[TestResult] = []
        for env_idx, env in enumerate(envs):
            result = TestResult()
            row.append(result)
            queue.enqueue(make_unit(test_idx, env_idx, env, result))
        run.results.append(row)

    try:
        await queue.completed()
    except asyncio.CancelledError:
        abort.set()
        queue.cancel()
        mgr.destroy()
        raise

    try:
        for test_idx, rows in enumerate(row_assertions):
            results = run.results[test_idx]
            for assertion in rows:
                row_results = await run_row_assertion(assertion, results)
                for env_idx, (result, assertion_result) in enumerate(zip(results, row_results)):
                    result.assertion_results.append(assertion_result)
                    _recompute_pass(result)
                    notify(test_idx, env_idx, result)
    finally:
        mgr.destroy()

    logger.info("run %s complete", run.id)
    return run
