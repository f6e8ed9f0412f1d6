import asyncio

import pytest

from evalgrid.config import Settings
from evalgrid.errors import ConfigError, ProviderError
from evalgrid.models import AssertionSpec, EvalConfig, TestCase
from evalgrid.providers.manager import ProviderManager
from evalgrid.runner import merge_default_test, run_tests

from fakes import fake_registry

JUDGE_PASS = '{"pass": true, "message": "consistent"}'


def broken(conversation):
    raise ProviderError("Failed to run model: boom")


def setup(replies=None, **settings):
    registry, made = fake_registry(replies)
    settings = Settings(_env_file=None, rubric_provider="fake:grader", **settings)
    return ProviderManager(settings, registry=registry), made


def config(**kwargs):
    return EvalConfig.model_validate(kwargs)


@pytest.mark.asyncio
async def test_results_matrix_shape_and_env_order():
    manager, _ = setup()
    cfg = config(
        providers=["fake:a", "fake:b"],
        prompts=["one {{ x }}", "two {{ x }}"],
        tests=[{"vars": {"x": 1}}, {"vars": {"x": 2}}, {"vars": {"x": 3}}],
    )

    run = await run_tests(cfg, manager)

    assert [(env.provider, env.prompt) for env in run.envs] == [
        ("fake:a", "one {{ x }}"),
        ("fake:a", "two {{ x }}"),
        ("fake:b", "one {{ x }}"),
        ("fake:b", "two {{ x }}"),
    ]
    assert len(run.results) == 3
    assert all(len(row) == 4 for row in run.results)
    assert run.results[2][1].output == "two 3"
    assert run.version == 1
    assert run.timestamp > 0


@pytest.mark.asyncio
async def test_pass_requires_every_cell_assertion():
    manager, _ = setup()
    cfg = config(
        providers=["fake:a"],
        prompts=["Hello {{ name }}"],
        tests=[
            {"vars": {"name": "Ada"}, "assert": [{"type": "contains", "vars": {"needle": "Ada"}}]},
            {
                "vars": {"name": "Bob"},
                "assert": [
                    {"type": "contains", "vars": {"needle": "Bob"}},
                    {"type": "equals", "vars": {"value": "Hi Bob"}},
                ],
            },
            {"vars": {"name": "Cy"}},
        ],
    )

    run = await run_tests(cfg, manager)

    first, second, third = (row[0] for row in run.results)
    assert first.pass_ is True
    assert second.pass_ is False
    assert [r.pass_ for r in second.assertion_results] == [True, False]
    assert third.pass_ is True
    assert third.assertion_results == []


@pytest.mark.asyncio
async def test_provider_error_fails_only_its_cell():
    manager, _ = setup({"bad": broken})
    cfg = config(
        providers=["fake:good", "fake:bad"],
        prompts=["hi"],
        tests=[{"assert": [{"type": "contains", "vars": {"needle": "hi"}}]}],
    )

    run = await run_tests(cfg, manager)

    good, bad = run.results[0]
    assert good.pass_ is True
    assert good.token_usage.total_tokens == 3
    assert bad.pass_ is False
    assert bad.error == "Failed to run model: boom"
    assert bad.assertion_results == []


@pytest.mark.asyncio
async def test_default_test_is_merged_into_each_test():
    manager, _ = setup()
    cfg = config(
        providers=["fake:a"],
        prompts=["{{ greeting }} {{ name }}"],
        defaultTest={"vars": {"greeting": "Hi", "name": "nobody"}, "assert": [{"type": "contains", "vars": {"needle": "Hi"}}]},
        tests=[
            {"vars": {"name": "Ada"}, "assert": [{"type": "contains", "vars": {"needle": "Ada"}}]},
            {"vars": {"greeting": "Yo"}},
        ],
    )

    run = await run_tests(cfg, manager)

    assert run.tests[0].vars == {"greeting": "Hi", "name": "Ada"}
    assert [a.vars["needle"] for a in run.tests[0].assert_] == ["Hi", "Ada"]
    assert run.results[0][0].output == "Hi Ada"
    assert run.results[0][0].pass_ is True
    assert run.results[1][0].output == "Yo nobody"
    assert run.results[1][0].pass_ is False


def test_merge_default_test_without_default():
    tests = [TestCase(vars={"a": 1})]
    assert merge_default_test(tests, None) == tests


def test_merge_keeps_test_description():
    default = TestCase(description="default", assert_=[AssertionSpec(type="equals", vars={"value": "x"})])
    merged = merge_default_test([TestCase(description="mine"), TestCase()], default)
    assert [t.description for t in merged] == ["mine", "default"]
    assert all(len(t.assert_) == 1 for t in merged)


@pytest.mark.asyncio
async def test_provider_prompts_override_top_level_prompts():
    manager, _ = setup()
    cfg = config(
        providers=["fake:a", {"id": "fake:b", "prompts": ["custom {{ x }}"]}],
        prompts=["shared {{ x }}"],
        tests=[{"vars": {"x": "!"}}],
    )

    run = await run_tests(cfg, manager)

    assert [cell.output for cell in run.results[0]] == ["shared !", "custom !"]


@pytest.mark.asyncio
async def test_row_assertion_runs_once_per_test():
    manager, made = setup({"grader": JUDGE_PASS})
    consistency = {"type": "consistency", "vars": {"criteria": "All outputs agree"}}
    cfg = config(
        providers=["fake:a", "fake:b", "fake:c"],
        prompts=["same"],
        tests=[{"vars": {"n": 1}, "assert": [consistency, consistency]}, {"vars": {"n": 2}, "assert": [consistency]}],
    )

    run = await run_tests(cfg, manager)

    assert len(made["grader"].calls) == 2
    for row in run.results:
        assert all(cell.pass_ for cell in row)
        assert all(len(cell.assertion_results) == 1 for cell in row)
        assert all(cell.assertion_results[0].message == "consistent" for cell in row)


@pytest.mark.asyncio
async def test_failed_row_assertion_fails_cells():
    manager, _ = setup({"grader": '{"pass": false, "message": "they disagree"}'})
    cfg = config(
        providers=["fake:a", "fake:b"],
        prompts=["{{ x }}"],
        tests=[
            {
                "vars": {"x": "y"},
                "assert": [
                    {"type": "contains", "vars": {"needle": "y"}},
                    {"type": "consistency", "vars": {"criteria": "agree"}},
                ],
            }
        ],
    )

    run = await run_tests(cfg, manager)

    for cell in run.results[0]:
        assert cell.pass_ is False
        assert [r.pass_ for r in cell.assertion_results] == [True, False]


@pytest.mark.asyncio
async def test_select_best_marks_one_winner():
    manager, _ = setup({"grader": '{"best": 0, "message": "first"}'})
    cfg = config(
        providers=["fake:a", "fake:b"],
        prompts=["p"],
        tests=[{"assert": [{"type": "select-best", "vars": {"criteria": "best"}}]}],
    )

    run = await run_tests(cfg, manager)

    assert [cell.pass_ for cell in run.results[0]] == [True, False]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"providers": ["fake:a"], "prompts": ["p"], "tests": [{"assert": [{"type": "nonsense"}]}]},
        {"providers": ["nokind:a"], "prompts": ["p"], "tests": [{}]},
        {"providers": [], "prompts": ["p"], "tests": [{}]},
        {"providers": ["fake:a"], "prompts": [], "tests": [{}]},
        {"providers": ["fake:a"], "prompts": ["{{ broken"], "tests": [{}]},
    ],
)
async def test_config_errors_surface_before_any_call(kwargs):
    manager, made = setup()

    with pytest.raises(ConfigError):
        await run_tests(config(**kwargs), manager)

    assert all(provider.calls == [] for provider in made.values())


@pytest.mark.asyncio
async def test_aborted_run_marks_remaining_cells():
    manager, made = setup()
    abort = asyncio.Event()
    abort.set()
    cfg = config(providers=["fake:a"], prompts=["p"], tests=[{}, {}])

    run = await run_tests(cfg, manager, abort=abort)

    assert made["a"].calls == []
    assert all(row[0].error == "Run aborted" and row[0].pass_ is False for row in run.results)


@pytest.mark.asyncio
async def test_concurrency_setting_bounds_cells_in_flight():
    running = 0
    peak = 0

    manager, made = setup(max_concurrency=2)
    cfg = config(providers=["fake:a"], prompts=["p"], tests=[{} for _ in range(6)])

    provider = manager.get_provider("fake:a")
    original = provider.run

    async def run_wrapper(conversation, context):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        try:
            async for event in original(conversation, context):
                await asyncio.sleep(0.001)
                yield event
        finally:
            running -= 1

    provider.run = run_wrapper
    await run_tests(cfg, manager)

    assert peak == 2
    assert len(made["a"].calls) == 6


@pytest.mark.asyncio
async def test_updates_are_reported_per_cell():
    manager, _ = setup()
    updates = []
    cfg = config(providers=["fake:a", "fake:b"], prompts=["hello there"], tests=[{}])

    run = await run_tests(cfg, manager, on_update=lambda t, e, r: updates.append((t, e, r.output)))

    assert (0, 0, "hello there") in updates
    assert (0, 1, "hello there") in updates
    assert (0, 0, "hello") in updates
    assert run.results[0][0].pass_ is True
