import pytest

from evalgrid.assertions.basic import Contains
from evalgrid.assertions.manager import ASSERTIONS, AssertionManager
from evalgrid.assertions.rubric import Consistency, LlmRubric
from evalgrid.config import Settings
from evalgrid.errors import ConfigError
from evalgrid.models import AssertionSpec
from evalgrid.providers.manager import ProviderManager

from fakes import fake_registry


def manager():
    registry, made = fake_registry()
    settings = Settings(_env_file=None, rubric_provider="fake:grader")
    return AssertionManager(ProviderManager(settings, registry=registry)), made


def spec(type_, **vars_):
    return AssertionSpec(type=type_, vars=vars_)


def test_builds_cell_assertions():
    mgr, _ = manager()
    assertion = mgr.get_assertion(spec("contains", needle="x"), {})
    assert isinstance(assertion, Contains)
    assert assertion.kind == "cell"


def test_rubric_uses_default_or_explicit_grader():
    mgr, made = manager()

    default = mgr.get_assertion(spec("llm-rubric", rubric="r"), {})
    explicit = mgr.get_assertion(spec("llm-rubric", rubric="r", provider="fake:judge"), {})
    configured = mgr.get_assertion(
        spec("llm-rubric", rubric="r", provider={"id": "fake:strict", "config": {"reply": "{}"}}), {}
    )

    assert isinstance(default, LlmRubric)
    assert set(made) == {"grader", "judge", "strict"}
    assert explicit is not default and configured is not explicit


def test_row_assertions_are_shared_for_equal_arguments():
    mgr, _ = manager()
    vars_ = {"topic": "owls"}

    a = mgr.get_assertion(spec("consistency", criteria="agree"), vars_)
    b = mgr.get_assertion(spec("consistency", criteria="agree"), {"topic": "owls"})
    c = mgr.get_assertion(spec("consistency", criteria="agree"), {"topic": "bats"})
    d = mgr.get_assertion(spec("select-best", criteria="agree"), vars_)

    assert isinstance(a, Consistency)
    assert a is b
    assert a is not c
    assert d is not a


def test_cell_assertions_are_not_shared():
    mgr, _ = manager()
    assert mgr.get_assertion(spec("equals", value="a"), {}) is not mgr.get_assertion(spec("equals", value="a"), {})


@pytest.mark.parametrize(
    "bad",
    [
        spec("nonsense"),
        spec("equals"),
        spec("regex", pattern="("),
        spec("regex", pattern="a", flags="z"),
        spec("llm-rubric", rubric="r", provider="nokind"),
    ],
)
def test_invalid_specs_are_config_errors(bad):
    mgr, _ = manager()
    with pytest.raises(ConfigError):
        mgr.get_assertion(bad, {})


def test_destroy_twice_raises():
    mgr, _ = manager()
    rubric = mgr.get_assertion(spec("llm-rubric", rubric="r"), {})
    mgr.destroy()

    assert rubric._env is None
    with pytest.raises(RuntimeError):
        mgr.get_assertion(spec("equals", value="a"), {})
    with pytest.raises(RuntimeError):
        mgr.destroy()


def test_registered_types():
    assert set(ASSERTIONS) == {"equals", "contains", "regex", "llm-rubric", "consistency", "select-best"}
