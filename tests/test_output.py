import json

from evalgrid.models import (
    AssertionResult,
    FilePart,
    Run,
    RunEnv,
    TestCase,
    TestResult,
    TokenUsage,
)
from evalgrid.output import env_label, read_run, render_run, write_run


def sample_run():
    image = FilePart(name="cat.png", mime_type="image/png", data=b"\x00\x01binary")
    return Run(
        id="run-1",
        timestamp=1700000000000,
        description="sample",
        envs=[
            RunEnv(provider="openai:gpt-4o", prompt="Hi {{ name }}"),
            RunEnv(provider={"id": "echo:x", "config": {"mimeTypes": ["*/*"]}}, prompt={"$pipeline": [{"prompt": "a"}]}),
        ],
        tests=[TestCase(vars={"name": "Ada", "image": image}, assert_=[{"type": "contains", "vars": {"needle": "Ada"}}])],
        results=[
            [
                TestResult(
                    pass_=True,
                    output="Hi Ada",
                    raw_output={"choices": []},
                    latency_ms=12.5,
                    token_usage=TokenUsage(input_tokens=3, output_tokens=2, total_tokens=5, cost_dollars=0.0001),
                    assertion_results=[AssertionResult(pass_=True)],
                ),
                TestResult(pass_=False, error="Failed to run model: boom", output=["text", image]),
            ]
        ],
    )


def test_write_and_read_round_trip(tmp_path):
    run = sample_run()

    path = write_run(run, tmp_path / "runs")

    assert path.name == "1700000000000-run-1.json"
    assert read_run(path) == run


def test_saved_run_uses_wire_names(tmp_path):
    data = json.loads(write_run(sample_run(), tmp_path).read_text())

    cell = data["results"][0][0]
    assert cell["pass"] is True
    assert "pass_" not in cell
    assert data["tests"][0]["assert"][0]["type"] == "contains"
    assert data["envs"][1]["prompt"]["$pipeline"][0]["outputAs"] == "$output"


def test_render_json(capsys):
    render_run(sample_run(), "json")
    data = json.loads(capsys.readouterr().out)
    assert data["id"] == "run-1"


def test_render_table(capsys):
    render_run(sample_run(), "table")
    out = capsys.readouterr().out
    assert "PASS" in out
    assert "FAIL" in out
    assert "1/2 passed" in out


def test_env_label():
    run = sample_run()
    assert env_label(run.envs[0]) == "openai:gpt-4o\nHi {{ name }}"
    assert env_label(run.envs[1]) == "echo:x\npipeline (1 steps)"
