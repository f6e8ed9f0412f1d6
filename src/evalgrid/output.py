from __future__ import annotations

import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.text import Text

from evalgrid.assertions.base import output_text
from evalgrid.models import Prompt, Provider, Run, RunEnv, TestResult


def write_run(run: Run, runs_dir: Path) -> Path:
    runs_dir.mkdir(parents=True, exist_ok=True)
    path = runs_dir / f"{run.timestamp}-{run.id}.json"
    path.write_text(run.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    return path


def read_run(path: Path) -> Run:
    return Run.model_validate_json(path.read_text(encoding="utf-8"))


def render_run(run: Run, output_format: str = "table", verbose: bool = False) -> None:
    if output_format.lower() == "json":
        sys.stdout.write(run.model_dump_json(by_alias=True, indent=2))
        sys.stdout.write("\n")
    else:
        _render_table(run, verbose)


def _render_table(run: Run, verbose: bool) -> None:
    console = Console()
    table = Table(title=run.description or f"Run {run.id}", show_lines=True)
    table.add_column("Test")
    for env in run.envs:
        table.add_column(env_label(env))

    for test, row in zip(run.tests, run.results):
        label = test.description or ", ".join(f"{k}={_short(v)}" for k, v in test.vars.items())
        table.add_row(label, *(_format_cell(result, verbose) for result in row))
    console.print(table)

    cells = [result for row in run.results for result in row]
    passed = sum(1 for r in cells if r.pass_)
    style = "green" if passed == len(cells) else "red"
    console.print(f"[{style}]{passed}/{len(cells)} passed[/{style}]")


def env_label(env: RunEnv) -> str:
    return f"{_provider_id(env.provider)}\n{_prompt_label(env.prompt)}"


def _provider_id(provider: Provider) -> str:
    return provider if isinstance(provider, str) else provider.id


def _prompt_label(prompt: Prompt) -> str:
    if isinstance(prompt, str):
        return _short(prompt, 40)
    if isinstance(prompt, list):
        return _short(" / ".join(next(iter(turn.values()), "") for turn in prompt), 40)
    return f"pipeline ({len(prompt.pipeline)} steps)"


def _format_cell(result: TestResult, verbose: bool) -> Text:
    text = Text()
    text.append("PASS" if result.pass_ else "FAIL", style="green" if result.pass_ else "red")
    if result.latency_ms is not None:
        text.append(f"  {result.latency_ms:.0f}ms", style="dim")
    if result.token_usage is not None and result.token_usage.cost_dollars is not None:
        text.append(f"  ${result.token_usage.cost_dollars:.5f}", style="dim")
    if result.error:
        text.append(f"\n{result.error}", style="red")
    else:
        text.append("\n" + (output_text(result.output) if verbose else _short(output_text(result.output), 120)))
    for assertion in result.assertion_results:
        if not assertion.pass_ and assertion.message:
            text.append(f"\n- {assertion.message}", style="yellow")
    return text


def _short(value: object, limit: int = 30) -> str:
    text = str(value).replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 1] + "…"
