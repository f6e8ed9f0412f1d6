from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from evalgrid.config import Settings
from evalgrid.errors import EvalGridError
from evalgrid.loader import load_config
from evalgrid.log import configure_logging
from evalgrid.models import EvalConfig, Run, TestResult
from evalgrid.output import read_run, render_run, write_run
from evalgrid.providers.manager import PROVIDERS, ProviderManager
from evalgrid.runner import run_tests

app = typer.Typer(no_args_is_help=True)


@app.command()
def run(
    config_file: Path = typer.Argument(..., help="Eval config YAML"),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", help="Cells run at once"),
    output_format: str = typer.Option("table", "--output", "-o", help="table|json"),
    save: bool = typer.Option(True, "--save/--no-save", help="Write the run to the runs directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show full outputs"),
) -> None:
    """Run every test in CONFIG_FILE against every provider and prompt."""
    console = Console(stderr=True)
    settings = Settings()
    configure_logging(settings.log_level)
    if concurrency is not None:
        if concurrency < 1:
            raise typer.BadParameter("--concurrency must be >= 1")
        settings = settings.model_copy(update={"max_concurrency": concurrency})
    if output_format.lower() not in {"table", "json"}:
        raise typer.BadParameter("Output must be one of: table, json.")

    try:
        config = load_config(config_file)
    except EvalGridError as exc:
        raise typer.BadParameter(str(exc)) from exc

    try:
        result = asyncio.run(_run(config, settings, console))
    except EvalGridError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    render_run(result, output_format, verbose)
    if save:
        path = write_run(result, Path(settings.runs_dir))
        console.print(f"[dim]Saved run to {path}[/dim]")

    failed = sum(1 for row in result.results for cell in row if not cell.pass_)
    if failed:
        raise typer.Exit(code=1)


async def _run(config: EvalConfig, settings: Settings, console: Console) -> Run:
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.set)
    except NotImplementedError:
        # Windows event loops have no signal handlers
        pass

    done: set[tuple[int, int]] = set()

    async with ProviderManager(settings) as manager:
        with Progress(
            TextColumn("[dim]Running cells[/dim]"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("cells", total=None)

            def on_update(test_idx: int, env_idx: int, result: TestResult) -> None:
                if result.latency_ms is not None or result.error is not None:
                    done.add((test_idx, env_idx))
                    progress.update(task, completed=len(done))

            run_result = await run_tests(config, manager, settings, abort=abort, on_update=on_update)
    if abort.is_set():
        console.print("[yellow]Run aborted, partial results below[/yellow]")
    return run_result


@app.command()
def show(
    run_file: Path = typer.Argument(..., help="Saved run JSON"),
    output_format: str = typer.Option("table", "--output", "-o", help="table|json"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Render a previously saved run."""
    if not run_file.exists():
        raise typer.BadParameter(f"Run file not found: {run_file}")
    render_run(read_run(run_file), output_format, verbose)


@app.command()
def providers() -> None:
    """List the provider kinds that can be used in a config."""
    console = Console()
    table = Table(title="Provider kinds")
    table.add_column("Kind")
    table.add_column("Example id")
    for kind in sorted(PROVIDERS):
        table.add_row(kind, f"{kind}:<model>")
    console.print(table)
