from __future__ import annotations

import asyncio
import json
from contextlib import nullcontext
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from buildorch.args.tokenize import sanitize_arguments, tokenize as tokenize_arguments
from buildorch.config.loader import load_plan
from buildorch.config.stages import build_stages
from buildorch.exec.start import DEFAULT_TIMEOUT_SEC as DEFAULT_START_TIMEOUT_SEC, StartTask
from buildorch.exec.stop import DEFAULT_TIMEOUT_SEC, StopTask
from buildorch.exec.supervise import detect_stop_policy
from buildorch.pipeline.model import PipelineResult
from buildorch.pipeline.runner import run_pipeline
from buildorch.progress.render import LiveProgress
from buildorch.progress.tree import ProgressTree
from buildorch.report.render_md import render_markdown
from buildorch.report.summarize import build_summary
from buildorch.util.errors import PlanError, TaskExecutionFailure, UnterminatedQuoteError
from buildorch.util.logs import configure_logging

app = typer.Typer(help="Incremental build pipeline orchestrator")
console = Console()


def _exit_code_for_result(result: PipelineResult) -> int:
    return 0 if result.ok else 3


def _resolve_workdir_or_exit(workdir: Path) -> Path:
    try:
        resolved = workdir.resolve()
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2) from exc
    if not resolved.is_dir():
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2)
    return resolved


def _write_report(result: PipelineResult, plan_name: str | None, destination: Path) -> None:
    md = render_markdown(build_summary(result, plan_name))
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(md + "\n", encoding="utf-8")


@app.command()
def run(
    plan_path: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    workdir: Annotated[Path, typer.Option("--workdir")] = Path("."),
    force: Annotated[bool, typer.Option("--force", help="Rebuild up-to-date stages too.")] = False,
    max_parallel: Annotated[int, typer.Option("--max-parallel", min=1)] = 1,
    progress: Annotated[bool, typer.Option("--progress/--no-progress")] = True,
    report: Annotated[Path | None, typer.Option("--report")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    configure_logging(console, verbose=verbose)
    try:
        plan = load_plan(plan_path)
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc

    resolved_workdir = _resolve_workdir_or_exit(workdir)
    stages = build_stages(plan, resolved_workdir, detect_stop_policy())

    if dry_run:
        table = Table(title="Dry Run - Stages")
        table.add_column("#")
        table.add_column("stage")
        table.add_column("weight", justify="right")
        table.add_column("depends_on")
        table.add_column("stale")
        for idx, stage in enumerate(stages, start=1):
            try:
                stale = "yes" if force or stage.is_stale() else "no"
            except OSError:
                stale = "unknown"
            deps = "(previous)" if stage.depends_on is None else ", ".join(stage.depends_on) or "-"
            table.add_row(str(idx), stage.name, f"{stage.weight:g}", deps, stale)
        console.print(table)
        raise typer.Exit(0)

    tree = ProgressTree(plan.name)
    live = LiveProgress(console) if progress else nullcontext()
    try:
        with live:
            if progress:
                tree.subscribe(live)
            result = asyncio.run(
                run_pipeline(stages, force=force, progress=tree, max_parallel=max_parallel)
            )
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Pipeline execution failed:[/red] {exc}")
        raise typer.Exit(2) from exc

    if report is not None:
        try:
            _write_report(result, plan.name, report)
        except OSError as exc:
            console.print(f"[yellow]Warning:[/yellow] failed to write report: {exc}")
        else:
            console.print(f"report: {report}")
    console.print(f"status: [bold]{result.status}[/bold]")
    if not result.ok:
        reason = escape(str(result.cause))
        console.print(f"[red]Stage {result.failed_stage} failed:[/red] {reason}")
    raise typer.Exit(_exit_code_for_result(result))


@app.command()
def tokenize(
    arguments: Annotated[str, typer.Argument(help="Argument string to split.")],
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    try:
        tokens = tokenize_arguments(sanitize_arguments(arguments))
    except UnterminatedQuoteError as exc:
        console.print(f"[red]Invalid arguments:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc
    if as_json:
        typer.echo(json.dumps(tokens, ensure_ascii=False))
        return
    for token in tokens:
        typer.echo(token)


@app.command()
def start(
    command: Annotated[
        list[str], typer.Argument(help="Command to run; put it after -- when it has options.")
    ],
    pidfile: Annotated[Path, typer.Option("--pidfile")],
    timeout: Annotated[
        float, typer.Option("--timeout", min=0.0, help="Seconds to wait for the pidfile.")
    ] = DEFAULT_START_TIMEOUT_SEC,
    workdir: Annotated[Path, typer.Option("--workdir")] = Path("."),
    log_file: Annotated[
        Path | None, typer.Option("--log", help="Append process output here.")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    configure_logging(console, verbose=verbose)
    resolved_workdir = _resolve_workdir_or_exit(workdir)
    task = StartTask(
        command,
        pidfile=pidfile,
        cwd=resolved_workdir,
        log_path=log_file,
        timeout_sec=timeout,
        stop_policy=detect_stop_policy(),
    )
    try:
        pid = asyncio.run(task.run())
    except TaskExecutionFailure as exc:
        console.print(f"[red]Start failed:[/red] {escape(str(exc))}")
        raise typer.Exit(3) from exc
    console.print(f"started: [bold]{pid}[/bold]")


@app.command()
def stop(
    pidfile: Annotated[Path, typer.Option("--pidfile")],
    timeout: Annotated[float, typer.Option("--timeout", min=0.0)] = DEFAULT_TIMEOUT_SEC,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    configure_logging(console, verbose=verbose)
    task = StopTask(pidfile, timeout_sec=timeout, stop_policy=detect_stop_policy())
    try:
        pid = asyncio.run(task.run())
    except TaskExecutionFailure as exc:
        console.print(f"[red]Stop failed:[/red] {escape(str(exc))}")
        raise typer.Exit(3) from exc
    if pid is None:
        console.print("not running")
    else:
        console.print(f"stopped: [bold]{pid}[/bold]")


if __name__ == "__main__":
    app()
