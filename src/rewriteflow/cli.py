"""
rewriteflow Command Line Interface.

This module provides the CLI entry point for driving rewrite runs on the
remote rewrite engine.
"""

import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from rewriteflow.config import ConfigurationError, LogLevel, RewriteflowConfig, load_config
from rewriteflow.engine import EngineError
from rewriteflow.models import PipelineMode, ScopePlan, StrategySelection
from rewriteflow.orchestrator import (
    OrchestratorError,
    PipelineState,
    RewriteOrchestrator,
    RunContext,
    is_stuck,
    progress,
)
from rewriteflow.utils.logging import configure_logging
from rewriteflow.version import __version__

console = Console()

STRATEGY_CHOICES = click.Choice([s.value for s in StrategySelection])


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.run(coro)


def _load_notes(path: str | None) -> tuple[list[Any], list[Any]]:
    """Read notes and protected items from a YAML or JSON file.

    The file holds either a list of notes or a mapping with ``notes`` and
    ``protected_items`` keys.
    """
    if not path:
        return [], []
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, list):
        return data, []
    if isinstance(data, dict):
        return list(data.get("notes", [])), list(data.get("protected_items", []))
    raise click.BadParameter(f"Notes file must contain a list or a mapping: {path}")


def _format_eta(eta_ms: float | None) -> str:
    if not eta_ms:
        return "-"
    seconds = int(eta_ms / 1000)
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds:02d}s" if minutes else f"{seconds}s"


def _print_error(error: Exception) -> None:
    category = getattr(error, "category", None)
    title = f"Error ({category.value})" if category is not None else "Error"
    console.print(Panel(f"[red]{error}[/red]", title=title, border_style="red"))


@asynccontextmanager
async def _session(
    click_ctx: click.Context,
    source_id: str,
    version_id: str,
    notes_path: str | None = None,
    protect: tuple[str, ...] = (),
) -> AsyncIterator[tuple[RewriteOrchestrator, RunContext]]:
    """Build an orchestrator and run context for one command."""
    config: RewriteflowConfig = click_ctx.obj["config"]
    notes, protected_items = _load_notes(notes_path)

    orchestrator = RewriteOrchestrator.from_config(config)
    orchestrator.on_notify(_print_error)
    run_ctx = orchestrator.new_context(
        source_id,
        version_id,
        notes=notes,
        protected_items=[*protected_items, *protect],
    )
    try:
        yield orchestrator, run_ctx
    finally:
        await orchestrator.engine.close()


def _invoke(click_ctx: click.Context, coro) -> Any:
    """Run a command coroutine, mapping pipeline errors to exit code 1."""
    try:
        return run_async(coro)
    except (EngineError, OrchestratorError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if click_ctx.obj.get("verbose"):
            console.print_exception()
        sys.exit(1)


async def _with_progress(run_ctx: RunContext, coro) -> PipelineState:
    """Await a pipeline coroutine while rendering a progress bar."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("[dim]ETA {task.fields[eta]}[/dim]"),
        console=console,
    ) as bar:
        task = bar.add_task("Starting...", total=100, eta="-")

        def on_state(state: PipelineState) -> None:
            view = progress(state)
            bar.update(
                task,
                completed=state.smoothed_percent,
                description=view.label or view.phase,
                eta=_format_eta(view.eta_ms),
            )

        unsubscribe = run_ctx.subscribe(on_state)
        try:
            await coro
        finally:
            unsubscribe()
    return run_ctx.state


def _display_state(state: PipelineState, stuck_minutes: int) -> None:
    view = progress(state)
    agg = state.aggregate

    table = Table(title="Run Status", show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Mode", state.mode.value)
    table.add_row("Run ID", state.run_id or "-")
    table.add_row("Units", f"{agg.done}/{agg.total} done")
    table.add_row("Queued / Running", f"{agg.queued} / {agg.running}")
    table.add_row("Failed", f"[red]{agg.failed}[/red]" if agg.failed else "0")
    table.add_row("Progress", f"{view.percent}%")
    table.add_row("ETA", _format_eta(view.eta_ms))
    if state.scope_plan is not None:
        table.add_row("Scope targets", ", ".join(map(str, state.scope_plan.target_unit_numbers)))
        table.add_row("Expansions", str(state.expansion_count))
    if state.new_artifact_id:
        table.add_row("Artifact", f"{state.artifact_label or ''} ({state.new_artifact_id})".strip())
    if state.error:
        table.add_row("Error", f"[red]{state.error}[/red]")
    console.print(table)

    if is_stuck(state, stuck_minutes=stuck_minutes):
        console.print(
            f"[yellow]Some jobs have been running for more than {stuck_minutes} minutes.[/yellow] "
            "Use [bold]requeue-stuck[/bold] to requeue them."
        )


def _display_plan(plan: ScopePlan) -> None:
    table = Table(title="Scope Plan", show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Targets", ", ".join(map(str, plan.target_unit_numbers)) or "-")
    table.add_row("Context", ", ".join(map(str, plan.context_unit_numbers)) or "-")
    table.add_row("At risk", ", ".join(map(str, plan.at_risk_unit_numbers)) or "-")
    table.add_row("Reason", plan.reason or "-")
    table.add_row("Contracts", str(plan.contracts.count))
    if plan.fallback:
        table.add_row("Confidence", "[yellow]fallback (full rewrite)[/yellow]")
    console.print(table)


def _display_activity(run_ctx: RunContext, limit: int = 10) -> None:
    styles = {"info": "dim", "success": "green", "warn": "yellow", "error": "red"}
    entries = run_ctx.activity.entries[:limit]
    if not entries:
        return
    console.print()
    console.print("[bold]Recent activity[/bold]")
    for entry in reversed(entries):
        style = styles[entry.level.value]
        console.print(f"  [{style}]{entry.timestamp:%H:%M:%S} {entry.message}[/{style}]")


source_arguments = [
    click.argument("source_id"),
    click.argument("version_id"),
]


def with_source(func):
    """Add the SOURCE_ID and VERSION_ID arguments to a command."""
    for decorator in reversed(source_arguments):
        func = decorator(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="rewriteflow")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True),
    help="Path to configuration file",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool, json_logs: bool) -> None:
    """rewriteflow: resumable per-scene rewrite orchestration.

    Drives the rewrite engine's job queue: probe, plan, enqueue, process,
    verify and assemble. Every command takes the SOURCE_ID and VERSION_ID
    of the document version being rewritten.
    """
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_path)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    if verbose:
        cfg.logging.level = LogLevel.DEBUG
    if json_logs:
        cfg.logging.json_format = True
    configure_logging(cfg.logging)

    ctx.obj["config"] = cfg
    ctx.obj["verbose"] = verbose


@main.command()
@with_source
@click.option("--notes", "-n", "notes_path", type=click.Path(exists=True), help="YAML/JSON notes file")
@click.option("--protect", "-p", multiple=True, help="Item the rewrite must preserve")
@click.option("--strategy", "-s", type=STRATEGY_CHOICES, default="auto", help="Rewrite strategy")
@click.option("--no-plan", is_flag=True, help="Skip scope planning and rewrite every unit")
@click.pass_context
def run(
    ctx: click.Context,
    source_id: str,
    version_id: str,
    notes_path: str | None,
    protect: tuple[str, ...],
    strategy: str,
    no_plan: bool,
) -> None:
    """Run the whole pipeline: probe, plan, enqueue, process, assemble."""
    console.print(
        Panel(
            f"[bold blue]rewriteflow v{__version__}[/bold blue]\n"
            f"Source {source_id} / version {version_id}",
            title="rewriteflow",
        )
    )

    async def _run() -> None:
        async with _session(ctx, source_id, version_id, notes_path, protect) as (orch, run_ctx):
            orch.select_strategy(run_ctx, strategy)
            state = await _with_progress(run_ctx, orch.run(run_ctx, plan_scope=not no_plan))
            _display_state(state, orch.config.pipeline.stuck_minutes)
            _display_activity(run_ctx)
            if state.mode == PipelineMode.ERROR:
                sys.exit(1)

    _invoke(ctx, _run())


@main.command()
@with_source
@click.pass_context
def probe(ctx: click.Context, source_id: str, version_id: str) -> None:
    """Detect the unit structure of a source version."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            result = await orch.probe(run_ctx)
            if result is None:
                _display_activity(run_ctx)
                sys.exit(1)
            table = Table(title="Probe", show_header=False, box=None)
            table.add_column("Field", style="cyan")
            table.add_column("Value", style="green")
            table.add_row("Has units", str(result.has_units))
            table.add_row("Units", str(result.unit_count))
            table.add_row("Strategy", result.strategy.value)
            table.add_row("Size", f"{result.content_size:,} chars")
            console.print(table)

    _invoke(ctx, _run())


@main.command()
@with_source
@click.option("--notes", "-n", "notes_path", type=click.Path(exists=True), required=True)
@click.pass_context
def plan(ctx: click.Context, source_id: str, version_id: str, notes_path: str) -> None:
    """Show which units the notes would rewrite."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id, notes_path) as (orch, run_ctx):
            _display_plan(await orch.plan_scope(run_ctx))

    _invoke(ctx, _run())


@main.command()
@with_source
@click.pass_context
def status(ctx: click.Context, source_id: str, version_id: str) -> None:
    """Show the status of the active run."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            state = await orch.load_status(run_ctx)
            if state is None:
                console.print("[yellow]No active run found.[/yellow]")
                return
            _display_state(state, orch.config.pipeline.stuck_minutes)

    _invoke(ctx, _run())


@main.command()
@with_source
@click.pass_context
def resume(ctx: click.Context, source_id: str, version_id: str) -> None:
    """Continue processing the active run."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            state = await orch.load_status(run_ctx)
            if state is None:
                console.print("[yellow]No active run to resume.[/yellow]")
                sys.exit(1)
            if state.aggregate.is_drained and state.mode != PipelineMode.COMPLETE:
                console.print("[yellow]Nothing queued.[/yellow] Use [bold]retry[/bold] for failed units.")
            else:
                state = await _with_progress(run_ctx, orch.process(run_ctx))
            _display_state(state, orch.config.pipeline.stuck_minutes)
            _display_activity(run_ctx)

    _invoke(ctx, _run())


@main.command()
@with_source
@click.pass_context
def retry(ctx: click.Context, source_id: str, version_id: str) -> None:
    """Requeue failed units."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            count = await orch.retry_failed(run_ctx)
            if count is None:
                _display_activity(run_ctx)
                sys.exit(1)
            console.print(f"[green]Re-queued {count} failed unit(s).[/green]")

    _invoke(ctx, _run())


@main.command("requeue-stuck")
@with_source
@click.option("--minutes", "-m", type=int, default=None, help="Stuck threshold in minutes")
@click.pass_context
def requeue_stuck(ctx: click.Context, source_id: str, version_id: str, minutes: int | None) -> None:
    """Requeue units that have been running too long."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            count = await orch.requeue_stuck(run_ctx, stuck_minutes=minutes)
            if count is None:
                _display_activity(run_ctx)
                sys.exit(1)
            console.print(f"[green]Requeued {count} stuck unit(s).[/green]")

    _invoke(ctx, _run())


@main.command()
@with_source
@click.option("--notes", "-n", "notes_path", type=click.Path(exists=True), help="Plan these notes first")
@click.pass_context
def verify(ctx: click.Context, source_id: str, version_id: str, notes_path: str | None) -> None:
    """Check continuity of the rewritten units."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id, notes_path) as (orch, run_ctx):
            if run_ctx.notes:
                await orch.plan_scope(run_ctx)
            result = await orch.verify(run_ctx)
            if result is None:
                _display_activity(run_ctx)
                sys.exit(1)
            if result.passed:
                console.print("[green]Verification passed.[/green]")
                return
            table = Table(title="Verification Failures", show_header=True)
            table.add_column("Type", style="cyan")
            table.add_column("Units", style="yellow")
            table.add_column("Description")
            for failure in result.failures:
                table.add_row(failure.type, ", ".join(map(str, failure.unit_numbers)), failure.description)
            console.print(table)
            sys.exit(1)

    _invoke(ctx, _run())


@main.command()
@with_source
@click.option("--strategy", "-s", type=STRATEGY_CHOICES, default="auto", help="Strategy recorded in provenance")
@click.pass_context
def assemble(ctx: click.Context, source_id: str, version_id: str, strategy: str) -> None:
    """Assemble the final artifact from completed units."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            orch.select_strategy(run_ctx, strategy)
            result = await orch.assemble(run_ctx)
            console.print(
                Panel(
                    f"[bold green]{result.label or result.new_artifact_id}[/bold green]\n"
                    f"{result.char_count:,} chars, {result.unit_count} units"
                    + (" (selective)" if result.selective else ""),
                    title="Artifact created",
                )
            )

    _invoke(ctx, _run())


@main.command()
@with_source
@click.option("--max-chars", type=int, default=8000, help="Maximum characters to show")
@click.pass_context
def preview(ctx: click.Context, source_id: str, version_id: str, max_chars: int) -> None:
    """Show the text rewritten so far."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            result = await orch.preview(run_ctx, max_chars=max_chars)
            if result is None:
                _display_activity(run_ctx)
                sys.exit(1)
            console.print(Panel(result.preview_text or "[dim](empty)[/dim]", title="Preview"))
            console.print(f"[dim]{result.total_chars:,} chars across {result.unit_count} units[/dim]")
            if result.missing_unit_numbers:
                missing = ", ".join(map(str, result.missing_unit_numbers))
                console.print(f"[yellow]Not yet rewritten:[/yellow] {missing}")

    _invoke(ctx, _run())


@main.command()
@with_source
@click.pass_context
def reset(ctx: click.Context, source_id: str, version_id: str) -> None:
    """Forget the persisted run identity of a source version."""

    async def _run() -> None:
        async with _session(ctx, source_id, version_id) as (orch, run_ctx):
            orch.reset(run_ctx)
            console.print("[green]Run identity cleared.[/green]")

    _invoke(ctx, _run())


@main.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Display current configuration."""
    cfg: RewriteflowConfig = ctx.obj["config"]

    console.print(Panel("[bold blue]rewriteflow Configuration[/bold blue]", title="Configuration"))

    console.print("[bold]Engine[/bold]")
    console.print(f"  Endpoint: {cfg.engine.base_url}/{cfg.engine.rpc_path}")
    console.print(f"  Timeout: {cfg.engine.timeout_seconds:g}s")
    console.print(f"  Max Retries: {cfg.engine.max_retries}")
    console.print(f"  Access Token: {'set' if cfg.engine.access_token else '[yellow]not set[/yellow]'}")
    console.print()

    console.print("[bold]Pipeline[/bold]")
    console.print(f"  Delays: {cfg.pipeline.job_delay_seconds:g}s / {cfg.pipeline.empty_delay_seconds:g}s empty")
    console.print(f"  Status Refresh Every: {cfg.pipeline.refresh_every} jobs")
    console.print(f"  Max Expansions: {cfg.pipeline.max_expansions}")
    console.print(f"  Auto Assemble: {cfg.pipeline.auto_assemble}")
    console.print()

    console.print("[bold]Identity Store[/bold]")
    console.print(f"  Backend: {cfg.identity.backend.value}")
    if cfg.identity.backend.value == "file":
        console.print(f"  Path: {Path(cfg.identity.path).resolve()}")


if __name__ == "__main__":
    main()
