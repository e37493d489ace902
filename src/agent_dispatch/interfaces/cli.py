"""CLI: Typer app wired to the task dispatcher."""

from __future__ import annotations

import asyncio
import logging
import sys

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_dispatch.application.dispatch import DispatchRequest, TaskDispatcher
from agent_dispatch.application.execution_resolution import (
    resolve_agent_execution,
    resolve_category_execution,
)
from agent_dispatch.config import DispatchConfig, load_config
from agent_dispatch.domain import BackendError, ResolutionError
from agent_dispatch.infrastructure.availability_cache import CachedAvailabilitySource, resolve_cache_dir
from agent_dispatch.infrastructure.background import InProcessBackgroundManager
from agent_dispatch.infrastructure.http_backend import HttpSessionBackend
from agent_dispatch.infrastructure.telemetry import setup_telemetry

app = typer.Typer(help="agent-dispatch: delegate tasks to agent sessions and wait for their results.")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _build_backend(config: DispatchConfig) -> HttpSessionBackend:
    return HttpSessionBackend(
        base_url=config.backend.base_url,
        api_key=config.backend.api_key,
        timeout_s=config.backend.timeout_s,
        directory=config.backend.directory,
    )


def _availability_source(config: DispatchConfig, backend: HttpSessionBackend, refresh: bool) -> CachedAvailabilitySource:
    return CachedAvailabilitySource(
        cache_dir=resolve_cache_dir(config.cache.cache_dir),
        live=backend,
        refresh_on_first_use=refresh,
    )


@app.command()
def resolve(
    category: str = typer.Option("", "--category", "-c", help="Category to resolve (e.g. quick, deep)."),
    agent: str = typer.Option("", "--agent", "-a", help="Agent to resolve (e.g. oracle, explore)."),
    model: str = typer.Option("", "--model", "-m", help="Explicit provider/model selection (wins over everything)."),
    refresh: bool = typer.Option(False, "--refresh", help="Query the server for live availability first."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging to stderr."),
) -> None:
    """Show which agent and model a category or agent would run on, and why."""
    _setup_logging(verbose)
    if bool(category) == bool(agent):
        rprint("[red]Pass exactly one of --category or --agent.[/red]")
        sys.exit(2)

    config = load_config()
    source = _availability_source(config, _build_backend(config), refresh)
    availability = asyncio.run(source.get_availability())
    try:
        if category:
            execution = resolve_category_execution(category, config, availability, ui_model=model or None)
        else:
            execution = resolve_agent_execution(agent, config, availability)
    except ResolutionError as e:
        rprint(f"[red]{e}[/red]")
        sys.exit(1)

    if availability.is_known:
        known = f"{len(availability.models or ())} models known"
    else:
        known = "availability unknown (no model cache)"
    rprint(
        Panel.fit(
            f"[bold]Agent:[/bold] {execution.agent}\n"
            f"[bold]Model:[/bold] {execution.actual_model or '(server default)'}\n"
            f"[bold]Variant:[/bold] {(execution.model.variant if execution.model else None) or '-'}\n"
            f"[bold]Provenance:[/bold] {execution.provenance.value if execution.provenance else '-'}\n"
            f"[bold]Unstable:[/bold] {'yes' if execution.is_unstable else 'no'}\n"
            f"[dim]{known}[/dim]"
        )
    )


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Instruction for the delegated agent."),
    description: str = typer.Option("", "--description", "-d", help="Short task description (defaults to the prompt)."),
    category: str = typer.Option("", "--category", "-c", help="Task category (picks the model)."),
    agent: str = typer.Option("", "--agent", "-a", help="Named agent to run instead of a category."),
    session_id: str = typer.Option("", "--session-id", "-s", help="Continue this existing session."),
    parent_session_id: str = typer.Option("", "--parent", help="Parent session id for the new child session."),
    model: str = typer.Option("", "--model", "-m", help="Explicit provider/model selection."),
    background: bool = typer.Option(False, "--background", "-b", help="Launch and return without waiting for the result."),
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help="Background mode: keep the process alive until the task finishes and print its result.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging to stderr."),
) -> None:
    """Dispatch one task and print the report."""
    _setup_logging(verbose)
    config = load_config()
    setup_telemetry(config)

    backend = _build_backend(config)
    manager = InProcessBackgroundManager(backend, config)
    dispatcher = TaskDispatcher(
        backend,
        manager,
        config,
        availability_source=_availability_source(config, backend, refresh=True),
    )
    request = DispatchRequest(
        description=description or prompt[:60],
        prompt=prompt,
        run_in_background=background,
        category=category or None,
        agent=agent or None,
        session_id=session_id or None,
        parent_session_id=parent_session_id or None,
        ui_model=model or None,
    )

    async def _main():
        report = await dispatcher.dispatch(request)
        result = None
        if background and wait and report.ok and report.task_id:
            typer.echo(report.text)
            rprint("[dim]Waiting for background task...[/dim]")
            final = await manager.wait(report.task_id)
            result = (final, manager.get_result(report.task_id))
        return report, result

    try:
        report, result = asyncio.run(_main())
    except BackendError as e:
        rprint(f"[red]Session server error.[/red]\n  URL: {config.backend.base_url}\n  Error: {e}")
        sys.exit(1)

    if result is not None:
        final, text = result
        status = final.status.value if final else "unknown"
        rprint(Panel.fit(f"[bold]Task:[/bold] {report.task_id}\n[bold]Status:[/bold] {status}"))
        if final and final.error:
            rprint(f"[red]{final.error}[/red]")
        if text:
            typer.echo(text)
        sys.exit(0 if status == "completed" else 1)

    typer.echo(report.text)
    if not report.ok:
        sys.exit(1)


@app.command()
def models(
    cached: bool = typer.Option(False, "--cached", help="Only read the cache; do not query the server."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging to stderr."),
) -> None:
    """Refresh (or read) the availability cache and list models by provider."""
    _setup_logging(verbose)
    config = load_config()
    source = _availability_source(config, _build_backend(config), refresh=False)
    try:
        availability = asyncio.run(source.get_availability() if cached else source.refresh())
    except BackendError as e:
        rprint(f"[red]Could not query the session server at {config.backend.base_url}: {e}[/red]")
        sys.exit(1)

    if not availability.is_known:
        rprint(f"[yellow]No model cache in {source.cache_dir}. Run without --cached to create it.[/yellow]")
        return

    table = Table(title=f"Available models ({source.cache_dir})", show_header=True, header_style="bold")
    table.add_column("Provider", style="cyan", no_wrap=True)
    table.add_column("Model", style="green")
    for full in sorted(availability.models or ()):
        provider, _, model_id = full.partition("/")
        table.add_row(provider, model_id)
    Console().print(table)
    connected = availability.connected_providers
    rprint(f"[dim]Connected providers: {', '.join(connected) if connected else '-'}[/dim]")

