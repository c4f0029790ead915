"""Thin CLI wrapper for ffu_builder.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes of ``build``: 0 on success, 1 on a failed build, 2 on an
invalid configuration, 130 when the build was cancelled.
"""

import json
import logging
import threading
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ffu_builder import __version__
from ffu_builder.config import Settings, get_settings, print_settings_json

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130

app = typer.Typer(
    name="ffubuilder",
    help="FFU Builder - build, cache and distribute Windows FFU images",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ffu-builder version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """FFU Builder - build, cache and distribute Windows FFU images."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        timeout = settings.vm_power_off_timeout
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  State directory:     {settings.state_dir}")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Downloads directory: {settings.downloads_dir}")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Run marker:          {settings.marker_path}")
        console.print(f"  Progress log:        {settings.progress_log_path}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max downloads:       {settings.max_concurrent_downloads}")
        console.print(f"  Max devices:         {settings.max_concurrent_devices}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  VM power-off:        {timeout if timeout else '(none)'}")
        console.print(f"  Kill grace period:   {settings.process_kill_grace}")


def _vm_provider(tools: Any, settings: Settings) -> Any:
    from ffu_builder.tools import CommandVMProvider, ToolRunner

    runner = ToolRunner(
        poll_interval=settings.tool_poll_interval,
        kill_grace=settings.process_kill_grace,
    )
    return CommandVMProvider(
        tools,
        runner,
        log_dir=settings.state_dir / "logs",
        poll_interval=settings.vm_poll_interval,
        power_off_timeout=settings.vm_power_off_timeout,
    )


def _build_collaborators(build_config: Any, settings: Settings) -> Any:
    from ffu_builder.backends import HttpFetchBackend, RawDeviceProvisioner
    from ffu_builder.pipeline import Collaborators
    from ffu_builder.tools import CommandImageTools, ToolRunner

    runner = ToolRunner(
        poll_interval=settings.tool_poll_interval,
        kill_grace=settings.process_kill_grace,
    )
    image_tools = CommandImageTools(build_config.tools, runner)

    def fetcher(catalog: Any) -> HttpFetchBackend:
        return HttpFetchBackend(
            catalog,
            timeout=settings.download_timeout,
            retries=settings.download_retries,
        )

    return Collaborators(
        base_image=image_tools,
        updates=image_tools,
        capture=image_tools,
        optimizer=image_tools,
        vm=_vm_provider(build_config.tools, settings),
        driver_fetcher=fetcher(build_config.drivers),
        app_fetcher=fetcher(build_config.apps),
        update_fetcher=fetcher(build_config.updates),
        devices=RawDeviceProvisioner(),
    )


def _print_event(event: Any) -> None:
    from ffu_builder.progress import ItemStatusRecord, ProgressRecord

    if isinstance(event, ProgressRecord):
        console.print(f"[bold cyan]{event.percentage:3d}%[/bold cyan] {escape(event.message)}")
    elif isinstance(event, ItemStatusRecord):
        status_color = {
            "succeeded": "green",
            "failed": "red",
            "running": "blue",
            "pending": "yellow",
        }.get(event.status, "white")
        console.print(f"      {event.identifier}: [{status_color}]{event.status}[/{status_color}]")
    elif event.text:
        console.print(f"      {escape(event.text)}")


@app.command()
def build(
    config_file: Annotated[
        Path | None,
        typer.Argument(help="Build configuration file (YAML or JSON)"),
    ] = None,
    overrides: Annotated[
        list[str] | None,
        typer.Option("--set", "-s", help="Override a setting as key=value (repeatable)"),
    ] = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Do not use or populate the base-image cache"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output result as JSON"),
    ] = False,
) -> None:
    """Build an FFU image.

    Press Ctrl+C to cancel: running tools are stopped, the VM is
    destroyed and partial files are removed.
    """
    from ffu_builder.buildconfig import resolve_build_configuration
    from ffu_builder.db import get_session, open_run_history
    from ffu_builder.errors import BuildError, BuildValidationError
    from ffu_builder.pipeline import Orchestrator
    from ffu_builder.progress import ProgressMonitor
    from ffu_builder.runs import create_run_record, finish_run_record
    from ffu_builder.types import RunStatus

    settings = get_settings()
    try:
        build_config = resolve_build_configuration(config_file, overrides, settings)
    except BuildValidationError as e:
        console.print(f"[red]Invalid configuration: {escape(e.message)}[/red]")
        raise typer.Exit(code=EXIT_INVALID) from None
    if no_cache:
        build_config = build_config.model_copy(update={"use_cache": False})

    orchestrator = Orchestrator(_build_collaborators(build_config, settings), settings)
    state = orchestrator.create_state(build_config)

    monitor = None
    if not json_output:
        # Progress lines are echoed by the monitor instead
        if settings.log_level != "DEBUG":
            logging.getLogger("ffu_builder.progress").setLevel(logging.WARNING)
        monitor = ProgressMonitor(settings.progress_log_path, _print_event)
        state.monitor = monitor

    factory = open_run_history(settings.db_url)
    with get_session(factory) as session:
        create_run_record(
            session,
            state.run_id,
            build_config.edition,
            build_config.release,
            build_config.version,
        )

    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["artifact"] = orchestrator.run(build_config, state)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="ffu-pipeline", daemon=True)
    if monitor is not None:
        monitor.start()
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling build...[/yellow]")
        orchestrator.cancel(state)
        worker.join()
    finally:
        if monitor is not None:
            monitor.poll()
            monitor.stop()
            monitor.close()

    error = outcome.get("error")
    artifact = outcome.get("artifact")
    if error is None:
        status, exit_code = RunStatus.SUCCEEDED, EXIT_OK
    elif isinstance(error, BuildError) and error.cancelled:
        status, exit_code = RunStatus.CANCELLED, EXIT_CANCELLED
    elif isinstance(error, BuildError) and isinstance(error.cause, BuildValidationError):
        status, exit_code = RunStatus.FAILED, EXIT_INVALID
    else:
        status, exit_code = RunStatus.FAILED, EXIT_FAILED

    with get_session(factory) as session:
        record = finish_run_record(
            session,
            state.run_id,
            status,
            used_cache=state.used_cache,
            fingerprint_key=state.fingerprint.key() if state.fingerprint else None,
            artifact_path=str(artifact) if artifact else None,
            failed_stage=state.failed_stage,
            error_type=getattr(error, "code", type(error).__name__) if error else None,
            error_message=str(error) if error else None,
        )
        output = record.to_dict()

    if json_output:
        typer.echo(json.dumps(output, indent=2))
    elif error is None:
        console.print(f"[green]Build complete:[/green] {artifact}")
        if state.used_cache:
            console.print("  Base image taken from cache")
    elif exit_code == EXIT_CANCELLED:
        console.print(f"[yellow]Build cancelled during {state.failed_stage}[/yellow]")
    else:
        console.print(f"[red]Build failed: {escape(str(error))}[/red]")

    if exit_code != EXIT_OK:
        raise typer.Exit(code=exit_code)


@app.command()
def recover(
    config_file: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Build configuration with VM tool commands"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Sweep even if the marked run's process is alive"),
    ] = False,
) -> None:
    """Clean up after an interrupted build, if one is flagged."""
    from ffu_builder.buildconfig import resolve_build_configuration
    from ffu_builder.errors import BuildValidationError
    from ffu_builder.progress import ProgressChannel
    from ffu_builder.recovery import RecoveryController

    settings = get_settings()
    try:
        build_config = resolve_build_configuration(config_file, None, settings)
    except BuildValidationError as e:
        console.print(f"[red]Invalid configuration: {escape(e.message)}[/red]")
        raise typer.Exit(code=EXIT_INVALID) from None

    with ProgressChannel(settings.progress_log_path) as channel:
        controller = RecoveryController(
            settings,
            channel=channel,
            vm=_vm_provider(build_config.tools, settings),
        )
        live = None if force else controller.active_run(settings.marker_path)
        swept = live is None and controller.sweep_stale_run(
            settings.marker_path, force=force
        )

    if swept:
        console.print("[green]Cleaned up an interrupted run[/green]")
    elif live is not None:
        console.print(
            f"[yellow]Run {live.run_id} (pid {live.pid}) is still in progress; "
            "use --force to sweep anyway[/yellow]"
        )
    else:
        console.print("[yellow]No interrupted run found[/yellow]")


@app.command()
def watch(
    follow: Annotated[
        bool,
        typer.Option("--follow", "-f", help="Keep printing new progress until Ctrl+C"),
    ] = False,
) -> None:
    """Show the progress log of the current or last build."""
    from ffu_builder.progress import ProgressMonitor, read_progress_log

    settings = get_settings()
    if not follow:
        events = read_progress_log(settings.progress_log_path)
        if not events:
            console.print("[yellow]No progress recorded[/yellow]")
            return
        for event in events:
            _print_event(event)
        return

    monitor = ProgressMonitor(settings.progress_log_path, _print_event, from_start=True)
    monitor.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()
        monitor.close()


cache_app = typer.Typer(help="Inspect and prune the base-image cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached base images, newest first."""
    from ffu_builder.cache import ArtifactCache

    cache = ArtifactCache(get_settings().cache_dir)
    entries = cache.entries()

    if json_output:
        output = [manifest.model_dump(mode="json") for manifest in entries]
        typer.echo(json.dumps(output, indent=2))
        return

    if not entries:
        console.print("[yellow]No cached images found[/yellow]")
        return

    console.print(f"[bold]Found {len(entries)} cached image(s):[/bold]")
    console.print()
    for manifest in entries:
        console.print(f"  [cyan]{manifest.artifact_file_name}[/cyan]")
        console.print(
            f"    {manifest.edition} {manifest.release_id} {manifest.version_label}"
            f" (sector size {manifest.sector_size})"
        )
        if manifest.optional_features:
            console.print(f"    Features: {', '.join(manifest.optional_features)}")
        if manifest.applied_updates:
            console.print(f"    Updates: {', '.join(manifest.applied_updates)}")
        console.print(f"    Size: {manifest.size_bytes} bytes")
        console.print(f"    Created: {manifest.created_at.isoformat()}")
        console.print()


@cache_app.command("prune")
def cache_prune(
    older_than: Annotated[
        int | None,
        typer.Option("--older-than", help="Only remove entries at least this many days old"),
    ] = None,
    keep: Annotated[
        int,
        typer.Option("--keep", help="Number of newest entries to always keep"),
    ] = 0,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be removed"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove old cached base images."""
    from ffu_builder.cache import ArtifactCache

    cache = ArtifactCache(get_settings().cache_dir)
    removed = cache.prune(
        older_than=timedelta(days=older_than) if older_than is not None else None,
        keep_latest=keep,
        dry_run=dry_run,
    )

    if json_output:
        output = {
            "dry_run": dry_run,
            "removed": [manifest.artifact_file_name for manifest in removed],
        }
        typer.echo(json.dumps(output, indent=2))
        return

    if not removed:
        console.print("[yellow]Nothing to prune[/yellow]")
        return
    verb = "Would remove" if dry_run else "Removed"
    for manifest in removed:
        console.print(f"  {verb} {manifest.artifact_file_name}")


runs_app = typer.Typer(help="Show build run history")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    status: Annotated[
        str | None,
        typer.Option("--status", help="Filter by status"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of runs"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded build runs, newest first."""
    from ffu_builder.db import open_run_history
    from ffu_builder.runs import list_run_records
    from ffu_builder.types import RunStatus

    status_filter = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in RunStatus)
            console.print(f"[red]Invalid status '{status}'. Valid values: {valid}[/red]")
            raise typer.Exit(code=1) from None

    factory = open_run_history(get_settings().db_url)
    with factory() as session:
        records = list_run_records(session, status=status_filter, limit=limit)

        if json_output:
            typer.echo(json.dumps([r.to_dict() for r in records], indent=2))
            return

        if not records:
            console.print("[yellow]No runs found[/yellow]")
            return

        console.print(f"[bold]Found {len(records)} run(s):[/bold]")
        console.print()
        for r in records:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "cancelled": "yellow",
                "running": "blue",
            }.get(r.status, "white")
            console.print(f"  [{status_color}]Run {r.run_id}[/{status_color}]")
            console.print(f"    Image: {r.edition} {r.release} {r.version}")
            console.print(f"    Status: {r.status}")
            console.print(f"    Cache hit: {r.used_cache}")
            if r.artifact_path:
                console.print(f"    Artifact: {r.artifact_path}")
            if r.failed_stage:
                console.print(f"    Failed stage: {r.failed_stage}")
            if r.error_message:
                console.print(f"    Error: {r.error_message}")
            console.print()


if __name__ == "__main__":
    app()
