"""CLI entry point for server-sync using Typer."""

from __future__ import annotations

import asyncio
import json
import socket
import sys
from pathlib import Path
from typing import Annotated, Any

import asyncssh
import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from serversync import __version__
from serversync.config import Configuration, ConfigurationError
from serversync.connection import SSHRemoteRunner
from serversync.logger import (
    LOG_FILE_GLOB,
    configure_logging,
    generate_log_filename,
    get_latest_log_file,
    get_logs_directory,
)
from serversync.models import CopyItemSpec, FailurePolicy, SyncSummary, TaskStatus
from serversync.orchestrator import SyncOrchestrator
from serversync.services import ServiceControlError, ServiceController

app = typer.Typer(
    name="server-sync",
    help="Distribute files from one source host to many destination hosts",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "yellow",
    TaskStatus.SKIPPED: "cyan",
    TaskStatus.RUNNING: "blue",
}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"server-sync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version_flag: Annotated[
        bool,
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """server-sync file distribution."""


def _load_configuration(config: Path | None) -> Configuration:
    """Read --config, else the default file when present, else use built-in defaults.

    Prints every configuration error and exits with status 1.
    """
    if config is None:
        config = Configuration.get_default_config_path()
        if not config.exists():
            return Configuration()

    try:
        return Configuration.from_yaml(config)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error[/bold red] in {config}:")
        for error in e.errors:
            console.print(f"  [cyan]{error.path}[/cyan]: {error.message}")
        sys.exit(1)


def _parse_item(value: str) -> CopyItemSpec:
    """Parse a PATH=TEMPLATE option value. A missing template yields a malformed item."""
    path, _, command = value.partition("=")
    return CopyItemSpec(path=path.strip(), command=command.strip())


def _build_orchestrator(cfg: Configuration, source_server: str) -> SyncOrchestrator:
    service_controller = None
    if cfg.services:
        runner = SSHRemoteRunner(
            username=cfg.ssh.username,
            port=cfg.ssh.port,
            connect_timeout=cfg.ssh.connect_timeout,
            known_hosts=cfg.ssh.known_hosts,
        )
        service_controller = ServiceController(
            runner,
            manager=cfg.service_control.manager,
            sudo=cfg.service_control.sudo,
        )

    return SyncOrchestrator(
        source_server=source_server,
        destinations=cfg.destinations,
        copy_items=cfg.copy_items,
        services=cfg.services,
        as_job=cfg.as_job,
        dry_run=cfg.dry_run,
        failure_policy=cfg.failure_policy,
        poll_interval=cfg.poll_interval,
        max_parallel=cfg.max_parallel,
        job_log_dir=cfg.job_log_dir,
        service_controller=service_controller,
    )


@app.command()
def sync(
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to config file (default: ~/.config/server-sync/config.yaml)",
        ),
    ] = None,
    source: Annotated[
        str | None,
        typer.Option("--source", help="Source server name (default: local host name)"),
    ] = None,
    destination: Annotated[
        list[str] | None,
        typer.Option("--destination", "-d", help="Destination host (repeatable)"),
    ] = None,
    item: Annotated[
        list[str] | None,
        typer.Option("--item", "-i", help='Copy item as PATH=TEMPLATE, e.g. \'/srv/www=rsync -a %SOURCEITEM%/ %DESTINATIONITEM%/\' (repeatable)'),
    ] = None,
    service: Annotated[
        list[str] | None,
        typer.Option("--service", "-s", help="Service to stop before and start after the copy (repeatable)"),
    ] = None,
    as_job: Annotated[
        bool | None,
        typer.Option("--as-job/--no-as-job", help="Run every copy concurrently as a background job"),
    ] = None,
    dry_run: Annotated[
        bool | None,
        typer.Option("--dry-run/--no-dry-run", help="Show what would run without running anything"),
    ] = None,
    fail_fast: Annotated[
        bool | None,
        typer.Option("--fail-fast/--best-effort", help="Stop at the first failed copy, or keep going"),
    ] = None,
) -> None:
    """Copy items to every destination host.

    Command line options override the configuration file.
    """
    cfg = _load_configuration(config)

    if source:
        cfg.source_server = source
    if destination:
        cfg.destinations = list(destination)
    if item:
        cfg.copy_items = [_parse_item(value) for value in item]
    if service:
        cfg.services = list(service)
    # Flags left unset keep the configured value
    if as_job is not None:
        cfg.as_job = as_job
    if dry_run is not None:
        cfg.dry_run = dry_run
    if fail_fast is not None:
        cfg.failure_policy = FailurePolicy.FAIL_FAST if fail_fast else FailurePolicy.BEST_EFFORT

    if not cfg.destinations:
        console.print("[bold red]Error:[/bold red] No destination hosts given")
        sys.exit(1)
    if not cfg.copy_items:
        console.print("[bold red]Error:[/bold red] No copy items given")
        sys.exit(1)

    exit_code = _run_sync(cfg)
    sys.exit(exit_code)


def _run_sync(cfg: Configuration) -> int:
    """Run one sync and report it. Returns the process exit code (130 on Ctrl+C)."""
    # Resolved once here; the orchestrator never looks up the local host itself
    source_server = cfg.source_server or socket.gethostname()
    orchestrator = _build_orchestrator(cfg, source_server)

    log_file_path = get_logs_directory() / generate_log_filename(orchestrator.run_id)
    configure_logging(cfg.log_file_level, cfg.log_cli_level, log_file_path)

    try:
        summary = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, copy commands were terminated[/yellow]")
        return 130
    except ServiceControlError as e:
        console.print(f"\n[bold red]Service control failed:[/bold red] {e}")
        return 1
    except (asyncssh.Error, OSError) as e:
        console.print(f"\n[bold red]Sync aborted:[/bold red] {e}")
        return 1

    _print_summary(summary)
    console.print(f"[dim]Log file: {log_file_path}[/dim]")
    return 0 if summary.success else 1


def _print_summary(summary: SyncSummary) -> None:
    """Render per-task results as a table followed by a one-line verdict."""
    title = f"Sync {summary.run_id} from {summary.source_server}"
    if summary.dry_run:
        title += " (dry run)"
    table = Table(title=title)
    table.add_column("Item")
    table.add_column("Destination")
    table.add_column("Status")
    table.add_column("Details", overflow="fold")

    for result in summary.results:
        if result.status is TaskStatus.SKIPPED:
            details = result.task.command.display()
        elif result.failed:
            details = result.error_message or ""
            if result.task.log_path is not None:
                details += f" (see {result.task.log_path})"
        else:
            details = str(result.task.log_path or "")
        table.add_row(
            result.task.item_path,
            result.task.destination,
            Text(str(result.status), style=STATUS_STYLES.get(result.status, "white")),
            details,
        )
    console.print(table)

    if summary.skipped_items:
        console.print(f"[yellow]Skipped {len(summary.skipped_items)} malformed copy item(s)[/yellow]")
    if summary.dry_run:
        return
    if summary.success:
        console.print(f"[bold green]{len(summary.succeeded)} copy command(s) succeeded[/bold green]")
    else:
        message = f"{len(summary.failed)} of {len(summary.results)} copy command(s) failed"
        if summary.aborted:
            message += ", remaining work was stopped"
        console.print(f"[bold red]{message}[/bold red]")


LEVEL_STYLES = {
    "debug": "dim",
    "info": "green",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
}
_LOG_HEADER_FIELDS = ("timestamp", "level", "logger", "event", "hostname")


def _format_log_entry(entry: dict[str, Any]) -> Text:
    """One JSON run log entry as a single console line."""
    level = str(entry.get("level", "info"))
    timestamp = str(entry.get("timestamp", ""))
    _, _, clock = timestamp.partition("T")

    text = Text()
    text.append(f"{clock[:8] or timestamp} ", style="dim")
    text.append(f"{level.upper():<8} ", style=LEVEL_STYLES.get(level, "white"))
    text.append(str(entry.get("event", "")))
    extras = {key: value for key, value in entry.items() if key not in _LOG_HEADER_FIELDS}
    if extras:
        text.append("  " + " ".join(f"{key}={value}" for key, value in extras.items()), style="dim")
    return text


def _display_log_file(log_file: Path) -> None:
    console.print(f"[bold]{log_file}[/bold]\n")
    try:
        lines = log_file.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        console.print(f"[bold red]Cannot read log file:[/bold red] {e}")
        sys.exit(1)

    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            console.print(_format_log_entry(json.loads(line)))
        except json.JSONDecodeError:
            # Plain text lines, e.g. from a crash before logging was configured
            console.print(f"[dim]{number}:[/dim] {line}")


@app.command()
def logs(
    last: Annotated[
        bool,
        typer.Option("--last", "-l", help="Show the entries of the most recent run log"),
    ] = False,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Number of run logs to list"),
    ] = 10,
) -> None:
    """List run logs, newest first, or show the latest one."""
    logs_dir = get_logs_directory()

    if last:
        latest = get_latest_log_file()
        if latest is None:
            console.print(f"[yellow]No run logs in {logs_dir}[/yellow]")
            sys.exit(1)
        _display_log_file(latest)
        return

    run_logs = sorted(logs_dir.glob(LOG_FILE_GLOB), reverse=True) if logs_dir.is_dir() else []
    if not run_logs:
        console.print(f"[yellow]No run logs in {logs_dir}[/yellow]")
        return

    table = Table(title=f"Run logs in {logs_dir}")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for path in run_logs[:limit]:
        table.add_row(path.name, f"{path.stat().st_size:,} B")
    console.print(table)
    if len(run_logs) > limit:
        console.print(f"[dim]{len(run_logs) - limit} older run log(s) not shown[/dim]")
