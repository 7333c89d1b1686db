"""Commands for the devpreview CLI."""

import asyncio
import time
from pathlib import Path
from typing import Annotated

from rich.table import Table
from typer import Argument, Exit, Option, Typer

from devpreview.dev.logging import configure_logging, print_log_entry
from devpreview.dev.manager import DevServerManager
from devpreview.errors import DevServerError
from devpreview.models import DevServerInstance, DevServerStatus, LogEntry, ManagerSettings
from devpreview.utils import console, format_elapsed_ms

preview_app = Typer(
    name="devpreview",
    help="Run and supervise local development servers",
    no_args_is_help=True,
)

_LOG_POLL_INTERVAL = 0.5


def _new_entries(entries: list[LogEntry], last: LogEntry | None) -> list[LogEntry]:
    """Entries appended after `last` (everything, if `last` was evicted)."""
    if last is None:
        return entries
    for index in range(len(entries) - 1, -1, -1):
        if entries[index] is last:
            return entries[index + 1 :]
    return entries


async def _stream_logs(manager: DevServerManager, project_id: str) -> None:
    last: LogEntry | None = None
    while True:
        entries = manager.get_logs(project_id)
        for entry in _new_entries(entries, last):
            print_log_entry(entry)
        if entries:
            last = entries[-1]

        supervisor = manager.get_supervisor(project_id)
        if supervisor is None or supervisor.has_exited:
            return
        # A foreground session counts as activity.
        manager.update_server_activity(project_id)
        await asyncio.sleep(_LOG_POLL_INTERVAL)


async def _run_foreground(
    project_id: str, project_root: Path, port: int | None, settings: ManagerSettings
) -> DevServerInstance:
    async with DevServerManager(settings) as manager:
        started = time.perf_counter()
        instance = await manager.start_dev_server(project_id, project_root, port)

        if manager.get_supervisor(project_id) is None:
            console.print(
                f"[yellow]⚠️  {project_id} is already served by another session at "
                f"{instance.preview_url} (pid {instance.pid})[/yellow]"
            )
            return instance

        console.print(
            f"[green]✓[/green] Dev server for [bold]{project_id}[/bold] running at "
            f"{instance.preview_url} ({format_elapsed_ms(started)})"
        )
        console.print("[bold cyan]📡 Streaming logs... Press Ctrl+C to stop[/bold cyan]")
        console.print()
        await _stream_logs(manager, project_id)
        return instance


@preview_app.command(name="start", help="Start a dev server and stream its logs until Ctrl+C")
def preview_start(
    project_id: Annotated[str, Argument(help="Identifier the server is tracked under")],
    project_root: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used"
        ),
    ] = None,
    port: Annotated[
        int | None, Option("--port", "-p", help="Use this port instead of scanning")
    ] = None,
    verbose: Annotated[bool, Option("--verbose", "-v", help="Show debug logs")] = False,
):
    """Start a dev server in the foreground."""
    if project_root is None:
        project_root = Path.cwd()

    configure_logging(verbose=verbose)
    settings = ManagerSettings.from_env()

    try:
        instance = asyncio.run(
            _run_foreground(project_id, project_root.resolve(), port, settings)
        )
    except DevServerError as e:
        console.print(f"[red]❌ Failed to start dev server for {project_id}: {e}[/red]")
        raise Exit(code=1)
    except KeyboardInterrupt:
        console.print()
        console.print("[bold yellow]🛑 Dev server stopped[/bold yellow]")
        return

    if instance.status is DevServerStatus.ERROR:
        console.print(f"[red]❌ Dev server for {project_id} failed: {instance.error}[/red]")
        raise Exit(code=1)


def _status_cell(instance: DevServerInstance | None) -> str:
    if instance is None:
        return "[dim]○[/dim] Not running"
    if instance.status is DevServerStatus.RUNNING:
        return "[green]●[/green] Running"
    if instance.status is DevServerStatus.ERROR:
        return "[red]●[/red] Error"
    return f"[yellow]●[/yellow] {instance.status.value.capitalize()}"


async def _probe(manager: DevServerManager, project_ids: list[str]) -> list[bool]:
    return list(
        await asyncio.gather(*(manager.is_server_listening(pid) for pid in project_ids))
    )


@preview_app.command(name="status", help="Show dev servers recorded in lock files")
def preview_status(
    project_id: Annotated[
        str | None, Argument(help="Only show this project")
    ] = None,
):
    """Show the status of dev servers owned by any session."""
    manager = DevServerManager(ManagerSettings.from_env())
    project_ids = [project_id] if project_id else manager.lock.list_project_ids()
    if not project_ids:
        console.print("[yellow]No development servers found.[/yellow]")
        return

    instances = {pid: manager.get_server_instance(pid) for pid in project_ids}
    listening = asyncio.run(_probe(manager, project_ids))

    table = Table(
        title="Development Server Status",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Project", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("PID", justify="right")
    table.add_column("Port", justify="right", style="green")
    table.add_column("URL")
    table.add_column("Listening", justify="center")

    for pid, is_listening in zip(project_ids, listening):
        instance = instances[pid]
        table.add_row(
            pid,
            _status_cell(instance),
            str(instance.pid) if instance and instance.pid else "-",
            str(instance.config.port) if instance else "-",
            instance.preview_url if instance else "-",
            "[green]yes[/green]" if is_listening else "[dim]no[/dim]",
        )
    console.print(table)


@preview_app.command(name="stop", help="Stop a dev server, even one started by another session")
def preview_stop(
    project_id: Annotated[str, Argument(help="Identifier the server is tracked under")],
):
    """Stop a project's dev server."""
    manager = DevServerManager(ManagerSettings.from_env())
    if manager.get_server_instance(project_id) is None:
        console.print(f"[yellow]No development server found for {project_id}.[/yellow]")
        return

    console.print(f"[bold yellow]🛑 Stopping dev server for {project_id}...[/bold yellow]")
    asyncio.run(manager.stop_dev_server(project_id))
    console.print(f"[green]✓[/green] Dev server for {project_id} stopped")
