"""
Root Typer application for the ``conductor`` command.

    conductor run --database conductor.db      # engine in the foreground
    conductor submit http_check -c '{"url": "https://example.com/health"}' --priority high
    conductor stats --database conductor.db
    conductor types
"""

from __future__ import annotations

import json
import threading
from typing import Any

import typer

from conductor.cli.output import console, fail, print_dict, print_json, print_table
from conductor.core.errors import ConductorError
from conductor.core.logging import configure_logging
from conductor.core.models import ExecutionStatus
from conductor.core.settings import ConductorSettings, get_settings
from conductor.engine import Conductor
from conductor.store.protocol import ExecutionFilter, Page

app = typer.Typer(
    name="conductor",
    help="conductor - priority task queue, cron scheduler and workflow engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError, version

        try:
            v = version("conductor")
        except PackageNotFoundError:
            v = "unknown"
        typer.echo(f"conductor {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """conductor CLI - run the engine, submit tasks, inspect state."""


def _settings(database: str | None, **overrides: Any) -> ConductorSettings:
    base = get_settings()
    values = {k: v for k, v in overrides.items() if v is not None}
    if database is not None:
        values["database_path"] = database
    settings = ConductorSettings(**{**base.model_dump(), **values}) if values else base
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")
    return settings


def _parse_json(raw: str | None, option: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        fail(f"Invalid JSON for {option}: {e}")
    if not isinstance(value, dict):
        fail(f"{option} must be a JSON object")
    return value


@app.command()
def run(
    database: str | None = typer.Option(None, "--database", "-d", help="SQLite database file"),
    workers: int | None = typer.Option(None, "--workers", "-w", min=1, help="Worker concurrency"),
    scheduler: bool = typer.Option(True, "--scheduler/--no-scheduler", help="Run the cron scheduler"),
    log_level: str | None = typer.Option(None, "--log-level"),
) -> None:
    """Run the engine in the foreground until interrupted."""
    settings = _settings(database, worker_concurrency=workers, log_level=log_level)
    conductor = Conductor(settings=settings)
    conductor.start(scheduler=scheduler)
    console.print(
        f"[green]conductor running[/green] (workers={settings.worker_concurrency}, "
        f"database={settings.database_path or 'memory'}). Press Ctrl+C to stop."
    )
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/yellow]")
    finally:
        conductor.stop()


@app.command()
def submit(
    task_type: str = typer.Argument(..., help="Registered task type"),
    config: str | None = typer.Option(None, "--config", "-c", help="JSON configuration"),
    input_data: str | None = typer.Option(None, "--input", "-i", help="JSON input data"),
    priority: str = typer.Option("medium", "--priority", "-p", help="high, medium, low or a number"),
    timeout: float | None = typer.Option(None, "--timeout", help="Execution timeout in seconds"),
    wait: float = typer.Option(60.0, "--wait", help="Seconds to wait for a result"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Submit an ad-hoc task, run it and print the outcome."""
    settings = _settings(database)
    conductor = Conductor(settings=settings)
    resolved_priority: int | str = int(priority) if priority.isdigit() else priority
    try:
        conductor.start(scheduler=False)
        execution = conductor.submit_ad_hoc_task(
            task_type,
            _parse_json(config, "--config"),
            priority=resolved_priority,
            input_data=_parse_json(input_data, "--input"),
            timeout_seconds=timeout,
        )
        result = conductor.wait_for_execution(execution.id, timeout=wait)
    except ConductorError as e:
        fail(e.message)
    finally:
        conductor.stop(cancel_running=True)

    if json_out:
        print_json(result)
    else:
        print_dict(result.to_dict(), title=f"Execution {result.id}")
    if result.status != ExecutionStatus.SUCCEEDED:
        raise typer.Exit(code=1)


@app.command()
def stats(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show execution and queue statistics from the store."""
    conductor = Conductor(settings=_settings(database))
    conductor.queue.rebuild(conductor.store.find_executions_by_status(ExecutionStatus.QUEUED))
    data = conductor.get_execution_stats()
    if json_out:
        print_json(data)
    else:
        print_dict(data, title="Execution statistics")


@app.command("list")
def list_executions(
    status: str | None = typer.Option(None, "--status", "-s"),
    task_type: str | None = typer.Option(None, "--type", "-t"),
    limit: int = typer.Option(50, "--limit", "-n", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List executions, newest first."""
    conductor = Conductor(settings=_settings(database))
    try:
        flt = ExecutionFilter(
            statuses=(ExecutionStatus(status),) if status else (),
            task_type=task_type,
        )
    except ValueError:
        fail(f"Unknown status: {status}")
    paged = conductor.list_executions(flt, Page(limit=limit, offset=offset))
    if json_out:
        print_json(paged)
        return
    rows = [e.to_dict() for e in paged.items]
    print_table(rows, ["id", "task_type", "status", "priority", "queued_at", "duration_ms", "error"], title="Executions")
    console.print(f"\n[dim]Showing {len(rows)} of {paged.total} (offset {paged.offset})[/dim]")


@app.command()
def types(json_out: bool = typer.Option(False, "--json")) -> None:
    """List registered task types."""
    conductor = Conductor(settings=_settings(None))
    entries = conductor.list_task_types()
    if json_out:
        print_json(entries)
        return
    rows = [{**e, "tags": ", ".join(f"{k}={v}" for k, v in e["tags"].items())} for e in entries]
    print_table(rows, ["name", "handler", "tags", "description"], title="Task types")
