"""
CLI output helpers - rich tables and key/value rendering.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "queued": "yellow",
    "running": "blue",
    "succeeded": "green",
    "failed": "red",
    "cancelled": "dim",
}


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def print_json(data: Any) -> None:
    payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
    console.print_json(json.dumps(payload, default=str))


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single mapping as key-value pairs; nested mappings are indented."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    _print_pairs(data, indent=1)


def _print_pairs(data: dict[str, Any], indent: int) -> None:
    pad = "  " * indent
    for key, value in data.items():
        if isinstance(value, dict) and value:
            console.print(f"{pad}[cyan]{key}[/cyan]:")
            _print_pairs(value, indent + 1)
        else:
            if key == "status" and isinstance(value, str) and value in STATUS_STYLES:
                value = f"[{STATUS_STYLES[value]}]{value}[/{STATUS_STYLES[value]}]"
            console.print(f"{pad}[cyan]{key}[/cyan]: {value}")


def print_table(rows: list[dict[str, Any]], columns: list[str], *, title: str = "") -> None:
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*("" if row.get(c) is None else str(row.get(c)) for c in columns))
    console.print(table)


def fail(message: str, code: int = 1) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)
