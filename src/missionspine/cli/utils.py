"""
CLI utility helpers: output formatting and data directory resolution.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from missionspine.core.settings import get_settings

console = Console()
err_console = Console(stderr=True)


def resolve_data_dir(data_dir: str | None) -> Path:
    """``--data-dir`` when given, else ``MISSION_DATA_DIR`` / the default."""
    return Path(data_dir) if data_dir else get_settings().data_dir


def fail(message: str) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=1)


def output_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def output_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of flat dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)


def output_dict(data: dict[str, Any], *, title: str = "") -> None:
    table = Table(title=title or None, show_header=False, pad_edge=False)
    table.add_column("Key", style="bold cyan")
    table.add_column("Value", overflow="fold")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        table.add_row(key, "" if value is None else str(value))
    console.print(table)
