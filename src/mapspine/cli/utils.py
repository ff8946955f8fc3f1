"""
CLI utility helpers: output formatting and queue access.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from mapspine.core.settings import get_settings
from mapspine.execution.dlq import DeadLetterQueue
from mapspine.execution.dlq_storage import FileStorage

console = Console()
err_console = Console(stderr=True)


# ── Queue helper ─────────────────────────────────────────────────────────


def open_queue(path: Path | None = None, *, retention_seconds: float | None = None) -> DeadLetterQueue:
    """Open the file-backed DLQ at ``path`` (defaults to ``MAPSPINE_DLQ_STORAGE_PATH``)."""
    settings = get_settings()
    directory = path or settings.dlq_storage_path
    if not directory.is_dir():
        fail("DLQ_NOT_FOUND", f"No DLQ directory at {directory}")
    kwargs: dict[str, Any] = {
        "storage": FileStorage(directory, fsync=settings.dlq_fsync),
        "background_tasks": False,
    }
    if retention_seconds is not None:
        kwargs["retention_seconds"] = retention_seconds
    return DeadLetterQueue.from_settings(settings, **kwargs)


def fail(code: str, message: str) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({code}): {message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


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
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        if isinstance(v, dict | list):
            v = json.dumps(v, default=str)
        console.print(f"  [cyan]{k}[/cyan]: {v}", highlight=False)
