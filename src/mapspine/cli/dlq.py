"""
CLI: ``mapspine dlq`` inspects and maintains a file-backed dead-letter queue.
"""

from __future__ import annotations

from pathlib import Path

import typer

from mapspine.cli.utils import fail, open_queue, output_dict, output_json, output_table
from mapspine.core.clock import to_iso8601
from mapspine.execution.dlq import DLQStatus

app = typer.Typer(no_args_is_help=True)

PathOption = typer.Option(None, "--path", "-p", help="DLQ directory (default: MAPSPINE_DLQ_STORAGE_PATH).")


@app.command("list")
def list_entries(
    path: Path | None = PathOption,
    status: DLQStatus | None = typer.Option(None, "--status", "-s"),
    mapping_id: str | None = typer.Option(None, "--mapping", "-m"),
    error_pattern: str | None = typer.Option(None, "--error", "-e", help="Regex matched against message/code."),
    limit: int = typer.Option(50, "--limit", "-n"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List dead-letter entries in FIFO order."""
    dlq = open_queue(path)
    entries = dlq.search(status=status, mapping_id=mapping_id, error_pattern=error_pattern, limit=limit)

    if json_out:
        output_json({"items": [e.to_dict() for e in entries], "total": dlq.size})
        return

    rows = [
        {
            "id": e.id,
            "status": e.status.value,
            "mapping_id": e.mapping_id,
            "error": e.error.get("message"),
            "attempts": len(e.attempts),
            "enqueued_at": to_iso8601(e.enqueued_at),
        }
        for e in entries
    ]
    output_table(rows, title="Dead Letters")
    if rows:
        output_dict({"showing": f"{len(rows)} of {dlq.size}"})


@app.command("stats")
def stats(
    path: Path | None = PathOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show queue statistics."""
    statistics = open_queue(path).get_statistics()
    if json_out:
        output_json(statistics)
        return
    output_dict(statistics, title="DLQ Statistics")


@app.command("show")
def show(
    entry_id: str = typer.Argument(..., help="Dead-letter entry ID"),
    path: Path | None = PathOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one entry in full."""
    entry = open_queue(path).get_entry(entry_id)
    if entry is None:
        fail("DLQ_ENTRY_NOT_FOUND", f"No entry {entry_id}")
    if json_out:
        output_json(entry.to_dict())
        return
    output_dict(entry.to_dict(), title=f"Entry {entry_id}")


@app.command("export")
def export(
    output: Path = typer.Argument(..., help="Destination JSON file"),
    path: Path | None = PathOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Export all entries with options and statistics to one JSON document."""
    summary = open_queue(path).export_to_file(output)
    if json_out:
        output_json(summary)
        return
    output_dict(summary, title="Export")


@app.command("resolve")
def resolve(
    entry_ids: list[str] = typer.Argument(..., help="One or more entry IDs"),
    path: Path | None = PathOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Mark entries as resolved, removing them from the queue."""
    results = open_queue(path).bulk_resolve(entry_ids)
    payload = {
        "resolved": [entry.id for entry in results["resolved"]],
        "not_found": results["not_found"],
    }
    if json_out:
        output_json(payload)
    else:
        output_dict(payload, title="Resolve")
    if payload["not_found"] and not payload["resolved"]:
        raise typer.Exit(code=1)


@app.command("purge-expired")
def purge_expired(
    path: Path | None = PathOption,
    retention: float | None = typer.Option(
        None, "--retention", "-r", help="Override retention in seconds (default: MAPSPINE_DLQ_RETENTION_SECONDS)."
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Remove entries older than the retention period."""
    if retention is not None and retention <= 0:
        fail("INVALID_RETENTION", "--retention must be positive")
    dlq = open_queue(path, retention_seconds=retention)
    removed = dlq.clear_expired()
    payload = {"removed": removed, "remaining": dlq.size}
    if json_out:
        output_json(payload)
        return
    output_dict(payload, title="Purge")
