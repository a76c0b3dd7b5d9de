"""cairn status: active (or recent) ingestion tasks for the current owner."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from cairn.cli.errors import err_no_db
from cairn.cli.runtime import console, db_path, default_owner, get_config, open_db
from cairn.db.models import Completed, Error, IngestionTask, InProgress, Pending, status_label
from cairn.db.tasks import TaskQueue


def status_cmd(
    all_tasks: Annotated[
        bool,
        typer.Option("--all", "-a", help="Include completed and failed tasks."),
    ] = False,
    limit: Annotated[int, typer.Option("--limit", help="Rows shown with --all.")] = 20,
) -> None:
    """Show queued and running tasks, with error messages for failures."""
    cfg = get_config()
    if not db_path(cfg).exists():
        console.print(err_no_db(cfg.storage.database))
        raise typer.Exit(1)

    owner = default_owner()
    conn = open_db(cfg)
    try:
        queue = TaskQueue(conn, cfg.queue)
        tasks = queue.list_recent(owner, limit) if all_tasks else queue.list_active(owner)
    finally:
        conn.close()

    if not tasks:
        console.print("[dim]No tasks.[/]" if all_tasks else "[dim]No active tasks.[/]")
        return

    table = Table(title=f"Tasks for {owner}", show_lines=False)
    table.add_column("Task", style="bold")
    table.add_column("Kind")
    table.add_column("Category")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for task in tasks:
        table.add_row(
            task.id[:12],
            type(task.payload).__name__.removesuffix("Payload").lower(),
            task.payload.category or "-",
            _status_cell(task),
            str(task.attempts),
            _detail(task),
        )
    console.print(table)


def _status_cell(task: IngestionTask) -> str:
    status = task.status
    label = status_label(status)
    if isinstance(status, Completed):
        return f"[green]{label}[/]"
    if isinstance(status, Error):
        return f"[red]{label}[/]"
    if isinstance(status, InProgress):
        suffix = " (cancelling)" if task.cancel_requested else ""
        return f"[cyan]{label}{suffix}[/]"
    if isinstance(status, Pending):
        return f"[yellow]{label}[/]"
    raise TypeError(f"Unknown task status: {type(status).__name__}")


def _detail(task: IngestionTask) -> str:
    status = task.status
    if isinstance(status, Error):
        return status.message
    if isinstance(status, Pending) and status.retry_at is not None:
        return "retry scheduled"
    return ""
