"""cairn submit: queue content for ingestion.

  cairn submit text "some note" --category ideas
  cairn submit url https://example.com/post --category reading
  cairn submit file ./paper.pdf --instructions "focus on the method"

Submission only persists a Pending task; a worker (cairn worker) does the work.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from cairn.cli.errors import err_file_not_found
from cairn.cli.runtime import console, default_owner, get_config, open_db
from cairn.db.models import FilePayload, Payload, TextPayload, UrlPayload
from cairn.db.repository import Repository
from cairn.db.tasks import TaskQueue
from cairn.ingest.files import FileStore

submit_app = typer.Typer(help="Queue text, a URL or a file for ingestion.", no_args_is_help=True)

CategoryOpt = Annotated[str, typer.Option("--category", "-c", help="Category label.")]
InstructionsOpt = Annotated[
    str, typer.Option("--instructions", "-i", help="Free-text context for extraction.")
]


def _enqueue(payload: Payload) -> None:
    cfg = get_config()
    conn = open_db(cfg)
    try:
        task_id = TaskQueue(conn, cfg.queue).enqueue(payload, default_owner())
    finally:
        conn.close()
    console.print(f"[green]✓[/] Queued task [bold]{task_id}[/]")
    console.print("  Run:  cairn worker --once  to process the queue.")


@submit_app.command("text")
def submit_text(
    text: Annotated[str, typer.Argument(help="Text to ingest ('-' reads stdin).")],
    category: CategoryOpt = "",
    instructions: InstructionsOpt = "",
) -> None:
    """Queue a piece of text."""
    if text == "-":
        text = typer.get_text_stream("stdin").read()
    if not text.strip():
        console.print("[red]Error:[/] Text is empty.")
        raise typer.Exit(1)
    _enqueue(TextPayload(text=text, category=category, instructions=instructions))


@submit_app.command("url")
def submit_url(
    url: Annotated[str, typer.Argument(help="http(s) URL of the page.")],
    category: CategoryOpt = "",
    instructions: InstructionsOpt = "",
) -> None:
    """Queue a web page."""
    if not url.startswith(("http://", "https://")):
        console.print(f"[red]Error:[/] Not an http(s) URL: '{url}'")
        raise typer.Exit(1)
    _enqueue(UrlPayload(url=url, category=category, instructions=instructions))


@submit_app.command("file")
def submit_file(
    path: Annotated[Path, typer.Argument(help="PDF, image, audio or text file.")],
    category: CategoryOpt = "",
    instructions: InstructionsOpt = "",
) -> None:
    """Store a file (deduplicated by content hash) and queue it."""
    if not path.is_file():
        console.print(err_file_not_found(str(path)))
        raise typer.Exit(1)
    cfg = get_config()
    owner = default_owner()
    conn = open_db(cfg)
    try:
        ref = FileStore(Repository(conn), cfg.storage.files_dir).store(path, owner)
        task_id = TaskQueue(conn, cfg.queue).enqueue(
            FilePayload(file_id=ref.id, category=category, instructions=instructions), owner
        )
    finally:
        conn.close()
    console.print(f"[green]✓[/] Stored {path.name} as file [dim]{ref.id}[/]")
    console.print(f"[green]✓[/] Queued task [bold]{task_id}[/]")
