"""Cairn CLI entry point."""

from __future__ import annotations

import importlib.metadata
from pathlib import Path
from typing import Annotated

import typer

from cairn.cli import runtime
from cairn.cli.cancel import cancel_cmd
from cairn.cli.query import query_cmd
from cairn.cli.reembed import reembed_cmd
from cairn.cli.status import status_cmd
from cairn.cli.submit import submit_app
from cairn.cli.worker import worker_cmd
from cairn.logging_setup import setup_logging


def _version() -> str:
    try:
        return importlib.metadata.version("cairn")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cairn {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="cairn",
    help=(
        "Cairn: personal knowledge graph.\n\n"
        "  cairn submit   Queue text, URLs and files for ingestion.\n"
        "  cairn worker   Turn queued content into chunks, entities and relationships.\n"
        "  cairn query    Hybrid (vector + full-text) search with graph context."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Database path (overrides storage.database)."),
    ] = None,
    owner: Annotated[
        str | None,
        typer.Option("--owner", help="Act as this owner (default: $CAIRN_OWNER or login name)."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging."),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Cairn: personal knowledge graph."""
    runtime.state = runtime.CliState(db=db, owner=owner, verbose=verbose)
    setup_logging(verbose)


app.add_typer(submit_app, name="submit")
app.command("worker")(worker_cmd)
app.command("status")(status_cmd)
app.command("cancel")(cancel_cmd)
app.command("query")(query_cmd)
app.command("reembed")(reembed_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Cairn version."""
    typer.echo(f"cairn {_version()}")


if __name__ == "__main__":
    app()
