"""cairn reembed: rebuild every vector index with the configured model."""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer

from cairn.cli.errors import err_no_api_key, err_no_db, render_error
from cairn.cli.runtime import console, db_path, get_config, open_db
from cairn.db.repository import Repository
from cairn.db.vectors import CHUNKS, ENTITIES
from cairn.errors import CairnError, ConfigurationError
from cairn.ingest.pipeline import reembed_all
from cairn.providers.embedding import build_embedder
from cairn.providers.llm_client import validate_api_key


def reembed_cmd(
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt."),
    ] = False,
) -> None:
    """Re-embed all chunks and entities after an embedding model or dimension change.

    Vectors for every owner are regenerated. Stored vectors are only replaced
    once all new vectors have been computed.
    """
    cfg = get_config()
    if not db_path(cfg).exists():
        console.print(err_no_db(cfg.storage.database))
        raise typer.Exit(1)
    try:
        validate_api_key(cfg.embedding.model)
    except ConfigurationError as exc:
        provider = cfg.embedding.model.split("/")[0] if "/" in cfg.embedding.model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1) from exc

    if not yes:
        typer.confirm(
            f"Re-embed everything with {cfg.embedding.model} "
            f"({cfg.embedding.dimensions} dims)?",
            abort=True,
        )

    conn = open_db(cfg)
    try:
        counts = asyncio.run(
            reembed_all(
                Repository(conn),
                build_embedder(
                    cfg.embedding.model, cfg.embedding.dimensions, cfg.workers.call_timeout
                ),
                cfg,
            )
        )
    except CairnError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    finally:
        conn.close()
    console.print(
        f"[green]✓[/] Re-embedded {counts[CHUNKS]} chunks and {counts[ENTITIES]} entities"
    )
