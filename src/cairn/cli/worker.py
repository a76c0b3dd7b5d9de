"""cairn worker: run the ingestion worker pool."""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer

from cairn.cli.errors import err_no_api_key
from cairn.cli.runtime import console, db_path, get_config
from cairn.errors import ConfigurationError
from cairn.ingest.worker import WorkerPool
from cairn.providers.embedding import build_embedder
from cairn.providers.llm_client import LiteLLMClient, validate_api_key


def worker_cmd(
    once: Annotated[
        bool,
        typer.Option("--once", help="Drain the queue, then exit."),
    ] = False,
    pool_size: Annotated[
        int | None,
        typer.Option("--pool-size", "-n", min=1, help="Concurrent workers (overrides config)."),
    ] = None,
) -> None:
    """Process queued ingestion tasks."""
    cfg = get_config()
    if pool_size is not None:
        cfg.workers.pool_size = pool_size

    for model in {cfg.embedding.model, cfg.models.extraction}:
        try:
            validate_api_key(model)
        except ConfigurationError as exc:
            provider = model.split("/")[0] if "/" in model else "openai"
            console.print(err_no_api_key(provider))
            raise typer.Exit(1) from exc

    pool = WorkerPool(
        db_path(cfg),
        cfg,
        llm=LiteLLMClient(timeout=cfg.workers.call_timeout),
        embedder=build_embedder(
            cfg.embedding.model, cfg.embedding.dimensions, cfg.workers.call_timeout
        ),
    )
    mode = "until the queue is empty" if once else "until interrupted (Ctrl+C)"
    console.print(f"[bold]Starting {cfg.workers.pool_size} worker(s)[/] {mode}")
    try:
        processed = asyncio.run(pool.run(once=once))
    except KeyboardInterrupt:
        console.print("[dim]Interrupted.[/]")
        raise typer.Exit(130)
    console.print(f"[green]✓[/] Processed {processed} task(s)")
