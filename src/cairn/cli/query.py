"""cairn query: hybrid search over the knowledge graph."""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
from rich.markup import escape
from rich.table import Table

from cairn.cli.errors import err_no_api_key, err_no_db, render_error
from cairn.cli.runtime import console, db_path, default_owner, get_config, open_db
from cairn.db.repository import QueryFilters, Repository
from cairn.errors import CairnError, ConfigurationError
from cairn.providers.embedding import build_embedder
from cairn.providers.llm_client import validate_api_key
from cairn.providers.rerank import LiteLLMReranker
from cairn.rag.retriever import MatchKind, RetrievalResult, Retriever

_MATCH_STYLE = {
    MatchKind.BOTH: "green",
    MatchKind.VECTOR: "cyan",
    MatchKind.FULL_TEXT: "yellow",
    MatchKind.GRAPH_EXPANDED: "magenta",
}


def query_cmd(
    text: Annotated[str, typer.Argument(help="Query text.")],
    k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", min=1, help="Number of results (default: retrieval.top_k)."),
    ] = None,
    category: Annotated[
        list[str] | None,
        typer.Option("--category", "-c", help="Only content with this category (repeatable)."),
    ] = None,
    source: Annotated[
        list[str] | None,
        typer.Option("--source", "-s", help="Only this content id (repeatable)."),
    ] = None,
    rerank: Annotated[
        bool | None,
        typer.Option("--rerank/--no-rerank", help="Override retrieval.rerank_enabled."),
    ] = None,
) -> None:
    """Search chunks and entities; entity hits show their graph neighbours."""
    cfg = get_config()
    if not db_path(cfg).exists():
        console.print(err_no_db(cfg.storage.database))
        raise typer.Exit(1)
    if rerank is not None:
        cfg.retrieval.rerank_enabled = rerank

    try:
        validate_api_key(cfg.embedding.model)
    except ConfigurationError as exc:
        provider = cfg.embedding.model.split("/")[0] if "/" in cfg.embedding.model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1) from exc

    reranker = None
    if cfg.retrieval.rerank_enabled:
        reranker = LiteLLMReranker(cfg.models.rerank, timeout=cfg.workers.call_timeout)

    filters = QueryFilters(categories=list(category or []), source_ids=list(source or []))
    conn = open_db(cfg)
    try:
        retriever = Retriever(
            Repository(conn),
            build_embedder(cfg.embedding.model, cfg.embedding.dimensions, cfg.workers.call_timeout),
            cfg,
            reranker=reranker,
        )
        results = asyncio.run(retriever.query(text, default_owner(), k=k, filters=filters))
    except CairnError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    if not results:
        console.print("[dim]No results.[/]")
        return
    console.print(_results_table(text, results))


def _results_table(text: str, results: list[RetrievalResult]) -> Table:
    table = Table(title=f"Results for '{text}'", show_lines=True)
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Match")
    table.add_column("Kind")
    table.add_column("Title / Snippet")
    for rank, result in enumerate(results, start=1):
        style = _MATCH_STYLE[result.match_kind]
        body = _plain(result.snippet)
        if result.title:
            body = f"[bold]{escape(result.title)}[/]\n{body}"
        for neighbour in result.expanded:
            body += f"\n  [magenta]↳ {neighbour.relation}[/] {escape(neighbour.title)}"
        table.add_row(
            str(rank),
            f"{result.score:.4f}",
            f"[{style}]{result.match_kind.value}[/]",
            result.kind,
            body,
        )
    return table


def _plain(snippet: str) -> str:
    """Turn FTS5 <b> markers into rich markup; escape everything else."""
    return escape(snippet).replace("<b>", "[bold]").replace("</b>", "[/bold]")
