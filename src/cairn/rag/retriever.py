"""Hybrid retriever: dense (sqlite-vec) + BM25 (FTS5), fused via RRF.

Stages:
  A. vector      embed the query; ANN over chunk and entity vectors
  B. full text   BM25 over chunks (with their content's title/category/context)
                 and entities
  C. fusion      score(d) = Σ_lists 1 / (k_rrf + rank_list(d)), ranks 1-based
  E. rerank      optional cross-encoder pass over the top ``rerank_window``
  D. expansion   1-hop graph neighbours attached to entity results

A and B run concurrently. If A fails with a transient/provider error the
query degrades to full-text results only; a dimension mismatch is never
degraded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from cairn.config import CairnConfig
from cairn.db.models import SearchHit
from cairn.db.repository import QueryFilters, Repository
from cairn.db.vectors import CHUNKS, ENTITIES, model_to_slug, vec_table_name
from cairn.errors import DimensionMismatchError, TransientIOError
from cairn.providers.embedding import Embedder
from cairn.providers.rerank import Reranker

logger = logging.getLogger(__name__)

_SNIPPET_CHARS = 240


class MatchKind(str, Enum):
    VECTOR = "vector"
    FULL_TEXT = "full_text"
    BOTH = "both"
    GRAPH_EXPANDED = "graph_expanded"


@dataclass
class RetrievalResult:
    """One ranked result.

    Attributes:
        kind: "chunk" or "entity".
        id: Chunk or entity id.
        source_id: Content the record came from.
        text: Full chunk text, or "name: description" for entities.
        title: Content title or entity name.
        snippet: Highlighted span from full text, else the start of ``text``.
        score: RRF score, or the rerank score when the result was reranked.
        match_kind: Which searches found the result.
        vector_rank: 1-based rank in the vector list (None if absent).
        fts_rank: 1-based rank in the full-text list (None if absent).
        reranked: Whether ``score`` comes from the cross-encoder.
        expanded: Graph neighbours of an entity result (not ranked).
        relation: For expanded results, "<direction>:<relationship type>".
    """

    kind: str
    id: str
    source_id: str
    text: str
    title: str
    snippet: str
    score: float
    match_kind: MatchKind
    vector_rank: int | None = None
    fts_rank: int | None = None
    reranked: bool = False
    expanded: list["RetrievalResult"] = field(default_factory=list)
    relation: str | None = None

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"


# ------------------------------------------------------------------
# RRF fusion
# ------------------------------------------------------------------


def rrf_fuse(
    vector_hits: Sequence[SearchHit],
    fts_hits: Sequence[SearchHit],
    k_rrf: int = 60,
) -> list[RetrievalResult]:
    """Combine the vector and full-text ranked lists via Reciprocal Rank Fusion.

    A record found by one list is scored from that list alone. Ties are
    broken by the best single-list rank, then by first appearance (vector
    list before full-text list).
    """
    entries: dict[str, dict] = {}
    order = 0
    for list_name, hits in (("vector", vector_hits), ("fts", fts_hits)):
        for rank, hit in enumerate(hits, start=1):
            key = f"{hit.kind}:{hit.id}"
            entry = entries.get(key)
            if entry is None:
                entry = {"hit": hit, "order": order, "vector": None, "fts": None, "highlight": None}
                entries[key] = entry
                order += 1
            if entry[list_name] is None:
                entry[list_name] = rank
            if list_name == "fts" and hit.highlight and entry["highlight"] is None:
                entry["highlight"] = hit.highlight

    results: list[tuple[float, int, int, RetrievalResult]] = []
    for entry in entries.values():
        hit: SearchHit = entry["hit"]
        v_rank, f_rank = entry["vector"], entry["fts"]
        score = 0.0
        if v_rank is not None:
            score += 1.0 / (k_rrf + v_rank)
        if f_rank is not None:
            score += 1.0 / (k_rrf + f_rank)
        if v_rank is not None and f_rank is not None:
            match = MatchKind.BOTH
        elif v_rank is not None:
            match = MatchKind.VECTOR
        else:
            match = MatchKind.FULL_TEXT
        best = min(r for r in (v_rank, f_rank) if r is not None)
        results.append(
            (
                score,
                best,
                entry["order"],
                RetrievalResult(
                    kind=hit.kind,
                    id=hit.id,
                    source_id=hit.source_id,
                    text=hit.text,
                    title=hit.title,
                    snippet=entry["highlight"] or _snippet(hit.text),
                    score=score,
                    match_kind=match,
                    vector_rank=v_rank,
                    fts_rank=f_rank,
                ),
            )
        )

    results.sort(key=lambda r: (-r[0], r[1], r[2]))
    return [r[3] for r in results]


def _snippet(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= _SNIPPET_CHARS:
        return text
    return text[:_SNIPPET_CHARS].rsplit(" ", 1)[0] + "…"


# ------------------------------------------------------------------
# Retriever
# ------------------------------------------------------------------


class Retriever:
    """Answer queries for one owner over the shared graph store.

    Args:
        repo: Graph store.
        embedder: Query embedder (same model as ingestion).
        config: Embedding model/dimension and retrieval settings.
        reranker: Cross-encoder; only used when ``rerank_enabled``.
    """

    def __init__(
        self,
        repo: Repository,
        embedder: Embedder,
        config: CairnConfig,
        reranker: Reranker | None = None,
    ) -> None:
        self.repo = repo
        self.embedder = embedder
        self.config = config
        self.reranker = reranker
        slug = model_to_slug(config.embedding.model)
        self.chunk_table = vec_table_name(CHUNKS, slug)
        self.entity_table = vec_table_name(ENTITIES, slug)

    async def query(
        self,
        text: str,
        owner: str,
        k: int | None = None,
        filters: QueryFilters | None = None,
    ) -> list[RetrievalResult]:
        """Return up to *k* ranked results for *text*, best first.

        Raises:
            DimensionMismatchError: Stored vectors do not match the configured
                embedding dimension (re-embed first).
        """
        cfg = self.config.retrieval
        k = cfg.top_k if k is None else k

        vector_hits, fts_hits = await asyncio.gather(
            self._vector_stage(text, owner, filters),
            self._fts_stage(text, owner, filters),
        )
        fused = rrf_fuse(vector_hits, fts_hits, cfg.rrf_k)
        logger.debug(
            "Fusion: %d vector + %d full-text hits -> %d results",
            len(vector_hits),
            len(fts_hits),
            len(fused),
        )

        if cfg.rerank_enabled and self.reranker is not None and fused:
            fused = await self._rerank(text, fused, cfg.rerank_window)

        results = fused[:k]
        await self._expand(results, owner)
        return results

    # ------------------------------------------------------------------
    # Stage A: vector
    # ------------------------------------------------------------------

    async def _vector_stage(
        self, text: str, owner: str, filters: QueryFilters | None
    ) -> list[SearchHit]:
        cfg = self.config.retrieval
        configured = self.config.embedding.dimensions
        for table in (self.chunk_table, self.entity_table):
            stored = await asyncio.to_thread(self.repo.vector_table_dimensions, table)
            if stored is not None and stored != configured:
                raise DimensionMismatchError(stored, configured, table)
        try:
            embedding = await self.embedder.embed(text)
            chunk_hits, entity_hits = await asyncio.gather(
                *(
                    asyncio.to_thread(
                        self.repo.search_vec, table, owner, embedding, cfg.vector_take, filters
                    )
                    for table in (self.chunk_table, self.entity_table)
                )
            )
        except DimensionMismatchError:
            raise
        except Exception as exc:
            logger.warning(
                "Vector search unavailable, using full-text results only: %s", exc, exc_info=True
            )
            return []

        hits = [h for h in chunk_hits + entity_hits if h.score >= cfg.min_vector_similarity]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[: cfg.vector_take]

    # ------------------------------------------------------------------
    # Stage B: full text
    # ------------------------------------------------------------------

    async def _fts_stage(
        self, text: str, owner: str, filters: QueryFilters | None
    ) -> list[SearchHit]:
        take = self.config.retrieval.fts_take
        chunk_hits, entity_hits = await asyncio.gather(
            asyncio.to_thread(self.repo.search_chunks_fts, owner, text, take, filters),
            asyncio.to_thread(self.repo.search_entities_fts, owner, text, take, filters),
        )
        hits = chunk_hits + entity_hits
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:take]

    # ------------------------------------------------------------------
    # Stage E: rerank
    # ------------------------------------------------------------------

    async def _rerank(
        self, text: str, fused: list[RetrievalResult], window: int
    ) -> list[RetrievalResult]:
        head, tail = fused[:window], fused[window:]
        try:
            scores = await self.reranker.score(text, [r.text for r in head])
        except (TransientIOError, asyncio.TimeoutError) as exc:
            logger.warning("Rerank failed, keeping fusion order: %s", exc)
            return fused
        for result, score in zip(head, scores):
            result.score = score
            result.reranked = True
        # stable: equal scores keep fusion order
        head = sorted(head, key=lambda r: r.score, reverse=True)
        return head + tail

    # ------------------------------------------------------------------
    # Stage D: graph expansion
    # ------------------------------------------------------------------

    async def _expand(self, results: list[RetrievalResult], owner: str) -> None:
        limit = self.config.retrieval.graph_neighbor_limit
        if limit <= 0:
            return
        for result in results:
            if result.kind != "entity":
                continue
            neighbors = await asyncio.to_thread(self.repo.neighbors, owner, result.id, limit)
            result.expanded = [
                RetrievalResult(
                    kind="entity",
                    id=n.entity.id,
                    source_id=n.entity.source_id,
                    text=f"{n.entity.name}: {n.entity.description}",
                    title=n.entity.name,
                    snippet=_snippet(n.entity.description or n.entity.name),
                    score=0.0,
                    match_kind=MatchKind.GRAPH_EXPANDED,
                    relation=f"{n.direction}:{n.rel_type}",
                )
                for n in neighbors
            ]
