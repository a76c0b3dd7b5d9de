"""Ingestion pipeline: drive one claimed task through every stage.

Stage order under InProgress:
  cleanup → normalize → chunk → embed chunks → persist content + chunks
  → related entities → extract → embed entities → persist graph → complete

Stages run strictly in sequence. A failure anywhere is classified by
cairn.errors.classify_failure and reported to the queue, which decides
between a backoff retry and a terminal Error. A re-run starts by deleting
whatever a previous attempt of the same task persisted, so no stage has to
be resumable on its own.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from cairn.config import CairnConfig
from cairn.db.models import (
    Completed,
    Content,
    Entity,
    IngestionTask,
    Relationship,
    TaskStatus,
    normalize_name,
)
from cairn.db.repository import Repository
from cairn.db.tasks import TaskQueue
from cairn.db.vectors import CHUNKS, ENTITIES
from cairn.errors import CairnError, ExtractError, LeaseLost, TaskCancelled, classify_failure
from cairn.ingest.chunker import TextChunker
from cairn.ingest.extractor import ExtractionResult, KnowledgeExtractor
from cairn.ingest.normalizer import Normalizer
from cairn.providers.embedding import Embedder

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    """What one successful run persisted."""

    content_id: str
    chunks: int
    entities_created: int
    entities_merged: int
    relationships_created: int


def entity_embedding_text(name: str, description: str) -> str:
    return f"{name}: {description}" if description else name


class IngestionPipeline:
    """Orchestrates one task at a time for one worker.

    Args:
        queue: Task queue on the worker's connection.
        repo: Graph store on the worker's connection.
        normalizer: Payload → text adapter.
        embedder: Dimension-checking embedding capability.
        extractor: Knowledge extractor.
        config: Chunking, retrieval and embedding settings.
    """

    def __init__(
        self,
        queue: TaskQueue,
        repo: Repository,
        normalizer: Normalizer,
        embedder: Embedder,
        extractor: KnowledgeExtractor,
        config: CairnConfig,
    ) -> None:
        self.queue = queue
        self.repo = repo
        self.normalizer = normalizer
        self.embedder = embedder
        self.extractor = extractor
        self.config = config
        self.chunker = TextChunker(config.chunking.chunk_size, config.chunking.overlap)

    async def process(self, task: IngestionTask) -> TaskStatus | None:
        """Run *task* to completion or failure.

        Returns:
            The task's new status, or None if the task was cancelled or
            another worker took it over.
        """
        log_extra = {"task_id": task.id, "attempt": task.attempts, "owner": task.owner}
        worker = task.worker_id
        try:
            try:
                report = await self._run(task)
            except (TaskCancelled, LeaseLost):
                raise
            except Exception as exc:
                message, retryable = classify_failure(exc)
                if not isinstance(exc, CairnError):
                    logger.exception("Unexpected error in pipeline", extra=log_extra)
                return await asyncio.to_thread(
                    self.queue.fail, task.id, message, retryable, worker_id=worker
                )
            await asyncio.to_thread(self.queue.complete, task.id, worker)
        except TaskCancelled:
            await asyncio.to_thread(self.queue.drop, task.id, worker)
            logger.info("Task cancelled between stages", extra=log_extra)
            return None
        except LeaseLost:
            logger.warning("Lease lost, leaving the task to its new worker", extra=log_extra)
            return None

        logger.info(
            "Task completed: %d chunks, %d new / %d merged entities, %d relationships",
            report.chunks,
            report.entities_created,
            report.entities_merged,
            report.relationships_created,
            extra=log_extra,
        )
        return Completed()

    async def _checkpoint(self, task: IngestionTask, stage: str) -> None:
        if not await asyncio.to_thread(self.queue.heartbeat, task.id, task.worker_id):
            raise LeaseLost(f"Task {task.id} lost its lease before {stage}")
        if await asyncio.to_thread(self.queue.is_cancel_requested, task.id):
            raise TaskCancelled(f"Task {task.id} cancelled before {stage}")
        logger.info(
            "Stage: %s", stage, extra={"task_id": task.id, "attempt": task.attempts}
        )

    async def _run(self, task: IngestionTask) -> IngestReport:
        payload = task.payload
        owner = task.owner
        emb = self.config.embedding

        await self._checkpoint(task, "cleanup")
        removed = await asyncio.to_thread(self.repo.delete_contents_for_task, task.id)
        if removed:
            logger.info("Removed %d content(s) from an earlier attempt", removed)
        chunk_table = await asyncio.to_thread(
            self.repo.ensure_vector_table, CHUNKS, emb.model, emb.dimensions
        )
        entity_table = await asyncio.to_thread(
            self.repo.ensure_vector_table, ENTITIES, emb.model, emb.dimensions
        )

        await self._checkpoint(task, "normalize")
        normalized = await self.normalizer.normalize(payload, owner)
        if not normalized.text.strip():
            raise ExtractError("Content is empty after normalization")

        await self._checkpoint(task, "chunk")
        content_id = uuid.uuid4().hex
        chunks = self.chunker.chunk(content_id, owner, normalized.text)

        await self._checkpoint(task, "embed chunks")
        vectors = await self.embedder.embed_batch([c.text for c in chunks])
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector

        await self._checkpoint(task, "persist content")
        content = Content(
            id=content_id,
            owner=owner,
            text=normalized.text,
            category=payload.category,
            context=payload.instructions,
            title=normalized.title,
            url=normalized.provenance.url,
            file_id=normalized.provenance.file_id,
            task_id=task.id,
        )
        await asyncio.to_thread(self.repo.add_content, content, chunks, chunk_table)

        await self._checkpoint(task, "extract")
        related = await self._related_entities(owner, entity_table, vectors[0] if vectors else None)
        result = await self.extractor.extract(
            normalized.text, payload.category, payload.instructions, related
        )

        await self._checkpoint(task, "persist graph")
        created, merged, rels = await self._persist_graph(result, owner, content_id, entity_table)

        return IngestReport(
            content_id=content_id,
            chunks=len(chunks),
            entities_created=created,
            entities_merged=merged,
            relationships_created=rels,
        )

    async def _related_entities(
        self, owner: str, entity_table: str, vector: list[float] | None
    ) -> list[Entity]:
        take = self.config.retrieval.related_entity_take
        if vector is None or take <= 0:
            return []
        hits = await asyncio.to_thread(self.repo.search_vec, entity_table, owner, vector, take)
        related: list[Entity] = []
        for hit in hits:
            entity = await asyncio.to_thread(self.repo.get_entity, hit.id, owner)
            if entity is not None:
                related.append(entity)
        return related

    async def _persist_graph(
        self, result: ExtractionResult, owner: str, source_id: str, entity_table: str
    ) -> tuple[int, int, int]:
        """Upsert entities, then relationships between the stored records."""
        vectors = await self.embedder.embed_batch(
            [entity_embedding_text(e.name, e.description) for e in result.entities]
        )

        by_name: dict[str, Entity] = {}
        created = merged = 0
        for extracted, vector in zip(result.entities, vectors):
            outcome = await asyncio.to_thread(
                self.repo.upsert_entity,
                Entity(
                    id=uuid.uuid4().hex,
                    owner=owner,
                    source_id=source_id,
                    name=extracted.name,
                    description=extracted.description,
                    entity_type=extracted.type,
                    embedding=vector,
                ),
                entity_table,
            )
            if outcome.created:
                created += 1
            else:
                merged += 1
            first = by_name.setdefault(normalize_name(extracted.name), outcome.entity)
            if first.id != outcome.entity.id:
                logger.warning(
                    "Entity %r declared as both %s and %s; relationships use %s",
                    extracted.name,
                    first.entity_type.value,
                    extracted.type.value,
                    first.entity_type.value,
                    extra={"owner": owner},
                )

        rels_created = 0
        for rel in result.relationships:
            _, was_created = await asyncio.to_thread(
                self.repo.add_relationship,
                Relationship(
                    id=uuid.uuid4().hex,
                    owner=owner,
                    from_id=by_name[normalize_name(rel.from_)].id,
                    to_id=by_name[normalize_name(rel.to)].id,
                    rel_type=rel.type.strip(),
                    source_id=source_id,
                ),
            )
            rels_created += int(was_created)
        return created, merged, rels_created


# ---------------------------------------------------------------------------
# Re-embedding
# ---------------------------------------------------------------------------


async def reembed_all(
    repo: Repository, embedder: Embedder, config: CairnConfig, batch_size: int = 64
) -> dict[str, int]:
    """Regenerate every chunk and entity vector with the configured model.

    All vectors are computed and length-checked before any index is touched;
    a provider failure leaves the stored vectors as they were. Existing
    indexes for the configured model are then dropped and rebuilt at the
    configured dimension.

    Returns:
        Number of vectors written per kind.
    """
    emb = config.embedding
    chunks = await asyncio.to_thread(repo.all_chunks)
    entities = await asyncio.to_thread(repo.all_entities)

    chunk_vectors = await _embed_in_batches(embedder, [c.text for c in chunks], batch_size)
    entity_vectors = await _embed_in_batches(
        embedder,
        [entity_embedding_text(e.name, e.description) for e in entities],
        batch_size,
    )

    counts: dict[str, int] = {}
    for kind, records, vectors in (
        (CHUNKS, chunks, chunk_vectors),
        (ENTITIES, entities, entity_vectors),
    ):
        await asyncio.to_thread(
            repo.rebuild_vector_index,
            kind,
            emb.model,
            emb.dimensions,
            [(r.rowid, r.owner, v) for r, v in zip(records, vectors)],
        )
        counts[kind] = len(records)
    logger.info(
        "Re-embedded %d chunks and %d entities with %s (%d dims)",
        counts[CHUNKS],
        counts[ENTITIES],
        emb.model,
        emb.dimensions,
    )
    return counts


async def _embed_in_batches(
    embedder: Embedder, texts: list[str], batch_size: int
) -> list[list[float]]:
    vectors: list[list[float]] = []
    for start in range(0, len(texts), batch_size):
        vectors.extend(await embedder.embed_batch(texts[start:start + batch_size]))
    return vectors
