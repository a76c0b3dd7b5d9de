"""Async worker pool polling the task queue.

Each worker owns a database connection, a TaskQueue, a Repository and an
IngestionPipeline; the database file is the only thing the workers share.
Pool size bounds how many tasks (and therefore external calls) run at once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from pathlib import Path

from cairn.config import CairnConfig
from cairn.db.connection import Database
from cairn.db.repository import Repository
from cairn.db.schema import initialize
from cairn.db.tasks import TaskQueue
from cairn.ingest.extractor import KnowledgeExtractor
from cairn.ingest.files import FileStore
from cairn.ingest.normalizer import Normalizer
from cairn.ingest.pipeline import IngestionPipeline
from cairn.ingest.web import PageFetcher
from cairn.providers.embedding import Embedder
from cairn.providers.llm_client import LLMClient

logger = logging.getLogger(__name__)


class WorkerPool:
    """Run ``config.workers.pool_size`` concurrent ingestion loops.

    Args:
        db_path: SQLite database file.
        config: Full configuration, threaded into every component.
        llm: Completion/vision/transcription capability (shared).
        embedder: Embedding capability (shared).
        fetcher_factory: Builds the page fetcher for each worker.
    """

    def __init__(
        self,
        db_path: Path | str,
        config: CairnConfig,
        llm: LLMClient,
        embedder: Embedder,
        fetcher_factory: Callable[[], PageFetcher] | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.config = config
        self.llm = llm
        self.embedder = embedder
        self.fetcher_factory = fetcher_factory
        self._stop = asyncio.Event()
        self.processed = 0

    def stop(self) -> None:
        """Ask every worker to exit after its current task."""
        self._stop.set()

    async def run(self, *, once: bool = False) -> int:
        """Run workers until stop() is called, or until the queue is idle if *once*.

        Returns:
            Number of tasks processed.
        """
        conn = Database(self.db_path).connect()
        try:
            initialize(conn)
        finally:
            conn.close()

        workers = [
            asyncio.create_task(self._worker(f"w{i}-{uuid.uuid4().hex[:6]}", once))
            for i in range(self.config.workers.pool_size)
        ]
        await asyncio.gather(*workers)
        return self.processed

    async def run_until_idle(self) -> int:
        """Process tasks until none is claimable, then return the count."""
        return await self.run(once=True)

    async def _worker(self, worker_id: str, once: bool) -> None:
        conn = Database(self.db_path).connect()
        try:
            queue = TaskQueue(conn, self.config.queue)
            repo = Repository(conn)
            pipeline = IngestionPipeline(
                queue=queue,
                repo=repo,
                normalizer=Normalizer(
                    self.llm,
                    FileStore(repo, self.config.storage.files_dir),
                    self.config,
                    fetcher=self.fetcher_factory() if self.fetcher_factory else None,
                ),
                embedder=self.embedder,
                extractor=KnowledgeExtractor(
                    self.llm, self.config.models.extraction, self.config.prompts.extraction
                ),
                config=self.config,
            )
            logger.debug("Worker %s started", worker_id)
            while not self._stop.is_set():
                task = None
                try:
                    task = await asyncio.to_thread(queue.claim_next, worker_id)
                    if task is None:
                        if once:
                            break
                        await self._idle()
                        continue
                    await pipeline.process(task)
                    self.processed += 1
                except Exception:
                    logger.exception(
                        "Worker %s hit an error, backing off",
                        worker_id,
                        extra={"task_id": task.id if task else None},
                    )
                    await self._idle()
        finally:
            conn.close()
            logger.debug("Worker %s stopped", worker_id)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.config.workers.poll_interval)
        except asyncio.TimeoutError:
            pass
