"""Shared pytest fixtures.

Model providers are replaced by deterministic fakes:

* FakeEmbedder hashes lowercase word tokens into a fixed-size bag-of-words
  vector (L2-normalised), so texts sharing words have high cosine similarity.
* FakeLLM replays scripted completion replies and canned vision/transcription
  output.
* FakePageFetcher serves pages from a dict instead of the network.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from pathlib import Path

import pytest

from cairn.config import CairnConfig
from cairn.db.connection import Database
from cairn.db.repository import Repository
from cairn.db.schema import initialize
from cairn.db.tasks import TaskQueue
from cairn.errors import ProviderError
from cairn.ingest.web import FetchedPage
from cairn.providers.embedding import Embedder, EmbeddingClient
from cairn.providers.llm_client import LLMClient

TEST_DIMS = 256
TEST_MODEL = "openai/text-embedding-3-small"

DEFAULT_EXTRACTION = {
    "entities": [
        {"name": "Rust", "type": "Concept", "description": "A systems programming language."},
        {
            "name": "Borrow checker",
            "type": "Concept",
            "description": "Rust compiler pass that enforces ownership rules.",
        },
    ],
    "relationships": [{"from": "Borrow checker", "to": "Rust", "type": "part of"}],
}


class FakeEmbedder(Embedder):
    """Deterministic bag-of-words embedder.

    Args:
        dimensions: Vector length.
        fail_times: Number of leading calls that raise ProviderError.
    """

    def __init__(self, dimensions: int = TEST_DIMS, fail_times: int = 0) -> None:
        self.model = TEST_MODEL
        self.dimensions = dimensions
        self.fail_times = fail_times
        self.calls = 0

    def vector(self, text: str) -> list[float]:
        v = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimensions
            v[bucket] += 1.0
        norm = math.sqrt(sum(x * x for x in v))
        if norm == 0:
            v[0] = 1.0
            return v
        return [x / norm for x in v]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("embedding provider unavailable (injected)")
        return [self.vector(t) for t in texts]


class FakeLLM(LLMClient):
    """Scripted LLMClient. ``replies`` are consumed in order; the last one repeats."""

    def __init__(self, replies: list[str] | None = None) -> None:
        self.replies = list(replies or [json.dumps(DEFAULT_EXTRACTION)])
        self.image_text = "A whiteboard sketch of a vector index."
        self.transcript = "Notes on approximate nearest neighbour search."
        self.calls: list[dict] = []

    async def complete(
        self, messages, *, model, response_format=None, max_tokens=2048, temperature=0.0
    ) -> str:
        self.calls.append(
            {"kind": "complete", "model": model, "messages": messages, "format": response_format}
        )
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def describe_image(self, image, mime_type, prompt, *, model) -> str:
        self.calls.append({"kind": "image", "model": model, "mime_type": mime_type})
        return self.image_text

    async def transcribe(self, path, *, model) -> str:
        self.calls.append({"kind": "transcribe", "model": model, "path": Path(path)})
        return self.transcript


class FakePageFetcher:
    """Serves ``pages`` (url → (title, text)); unknown URLs raise ``error``."""

    def __init__(self, pages: dict[str, tuple[str, str]] | None = None) -> None:
        self.pages = dict(pages or {})
        self.error: Exception | None = None
        self.fetched: list[str] = []

    def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        if self.error is not None:
            raise self.error
        title, text = self.pages[url]
        return FetchedPage(url=url, title=title, text=text)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".cairn.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def config(tmp_path) -> CairnConfig:
    """Small, fast, deterministic configuration rooted in tmp_path."""
    cfg = CairnConfig()
    cfg.embedding.model = TEST_MODEL
    cfg.embedding.dimensions = TEST_DIMS
    cfg.queue.retry_base_delay = 0.0
    cfg.queue.jitter = 0.0
    cfg.workers.pool_size = 2
    cfg.workers.poll_interval = 0.01
    cfg.retrieval.min_vector_similarity = 0.1
    cfg.storage.database = str(tmp_path / ".cairn.db")
    cfg.storage.files_dir = str(tmp_path / "files")
    return cfg


@pytest.fixture
def repo(tmp_db) -> Repository:
    return Repository(tmp_db)


@pytest.fixture
def queue(tmp_db, config) -> TaskQueue:
    return TaskQueue(tmp_db, config.queue)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def embedder(fake_embedder) -> EmbeddingClient:
    return EmbeddingClient(fake_embedder, TEST_DIMS)


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fetcher() -> FakePageFetcher:
    return FakePageFetcher()
