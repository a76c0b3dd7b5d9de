"""Embedding capability.

``Embedder`` is the pluggable interface; ``EmbeddingClient`` wraps any
embedder and enforces the configured dimension on every returned vector, so a
provider or configuration change can never silently write vectors of the
wrong size.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import litellm

from cairn.errors import DimensionMismatchError, ProviderError
from cairn.providers.llm_client import call_with_timeout

# Models that accept an explicit output dimension.
_DIMENSION_AWARE_PREFIXES = ("openai/text-embedding-3", "text-embedding-3")


class Embedder(ABC):
    """Text → vector capability."""

    model: str

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, one vector per input, in input order."""

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]


class LiteLLMEmbedder(Embedder):
    """Embedder backed by ``litellm.aembedding``.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Requested output size, passed to models that support it.
        timeout: Seconds allowed per call.
    """

    def __init__(self, model: str, dimensions: int | None = None, timeout: float = 120.0) -> None:
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        kwargs = {}
        if self.dimensions and self.model.startswith(_DIMENSION_AWARE_PREFIXES):
            kwargs["dimensions"] = self.dimensions
        response = await call_with_timeout(
            litellm.aembedding(model=self.model, input=texts, num_retries=0, **kwargs),
            model=self.model,
            timeout=self.timeout,
        )
        data = sorted(response.data, key=lambda d: d["index"])
        return [list(d["embedding"]) for d in data]


class EmbeddingClient(Embedder):
    """Dimension-checking front for an Embedder.

    Raises:
        ProviderError: The provider returned a different number of vectors.
        DimensionMismatchError: A vector's length differs from ``dimensions``.
    """

    def __init__(self, inner: Embedder, dimensions: int) -> None:
        self.inner = inner
        self.model = inner.model
        self.dimensions = dimensions

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = await self.inner.embed_batch(texts)
        if len(vectors) != len(texts):
            raise ProviderError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise DimensionMismatchError(self.dimensions, len(vector), self.model)
        return vectors


def build_embedder(model: str, dimensions: int, timeout: float = 120.0) -> EmbeddingClient:
    """Default production embedder for a configured model and dimension."""
    return EmbeddingClient(LiteLLMEmbedder(model, dimensions, timeout), dimensions)
