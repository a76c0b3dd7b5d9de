"""Cross-encoder reranking capability."""

from __future__ import annotations

from abc import ABC, abstractmethod

import litellm

from cairn.providers.llm_client import call_with_timeout


class Reranker(ABC):
    """Scores (query, candidate) pairs jointly."""

    @abstractmethod
    async def score(self, query: str, documents: list[str]) -> list[float]:
        """Return one relevance score per document, in input order (higher = better)."""


class LiteLLMReranker(Reranker):
    """Reranker backed by ``litellm.arerank`` (Cohere, Jina, Voyage, ...)."""

    def __init__(self, model: str, timeout: float = 60.0) -> None:
        self.model = model
        self.timeout = timeout

    async def score(self, query: str, documents: list[str]) -> list[float]:
        if not documents:
            return []
        response = await call_with_timeout(
            litellm.arerank(
                model=self.model, query=query, documents=documents, top_n=len(documents)
            ),
            model=self.model,
            timeout=self.timeout,
        )
        scores = [0.0] * len(documents)
        for result in response.results:
            scores[result["index"]] = float(result["relevance_score"])
        return scores
