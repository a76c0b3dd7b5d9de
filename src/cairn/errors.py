"""Error taxonomy shared by the ingestion pipeline and the retrieval engine.

Every exception raised across a stage boundary derives from :class:`CairnError`
and carries a ``retryable`` flag. The orchestrator never inspects messages to
decide on retries; it calls :func:`classify_failure`.
"""

from __future__ import annotations

import asyncio


class CairnError(Exception):
    """Base class for all classified errors."""

    retryable: bool = False


# ---------------------------------------------------------------------------
# Transient I/O (retried with backoff)
# ---------------------------------------------------------------------------


class TransientIOError(CairnError):
    """Network failure, timeout, or rate limit. Retried with backoff."""

    retryable = True


class FetchError(TransientIOError):
    """A URL could not be fetched (DNS, connect, read timeout, HTTP error)."""


class ProviderError(TransientIOError):
    """An upstream model provider call failed or timed out."""


# ---------------------------------------------------------------------------
# Validation (terminal)
# ---------------------------------------------------------------------------


class ValidationError(CairnError):
    """Input or output that will not become valid by retrying."""


class ExtractError(ValidationError):
    """A fetched document contained no readable content."""


class UnsupportedFormatError(ValidationError):
    """A file type or file content the normalizer cannot turn into text."""


class SchemaValidationError(ValidationError):
    """Structured model output did not match the extraction schema."""


class DimensionMismatchError(ValidationError):
    """A vector's length differs from the dimension of its index."""

    def __init__(self, expected: int, actual: int, index: str = "") -> None:
        self.expected = expected
        self.actual = actual
        self.index = index
        where = f" for index '{index}'" if index else ""
        super().__init__(
            f"Embedding dimension mismatch{where}: expected {expected}, got {actual}. "
            "Stored vectors must be re-embedded after a dimension change."
        )


# ---------------------------------------------------------------------------
# Configuration / ownership (terminal)
# ---------------------------------------------------------------------------


class ConfigurationError(CairnError):
    """Missing credentials, unknown model, or an otherwise unusable setup."""


class OwnershipError(CairnError):
    """A caller tried to act on a record belonging to another owner."""


class NotFoundError(CairnError):
    """The requested record does not exist."""


class TaskCancelled(CairnError):
    """Raised inside the pipeline when a cancellation request is observed."""


class LeaseLost(CairnError):
    """The worker no longer holds the task; another worker reclaimed it."""


def classify_failure(exc: BaseException) -> tuple[str, bool]:
    """Return ``(message, retryable)`` for an exception escaping a pipeline stage.

    Timeouts are transient. Unclassified exceptions are treated as transient
    so that a bug in one stage does not silently discard a task; they still
    hit the attempt cap.
    """
    if isinstance(exc, CairnError):
        return str(exc) or type(exc).__name__, exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "Operation timed out", True
    if isinstance(exc, (ConnectionError, OSError)):
        return f"I/O error: {exc}", True
    return f"{type(exc).__name__}: {exc}", True
