"""Domain models for the Cairn database layer.

Payload and status are tagged variants: one frozen dataclass per case and a
``Union`` alias. Consumers dispatch with ``isinstance`` and end with a
``TypeError`` for an unhandled case. The loosely typed JSON/column form only
exists in the ``*_to_row`` / ``*_from_row`` helpers at the storage boundary.
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@dataclass
class FileRef:
    id: str
    owner: str
    sha256: str
    path: str
    mime_type: str
    file_name: str = ""
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Ingestion payload (Text | Url | File)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextPayload:
    text: str
    category: str
    instructions: str = ""


@dataclass(frozen=True)
class UrlPayload:
    url: str
    category: str
    instructions: str = ""


@dataclass(frozen=True)
class FilePayload:
    file_id: str
    category: str
    instructions: str = ""


Payload = Union[TextPayload, UrlPayload, FilePayload]


def payload_to_json(payload: Payload) -> str:
    if isinstance(payload, TextPayload):
        body: dict[str, Any] = {"kind": "text", "text": payload.text}
    elif isinstance(payload, UrlPayload):
        body = {"kind": "url", "url": payload.url}
    elif isinstance(payload, FilePayload):
        body = {"kind": "file", "file_id": payload.file_id}
    else:
        raise TypeError(f"Unknown payload type: {type(payload).__name__}")
    body["category"] = payload.category
    body["instructions"] = payload.instructions
    return json.dumps(body)


def payload_from_json(raw: str) -> Payload:
    data = json.loads(raw)
    kind = data.get("kind")
    category = data.get("category", "")
    instructions = data.get("instructions", "")
    if kind == "text":
        return TextPayload(text=data["text"], category=category, instructions=instructions)
    if kind == "url":
        return UrlPayload(url=data["url"], category=category, instructions=instructions)
    if kind == "file":
        return FilePayload(file_id=data["file_id"], category=category, instructions=instructions)
    raise ValueError(f"Unknown stored payload kind: {kind!r}")


# ---------------------------------------------------------------------------
# Task status (Pending | InProgress | Completed | Error)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pending:
    retry_at: float | None = None  # unix time; None = eligible now


@dataclass(frozen=True)
class InProgress:
    attempts: int


@dataclass(frozen=True)
class Completed:
    pass


@dataclass(frozen=True)
class Error:
    message: str


TaskStatus = Union[Pending, InProgress, Completed, Error]

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


def is_terminal(status: TaskStatus) -> bool:
    if isinstance(status, (Completed, Error)):
        return True
    if isinstance(status, (Pending, InProgress)):
        return False
    raise TypeError(f"Unknown task status: {type(status).__name__}")


def status_label(status: TaskStatus) -> str:
    if isinstance(status, Pending):
        return STATUS_PENDING
    if isinstance(status, InProgress):
        return STATUS_IN_PROGRESS
    if isinstance(status, Completed):
        return STATUS_COMPLETED
    if isinstance(status, Error):
        return STATUS_ERROR
    raise TypeError(f"Unknown task status: {type(status).__name__}")


def status_from_row(
    label: str, attempts: int, error_message: str | None, retry_at: float | None
) -> TaskStatus:
    if label == STATUS_PENDING:
        return Pending(retry_at=retry_at)
    if label == STATUS_IN_PROGRESS:
        return InProgress(attempts=attempts)
    if label == STATUS_COMPLETED:
        return Completed()
    if label == STATUS_ERROR:
        return Error(message=error_message or "")
    raise ValueError(f"Unknown stored task status: {label!r}")


@dataclass
class IngestionTask:
    id: str
    owner: str
    payload: Payload
    status: TaskStatus
    attempts: int = 0
    cancel_requested: bool = False
    worker_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


# ---------------------------------------------------------------------------
# Content, chunks, graph
# ---------------------------------------------------------------------------


@dataclass
class Content:
    id: str
    owner: str
    text: str
    category: str
    context: str = ""
    title: str = ""
    url: str | None = None
    file_id: str | None = None
    task_id: str | None = None
    created_at: str | None = None


@dataclass
class Chunk:
    id: str
    source_id: str
    owner: str
    chunk_index: int
    text: str
    start: int = 0
    end: int = 0
    embedding: list[float] | None = None
    rowid: int | None = None  # set after insert; key into FTS/vec tables


class EntityType(str, Enum):
    IDEA = "Idea"
    PROJECT = "Project"
    DOCUMENT = "Document"
    PAGE = "Page"
    TEXT_SNIPPET = "TextSnippet"
    PERSON = "Person"
    CONCEPT = "Concept"

    @classmethod
    def parse(cls, value: str) -> "EntityType":
        """Case-insensitive lookup; raises ValueError for names outside the set."""
        key = re.sub(r"[\s_\-]", "", value).lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(
            f"Unknown entity type '{value}'. Allowed: {', '.join(m.value for m in cls)}"
        )


_TRAILING_PUNCT = ".,;:"


def normalize_name(name: str) -> str:
    """Identity key for entity names: NFKC, casefolded, whitespace collapsed."""
    text = unicodedata.normalize("NFKC", name)
    text = " ".join(text.split()).casefold()
    return text.rstrip(_TRAILING_PUNCT).strip()


@dataclass
class Entity:
    id: str
    owner: str
    source_id: str
    name: str
    description: str
    entity_type: EntityType
    metadata: dict[str, Any] | None = None
    embedding: list[float] | None = None
    rowid: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def norm_name(self) -> str:
        return normalize_name(self.name)


@dataclass
class Relationship:
    id: str
    owner: str
    from_id: str
    to_id: str
    rel_type: str
    source_id: str
    created_at: str | None = None


@dataclass
class UpsertOutcome:
    """Result of an entity upsert: the canonical record and what happened."""

    entity: Entity
    created: bool
    description_replaced: bool = False


@dataclass
class Neighbor:
    """A 1-hop neighbour reached through a relationship edge."""

    entity: Entity
    rel_type: str
    direction: str  # "out" | "in"


@dataclass
class SearchHit:
    """A single row from a vector or full-text search, before fusion."""

    kind: str  # "chunk" | "entity"
    id: str
    source_id: str
    text: str
    score: float
    title: str = ""
    highlight: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
