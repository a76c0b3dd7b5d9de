"""Per-model sqlite-vec virtual table management.

One vec0 table per (record kind, embedding model). The dimension each table
was created with is recorded in ``vector_indexes``; a configured dimension
that differs from the recorded one is an error until the index is rebuilt.
"""

from __future__ import annotations

import re
import sqlite3

from cairn.errors import DimensionMismatchError

CHUNKS = "chunks"
ENTITIES = "entities"
_KINDS = (CHUNKS, ENTITIES)


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(kind: str, model_slug: str) -> str:
    """Return the full vec table name for a record kind and model slug."""
    if kind not in _KINDS:
        raise ValueError(f"Unknown vector index kind '{kind}'")
    return f"vec_{kind}_{model_slug}"


def recorded_dimensions(conn: sqlite3.Connection, table: str) -> int | None:
    """Return the dimension *table* was created with, or None if it doesn't exist."""
    row = conn.execute(
        "SELECT dimensions FROM vector_indexes WHERE name = ?", (table,)
    ).fetchone()
    return int(row[0]) if row else None


def ensure_vec_table(
    conn: sqlite3.Connection, kind: str, model: str, dimensions: int
) -> str:
    """Create vec_{kind}_{model_slug} if it doesn't already exist.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        kind: ``"chunks"`` or ``"entities"``.
        model: Embedding model identifier.
        dimensions: Configured embedding dimension.

    Returns:
        The table name.

    Raises:
        DimensionMismatchError: If the table exists with another dimension.
    """
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")
    slug = model_to_slug(model)
    table = vec_table_name(kind, slug)

    existing = recorded_dimensions(conn, table)
    if existing is not None:
        if existing != dimensions:
            raise DimensionMismatchError(existing, dimensions, table)
        return table

    conn.execute(
        f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0("
        f"owner text partition key, embedding float[{dimensions}] distance_metric=cosine)"
    )
    conn.execute(
        "INSERT OR REPLACE INTO vector_indexes (name, model, dimensions) VALUES (?, ?, ?)",
        (table, model, dimensions),
    )
    conn.commit()
    return table


def drop_vec_table(conn: sqlite3.Connection, table: str) -> None:
    """Drop a vec table and forget its recorded dimension (used by re-embedding)."""
    if not re.fullmatch(r"vec_(chunks|entities)_[a-z0-9_]+", table):
        raise ValueError(f"Refusing to drop non-vector table '{table}'")
    conn.execute(f"DROP TABLE IF EXISTS {table}")
    conn.execute("DELETE FROM vector_indexes WHERE name = ?", (table,))
    conn.commit()


def list_vec_tables(conn: sqlite3.Connection) -> list[str]:
    """Return every vector index recorded in the database."""
    return [r[0] for r in conn.execute("SELECT name FROM vector_indexes ORDER BY name")]
