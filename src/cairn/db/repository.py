"""Repository pattern for the knowledge graph store.

Single interface for: contents, chunks, entities, relationships, FTS5 search,
vec embeddings. Every query is scoped by owner inside SQL.

Multi-row writes run inside ``BEGIN IMMEDIATE`` so concurrent writers on other
connections wait on the database lock instead of interleaving. Entity dedup is
an ``INSERT ... ON CONFLICT`` upsert keyed on (owner, norm_name, entity_type).
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from dataclasses import dataclass

from cairn.db.connection import synchronized, write_transaction
from cairn.db.models import (
    Chunk,
    Content,
    Entity,
    EntityType,
    FileRef,
    Neighbor,
    Relationship,
    SearchHit,
    UpsertOutcome,
)
from cairn.db.vectors import (
    drop_vec_table,
    ensure_vec_table,
    list_vec_tables,
    recorded_dimensions,
)
from cairn.errors import DimensionMismatchError, NotFoundError, OwnershipError

_HIGHLIGHT_OPEN = "<b>"
_HIGHLIGHT_CLOSE = "</b>"

# Dropped from full-text queries; terms are OR-ed, so these would match nearly
# every document.
_STOPWORDS: frozenset[str] = frozenset(
    """a an and are as at be by for from has have how in is it its of on or
    that the this to was were what when where which who why will with""".split()
)


@dataclass
class QueryFilters:
    """Optional narrowing applied to every retrieval search."""

    categories: list[str] | None = None
    source_ids: list[str] | None = None

    def is_empty(self) -> bool:
        return not self.categories and not self.source_ids


def build_fts_query(text: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted terms ('' if nothing is left).

    FTS5 MATCH rejects punctuation as syntax; quoting each term sidesteps that.
    """
    terms: list[str] = []
    for token in re.findall(r"\w+", text.lower()):
        if token in _STOPWORDS or token in terms:
            continue
        terms.append(token)
    return " OR ".join(f'"{t}"' for t in terms)


class Repository:
    """Data access layer for all knowledge graph records.

    Wraps an open sqlite3.Connection. Public methods are serialised by a lock
    so the repository can be driven from ``asyncio.to_thread``. The connection
    is owned by the caller and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see cairn.db.schema.initialize).
        """
        self._conn = conn
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Contents + chunks
    # ------------------------------------------------------------------

    @synchronized
    def add_content(
        self, content: Content, chunks: list[Chunk], vec_table: str | None = None
    ) -> list[int]:
        """Persist a content record with its chunks, FTS rows and vectors atomically.

        Returns the chunk rowids in order. Nothing is written when a chunk
        embedding has the wrong length.
        """
        expected = recorded_dimensions(self._conn, vec_table) if vec_table else None
        if vec_table:
            for chunk in chunks:
                _check_dims(chunk.embedding, expected, vec_table)

        rowids: list[int] = []
        with write_transaction(self._conn) as conn:
            conn.execute(
                """
                INSERT INTO contents (id, owner, task_id, text, title, url, file_id, context, category)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    content.id,
                    content.owner,
                    content.task_id,
                    content.text,
                    content.title,
                    content.url,
                    content.file_id,
                    content.context,
                    content.category,
                ),
            )
            for chunk in chunks:
                cur = conn.execute(
                    """
                    INSERT INTO chunks (id, source_id, owner, chunk_index, text, start_offset, end_offset)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.id,
                        content.id,
                        content.owner,
                        chunk.chunk_index,
                        chunk.text,
                        chunk.start,
                        chunk.end,
                    ),
                )
                rowid = cur.lastrowid
                chunk.rowid = rowid
                conn.execute(
                    "INSERT INTO chunks_fts(rowid, text, title, category, context) VALUES (?, ?, ?, ?, ?)",
                    (rowid, chunk.text, content.title, content.category, content.context),
                )
                if vec_table and chunk.embedding is not None:
                    conn.execute(
                        f"INSERT INTO {vec_table}(rowid, owner, embedding) VALUES (?, ?, ?)",
                        (rowid, content.owner, json.dumps(chunk.embedding)),
                    )
                rowids.append(rowid)
        return rowids

    @synchronized
    def get_content(self, content_id: str, owner: str) -> Content | None:
        """Return a content record, None if missing.

        Raises:
            OwnershipError: If the record belongs to another owner.
        """
        row = self._conn.execute(
            "SELECT * FROM contents WHERE id = ?", (content_id,)
        ).fetchone()
        if row is None:
            return None
        _check_owner(row["owner"], owner, "content", content_id)
        return _row_to_content(row)

    @synchronized
    def list_contents(self, owner: str) -> list[Content]:
        """Return all contents of *owner*, oldest first."""
        rows = self._conn.execute(
            "SELECT * FROM contents WHERE owner = ? ORDER BY created_at, rowid", (owner,)
        ).fetchall()
        return [_row_to_content(r) for r in rows]

    @synchronized
    def list_contents_for_task(self, task_id: str) -> list[Content]:
        rows = self._conn.execute(
            "SELECT * FROM contents WHERE task_id = ? ORDER BY rowid", (task_id,)
        ).fetchall()
        return [_row_to_content(r) for r in rows]

    @synchronized
    def get_chunks(self, source_id: str, owner: str) -> list[Chunk]:
        """Return the chunks of a content record in order."""
        rows = self._conn.execute(
            """
            SELECT rowid, * FROM chunks WHERE source_id = ? AND owner = ?
            ORDER BY chunk_index
            """,
            (source_id, owner),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    @synchronized
    def count_chunks(self, owner: str | None = None) -> int:
        if owner is None:
            return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE owner = ?", (owner,)
        ).fetchone()[0]

    @synchronized
    def get_embedding(self, vec_table: str, rowid: int) -> list[float] | None:
        """Return the stored vector for *rowid* in *vec_table*, or None."""
        row = self._conn.execute(
            f"SELECT vec_to_json(embedding) AS v FROM {vec_table} WHERE rowid = ?",
            (rowid,),
        ).fetchone()
        return json.loads(row["v"]) if row else None

    @synchronized
    def delete_content(self, content_id: str, owner: str) -> None:
        """Delete a content record, its chunks, and the graph records sourced from it.

        Raises:
            NotFoundError: If no such content exists.
            OwnershipError: If it belongs to another owner.
        """
        row = self._conn.execute(
            "SELECT owner FROM contents WHERE id = ?", (content_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Content '{content_id}' not found")
        _check_owner(row["owner"], owner, "content", content_id)
        with write_transaction(self._conn):
            self._delete_contents([content_id])

    @synchronized
    def delete_contents_for_task(self, task_id: str) -> int:
        """Remove everything a previous run of *task_id* persisted. Returns contents deleted."""
        ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM contents WHERE task_id = ?", (task_id,)
            ).fetchall()
        ]
        if ids:
            with write_transaction(self._conn):
                self._delete_contents(ids)
        return len(ids)

    def _delete_contents(self, content_ids: list[str]) -> None:
        """Caller holds the lock and an open write transaction."""
        conn = self._conn
        marks = ",".join("?" * len(content_ids))
        vec_tables = [
            r[0]
            for r in conn.execute("SELECT name FROM vector_indexes").fetchall()
        ]

        chunk_rowids = [
            r[0]
            for r in conn.execute(
                f"SELECT rowid FROM chunks WHERE source_id IN ({marks})", content_ids
            ).fetchall()
        ]
        entity_rowids = [
            r[0]
            for r in conn.execute(
                f"SELECT rowid FROM entities WHERE source_id IN ({marks})", content_ids
            ).fetchall()
        ]

        if chunk_rowids:
            cm = ",".join("?" * len(chunk_rowids))
            conn.execute(f"DELETE FROM chunks_fts WHERE rowid IN ({cm})", chunk_rowids)
            for table in vec_tables:
                if table.startswith("vec_chunks_"):
                    conn.execute(f"DELETE FROM {table} WHERE rowid IN ({cm})", chunk_rowids)
        if entity_rowids:
            em = ",".join("?" * len(entity_rowids))
            conn.execute(f"DELETE FROM entities_fts WHERE rowid IN ({em})", entity_rowids)
            for table in vec_tables:
                if table.startswith("vec_entities_"):
                    conn.execute(f"DELETE FROM {table} WHERE rowid IN ({em})", entity_rowids)

        conn.execute(f"DELETE FROM relationships WHERE source_id IN ({marks})", content_ids)
        conn.execute(f"DELETE FROM entities WHERE source_id IN ({marks})", content_ids)
        # chunks cascade
        conn.execute(f"DELETE FROM contents WHERE id IN ({marks})", content_ids)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @synchronized
    def upsert_entity(self, entity: Entity, vec_table: str | None = None) -> UpsertOutcome:
        """Insert *entity* or merge it into the existing (owner, name, type) record.

        On a match the longer description wins; the stored vector follows the
        stored description. The whole operation is one write transaction.
        """
        expected = recorded_dimensions(self._conn, vec_table) if vec_table else None
        if vec_table:
            _check_dims(entity.embedding, expected, vec_table)

        metadata = json.dumps(entity.metadata) if entity.metadata is not None else None
        with write_transaction(self._conn) as conn:
            row = conn.execute(
                """
                INSERT INTO entities (id, owner, source_id, name, norm_name, entity_type, description, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner, norm_name, entity_type) DO UPDATE SET
                    description = CASE
                        WHEN length(excluded.description) > length(entities.description)
                        THEN excluded.description
                        ELSE entities.description
                    END,
                    metadata = COALESCE(entities.metadata, excluded.metadata),
                    updated_at = datetime('now')
                RETURNING rowid, *
                """,
                (
                    entity.id,
                    entity.owner,
                    entity.source_id,
                    entity.name,
                    entity.norm_name,
                    entity.entity_type.value,
                    entity.description,
                    metadata,
                ),
            ).fetchone()
            stored = _row_to_entity(row)
            created = stored.id == entity.id
            replaced = not created and stored.description == entity.description

            if created or replaced:
                conn.execute("DELETE FROM entities_fts WHERE rowid = ?", (stored.rowid,))
                conn.execute(
                    "INSERT INTO entities_fts(rowid, name, description) VALUES (?, ?, ?)",
                    (stored.rowid, stored.name, stored.description),
                )
                if vec_table and entity.embedding is not None:
                    conn.execute(f"DELETE FROM {vec_table} WHERE rowid = ?", (stored.rowid,))
                    conn.execute(
                        f"INSERT INTO {vec_table}(rowid, owner, embedding) VALUES (?, ?, ?)",
                        (stored.rowid, stored.owner, json.dumps(entity.embedding)),
                    )
        return UpsertOutcome(entity=stored, created=created, description_replaced=replaced)

    @synchronized
    def get_entity(self, entity_id: str, owner: str) -> Entity | None:
        row = self._conn.execute(
            "SELECT rowid, * FROM entities WHERE id = ?", (entity_id,)
        ).fetchone()
        if row is None:
            return None
        _check_owner(row["owner"], owner, "entity", entity_id)
        return _row_to_entity(row)

    @synchronized
    def find_entity(self, owner: str, norm_name: str, entity_type: EntityType) -> Entity | None:
        row = self._conn.execute(
            """
            SELECT rowid, * FROM entities
            WHERE owner = ? AND norm_name = ? AND entity_type = ?
            """,
            (owner, norm_name, entity_type.value),
        ).fetchone()
        return _row_to_entity(row) if row else None

    @synchronized
    def list_entities(self, owner: str) -> list[Entity]:
        rows = self._conn.execute(
            "SELECT rowid, * FROM entities WHERE owner = ? ORDER BY rowid", (owner,)
        ).fetchall()
        return [_row_to_entity(r) for r in rows]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    @synchronized
    def add_relationship(self, rel: Relationship) -> tuple[Relationship, bool]:
        """Insert an edge unless (owner, from, to, type) already exists.

        Both endpoints must belong to ``rel.owner``.

        Returns:
            The stored relationship and whether it was newly created.
        """
        for endpoint in (rel.from_id, rel.to_id):
            row = self._conn.execute(
                "SELECT owner FROM entities WHERE id = ?", (endpoint,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Entity '{endpoint}' not found")
            _check_owner(row["owner"], rel.owner, "entity", endpoint)

        with write_transaction(self._conn) as conn:
            cur = conn.execute(
                """
                INSERT INTO relationships (id, owner, from_id, to_id, rel_type, source_id)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner, from_id, to_id, rel_type) DO NOTHING
                """,
                (rel.id, rel.owner, rel.from_id, rel.to_id, rel.rel_type, rel.source_id),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                """
                SELECT * FROM relationships
                WHERE owner = ? AND from_id = ? AND to_id = ? AND rel_type = ?
                """,
                (rel.owner, rel.from_id, rel.to_id, rel.rel_type),
            ).fetchone()
        return _row_to_relationship(row), created

    @synchronized
    def list_relationships(self, owner: str, entity_id: str | None = None) -> list[Relationship]:
        if entity_id is None:
            rows = self._conn.execute(
                "SELECT * FROM relationships WHERE owner = ? ORDER BY rowid", (owner,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM relationships
                WHERE owner = ? AND (from_id = ? OR to_id = ?) ORDER BY rowid
                """,
                (owner, entity_id, entity_id),
            ).fetchall()
        return [_row_to_relationship(r) for r in rows]

    @synchronized
    def neighbors(self, owner: str, entity_id: str, limit: int = 10) -> list[Neighbor]:
        """Return entities one relationship edge away from *entity_id* (both directions)."""
        rows = self._conn.execute(
            """
            SELECT r.rel_type AS rel_type,
                   CASE WHEN r.from_id = :id THEN 'out' ELSE 'in' END AS direction,
                   e.rowid AS rowid, e.*
            FROM relationships r
            JOIN entities e
              ON e.id = CASE WHEN r.from_id = :id THEN r.to_id ELSE r.from_id END
            WHERE r.owner = :owner AND e.owner = :owner
              AND (r.from_id = :id OR r.to_id = :id)
            ORDER BY r.rowid
            LIMIT :limit
            """,
            {"id": entity_id, "owner": owner, "limit": limit},
        ).fetchall()
        return [
            Neighbor(entity=_row_to_entity(r), rel_type=r["rel_type"], direction=r["direction"])
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @synchronized
    def add_file(self, ref: FileRef) -> tuple[FileRef, bool]:
        """Register a stored blob; (owner, sha256) is unique.

        Returns:
            The stored FileRef (the existing one on a duplicate) and whether
            it was newly created.
        """
        with write_transaction(self._conn) as conn:
            cur = conn.execute(
                """
                INSERT INTO files (id, owner, sha256, path, mime_type, file_name)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner, sha256) DO NOTHING
                """,
                (ref.id, ref.owner, ref.sha256, ref.path, ref.mime_type, ref.file_name),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                "SELECT * FROM files WHERE owner = ? AND sha256 = ?", (ref.owner, ref.sha256)
            ).fetchone()
        return _row_to_file(row), created

    @synchronized
    def get_file(self, file_id: str, owner: str) -> FileRef | None:
        row = self._conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
        if row is None:
            return None
        _check_owner(row["owner"], owner, "file", file_id)
        return _row_to_file(row)

    # ------------------------------------------------------------------
    # Vector indexes
    # ------------------------------------------------------------------

    @synchronized
    def ensure_vector_table(self, kind: str, model: str, dimensions: int) -> str:
        """Create or validate the vec table for *kind*; see ensure_vec_table."""
        return ensure_vec_table(self._conn, kind, model, dimensions)

    @synchronized
    def vector_table_dimensions(self, vec_table: str) -> int | None:
        return recorded_dimensions(self._conn, vec_table)

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    @synchronized
    def search_vec(
        self,
        vec_table: str,
        owner: str,
        embedding: list[float],
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> list[SearchHit]:
        """Nearest-neighbour search, best first. ``score`` is cosine similarity.

        Returns [] when the index does not exist yet.

        Raises:
            DimensionMismatchError: If *embedding* does not fit the index.
        """
        expected = recorded_dimensions(self._conn, vec_table)
        if expected is None:
            return []
        _check_dims(embedding, expected, vec_table)

        filtered = filters is not None and not filters.is_empty()
        fetch = limit * 4 if filtered else limit
        vec_rows = self._conn.execute(
            f"""
            SELECT rowid, distance FROM {vec_table}
            WHERE embedding MATCH ? AND k = ? AND owner = ?
            ORDER BY distance
            """,
            (json.dumps(embedding), fetch, owner),
        ).fetchall()

        kind = "entity" if vec_table.startswith("vec_entities_") else "chunk"
        hits: list[SearchHit] = []
        for vec_row in vec_rows:
            if kind == "chunk":
                hit = self._chunk_hit(vec_row["rowid"], owner, filters)
            else:
                hit = self._entity_hit(vec_row["rowid"], owner, filters)
            if hit is None:
                continue
            hit.score = 1.0 - float(vec_row["distance"])
            hits.append(hit)
            if len(hits) >= limit:
                break
        return hits

    def _chunk_hit(
        self, rowid: int, owner: str, filters: QueryFilters | None
    ) -> SearchHit | None:
        sql = """
            SELECT c.id, c.source_id, c.text, co.title, co.category
            FROM chunks c JOIN contents co ON co.id = c.source_id
            WHERE c.rowid = ? AND c.owner = ?
        """
        params: list = [rowid, owner]
        sql, params = _apply_filters(sql, params, filters, "co.category", "c.source_id")
        row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return SearchHit(
            kind="chunk",
            id=row["id"],
            source_id=row["source_id"],
            text=row["text"],
            title=row["title"],
            score=0.0,
            metadata={"category": row["category"]},
        )

    def _entity_hit(
        self, rowid: int, owner: str, filters: QueryFilters | None
    ) -> SearchHit | None:
        sql = """
            SELECT e.id, e.source_id, e.name, e.description, e.entity_type,
                   co.category AS category
            FROM entities e LEFT JOIN contents co ON co.id = e.source_id
            WHERE e.rowid = ? AND e.owner = ?
        """
        params: list = [rowid, owner]
        sql, params = _apply_filters(sql, params, filters, "co.category", "e.source_id")
        row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return SearchHit(
            kind="entity",
            id=row["id"],
            source_id=row["source_id"],
            text=f"{row['name']}: {row['description']}",
            title=row["name"],
            score=0.0,
            metadata={"entity_type": row["entity_type"], "category": row["category"]},
        )

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    @synchronized
    def search_chunks_fts(
        self, owner: str, query: str, limit: int = 10, filters: QueryFilters | None = None
    ) -> list[SearchHit]:
        """BM25 search over chunk text and its content's title/category/context.

        bm25() returns negative values; lower = better. ``score`` is the
        negated bm25 value so that higher is better.
        """
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        sql = f"""
            SELECT c.id, c.source_id, c.text, co.title, co.category,
                   bm25(chunks_fts) AS rank_score,
                   snippet(chunks_fts, -1, '{_HIGHLIGHT_OPEN}', '{_HIGHLIGHT_CLOSE}', '…', 24) AS hl
            FROM chunks_fts
            JOIN chunks c ON c.rowid = chunks_fts.rowid
            JOIN contents co ON co.id = c.source_id
            WHERE chunks_fts MATCH ? AND c.owner = ?
        """
        params: list = [fts_query, owner]
        sql, params = _apply_filters(sql, params, filters, "co.category", "c.source_id")
        sql += " ORDER BY rank_score LIMIT ?"
        params.append(limit)
        return [
            SearchHit(
                kind="chunk",
                id=r["id"],
                source_id=r["source_id"],
                text=r["text"],
                title=r["title"],
                score=-float(r["rank_score"]),
                highlight=r["hl"],
                metadata={"category": r["category"]},
            )
            for r in self._conn.execute(sql, params).fetchall()
        ]

    @synchronized
    def search_entities_fts(
        self, owner: str, query: str, limit: int = 10, filters: QueryFilters | None = None
    ) -> list[SearchHit]:
        """BM25 search over entity names and descriptions."""
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        sql = f"""
            SELECT e.id, e.source_id, e.name, e.description, e.entity_type,
                   co.category AS category,
                   bm25(entities_fts) AS rank_score,
                   snippet(entities_fts, -1, '{_HIGHLIGHT_OPEN}', '{_HIGHLIGHT_CLOSE}', '…', 24) AS hl
            FROM entities_fts
            JOIN entities e ON e.rowid = entities_fts.rowid
            LEFT JOIN contents co ON co.id = e.source_id
            WHERE entities_fts MATCH ? AND e.owner = ?
        """
        params: list = [fts_query, owner]
        sql, params = _apply_filters(sql, params, filters, "co.category", "e.source_id")
        sql += " ORDER BY rank_score LIMIT ?"
        params.append(limit)
        return [
            SearchHit(
                kind="entity",
                id=r["id"],
                source_id=r["source_id"],
                text=f"{r['name']}: {r['description']}",
                title=r["name"],
                score=-float(r["rank_score"]),
                highlight=r["hl"],
                metadata={"entity_type": r["entity_type"], "category": r["category"]},
            )
            for r in self._conn.execute(sql, params).fetchall()
        ]

    # ------------------------------------------------------------------
    # Re-embedding support
    # ------------------------------------------------------------------

    @synchronized
    def all_chunks(self) -> list[Chunk]:
        """Every chunk across owners (re-embedding only)."""
        rows = self._conn.execute("SELECT rowid, * FROM chunks ORDER BY rowid").fetchall()
        return [_row_to_chunk(r) for r in rows]

    @synchronized
    def all_entities(self) -> list[Entity]:
        """Every entity across owners (re-embedding only)."""
        rows = self._conn.execute("SELECT rowid, * FROM entities ORDER BY rowid").fetchall()
        return [_row_to_entity(r) for r in rows]

    @synchronized
    def rebuild_vector_index(
        self,
        kind: str,
        model: str,
        dimensions: int,
        rows: list[tuple[int, str, list[float]]],
    ) -> str:
        """Replace every vec table of *kind* with one for *model* holding *rows*.

        *rows* are (rowid, owner, vector). Vector lengths are checked against
        *dimensions* before anything is dropped.

        Returns:
            The new table name.
        """
        for _, _, vector in rows:
            _check_dims(vector, dimensions, f"{kind}:{model}")
        prefix = f"vec_{kind}_"
        for table in list_vec_tables(self._conn):
            if table.startswith(prefix):
                drop_vec_table(self._conn, table)
        vec_table = ensure_vec_table(self._conn, kind, model, dimensions)
        with write_transaction(self._conn) as conn:
            conn.executemany(
                f"INSERT INTO {vec_table}(rowid, owner, embedding) VALUES (?, ?, ?)",
                [(rowid, owner, json.dumps(vector)) for rowid, owner, vector in rows],
            )
        return vec_table


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _check_owner(actual: str, expected: str, kind: str, record_id: str) -> None:
    if actual != expected:
        raise OwnershipError(f"{kind.capitalize()} '{record_id}' belongs to another owner")


def _check_dims(vector: list[float] | None, expected: int | None, table: str) -> None:
    if vector is None or expected is None:
        return
    if len(vector) != expected:
        raise DimensionMismatchError(expected, len(vector), table)


def _apply_filters(
    sql: str,
    params: list,
    filters: QueryFilters | None,
    category_col: str,
    source_col: str,
) -> tuple[str, list]:
    if filters is None:
        return sql, params
    if filters.categories:
        sql += f" AND {category_col} IN ({','.join('?' * len(filters.categories))})"
        params.extend(filters.categories)
    if filters.source_ids:
        sql += f" AND {source_col} IN ({','.join('?' * len(filters.source_ids))})"
        params.extend(filters.source_ids)
    return sql, params


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_content(row: sqlite3.Row) -> Content:
    return Content(
        id=row["id"],
        owner=row["owner"],
        task_id=row["task_id"],
        text=row["text"],
        title=row["title"],
        url=row["url"],
        file_id=row["file_id"],
        context=row["context"],
        category=row["category"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        rowid=row["rowid"],
        id=row["id"],
        source_id=row["source_id"],
        owner=row["owner"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        start=row["start_offset"],
        end=row["end_offset"],
    )


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        rowid=row["rowid"],
        id=row["id"],
        owner=row["owner"],
        source_id=row["source_id"],
        name=row["name"],
        description=row["description"],
        entity_type=EntityType(row["entity_type"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        owner=row["owner"],
        from_id=row["from_id"],
        to_id=row["to_id"],
        rel_type=row["rel_type"],
        source_id=row["source_id"],
        created_at=row["created_at"],
    )


def _row_to_file(row: sqlite3.Row) -> FileRef:
    return FileRef(
        id=row["id"],
        owner=row["owner"],
        sha256=row["sha256"],
        path=row["path"],
        mime_type=row["mime_type"],
        file_name=row["file_name"],
        created_at=row["created_at"],
    )
