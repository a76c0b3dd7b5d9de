"""Tests for the Repository data access layer."""

from __future__ import annotations

import threading
import uuid

import pytest

from cairn.db.connection import Database
from cairn.db.models import (
    Chunk,
    Content,
    Entity,
    EntityType,
    FileRef,
    Relationship,
)
from cairn.db.repository import QueryFilters, Repository, build_fts_query
from cairn.db.vectors import CHUNKS, ENTITIES
from cairn.errors import DimensionMismatchError, NotFoundError, OwnershipError

MODEL = "openai/text-embedding-3-small"
DIMS = 4


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _content(owner: str = "alice", category: str = "notes", task_id: str | None = None, **kw):
    return Content(
        id=kw.pop("id", uuid.uuid4().hex),
        owner=owner,
        text=kw.pop("text", "body"),
        category=category,
        task_id=task_id,
        **kw,
    )


def _chunk(content: Content, index: int, text: str, embedding=None) -> Chunk:
    return Chunk(
        id=uuid.uuid4().hex,
        source_id=content.id,
        owner=content.owner,
        chunk_index=index,
        text=text,
        embedding=embedding,
    )


def _entity(name: str, owner: str = "alice", source_id: str = "c1", description: str = "",
            entity_type: EntityType = EntityType.CONCEPT, embedding=None) -> Entity:
    return Entity(
        id=uuid.uuid4().hex,
        owner=owner,
        source_id=source_id,
        name=name,
        description=description,
        entity_type=entity_type,
        embedding=embedding,
    )


def _rel(a: Entity, b: Entity, rel_type: str = "part of", owner: str = "alice") -> Relationship:
    return Relationship(
        id=uuid.uuid4().hex, owner=owner, from_id=a.id, to_id=b.id, rel_type=rel_type,
        source_id="c1",
    )


# ---------------------------------------------------------------------------
# build_fts_query
# ---------------------------------------------------------------------------


def test_build_fts_query_quotes_and_drops_stopwords():
    assert build_fts_query("What is the borrow-checker?") == '"borrow" OR "checker"'


def test_build_fts_query_deduplicates():
    assert build_fts_query("rust Rust RUST") == '"rust"'


def test_build_fts_query_only_stopwords():
    assert build_fts_query("the and of") == ""


# ---------------------------------------------------------------------------
# Contents + chunks
# ---------------------------------------------------------------------------


def test_add_content_stores_chunks_in_order(repo):
    content = _content()
    rowids = repo.add_content(content, [_chunk(content, 0, "first"), _chunk(content, 1, "second")])
    assert len(rowids) == 2
    chunks = repo.get_chunks(content.id, "alice")
    assert [c.text for c in chunks] == ["first", "second"]
    assert [c.rowid for c in chunks] == rowids
    assert repo.count_chunks("alice") == 2


def test_add_content_writes_vectors(repo):
    table = repo.ensure_vector_table(CHUNKS, MODEL, DIMS)
    content = _content()
    chunk = _chunk(content, 0, "vectors", embedding=[0.1, 0.2, 0.3, 0.4])
    rowids = repo.add_content(content, [chunk], table)
    assert repo.get_embedding(table, rowids[0]) == pytest.approx([0.1, 0.2, 0.3, 0.4])


def test_add_content_wrong_dimension_writes_nothing(repo):
    table = repo.ensure_vector_table(CHUNKS, MODEL, DIMS)
    content = _content()
    with pytest.raises(DimensionMismatchError):
        repo.add_content(content, [_chunk(content, 0, "x", embedding=[1.0, 0.0])], table)
    assert repo.get_content(content.id, "alice") is None
    assert repo.count_chunks() == 0


def test_get_content_other_owner_raises(repo):
    content = _content(owner="alice")
    repo.add_content(content, [])
    with pytest.raises(OwnershipError):
        repo.get_content(content.id, "bob")


def test_list_contents_is_owner_scoped(repo):
    repo.add_content(_content(owner="alice"), [])
    repo.add_content(_content(owner="bob"), [])
    assert len(repo.list_contents("alice")) == 1


def test_delete_content_removes_everything_sourced_from_it(repo):
    chunk_table = repo.ensure_vector_table(CHUNKS, MODEL, DIMS)
    entity_table = repo.ensure_vector_table(ENTITIES, MODEL, DIMS)
    content = _content(title="Rust notes")
    repo.add_content(
        content, [_chunk(content, 0, "ownership rules", embedding=[1.0, 0.0, 0.0, 0.0])],
        chunk_table,
    )
    a = repo.upsert_entity(
        _entity("Rust", source_id=content.id, embedding=[1.0, 0.0, 0.0, 0.0]), entity_table
    ).entity
    b = repo.upsert_entity(
        _entity("Cargo", source_id=content.id, embedding=[0.0, 1.0, 0.0, 0.0]), entity_table
    ).entity
    repo.add_relationship(_rel(b, a))

    repo.delete_content(content.id, "alice")

    assert repo.get_content(content.id, "alice") is None
    assert repo.count_chunks() == 0
    assert repo.list_entities("alice") == []
    assert repo.list_relationships("alice") == []
    assert repo.search_chunks_fts("alice", "ownership") == []
    assert repo.search_vec(chunk_table, "alice", [1.0, 0.0, 0.0, 0.0]) == []
    assert repo.search_vec(entity_table, "alice", [1.0, 0.0, 0.0, 0.0]) == []


def test_delete_content_not_found(repo):
    with pytest.raises(NotFoundError):
        repo.delete_content("missing", "alice")


def test_delete_content_other_owner(repo):
    content = _content(owner="alice")
    repo.add_content(content, [])
    with pytest.raises(OwnershipError):
        repo.delete_content(content.id, "bob")


def test_delete_contents_for_task(repo):
    repo.add_content(_content(task_id="t1"), [])
    repo.add_content(_content(task_id="t1"), [])
    repo.add_content(_content(task_id="t2"), [])
    assert repo.delete_contents_for_task("t1") == 2
    assert len(repo.list_contents_for_task("t2")) == 1
    assert repo.delete_contents_for_task("t1") == 0


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def test_upsert_entity_creates(repo):
    outcome = repo.upsert_entity(_entity("Rust", description="A language."))
    assert outcome.created is True
    assert outcome.entity.name == "Rust"
    assert outcome.entity.rowid is not None


def test_upsert_entity_is_idempotent_on_normalized_name(repo):
    first = repo.upsert_entity(_entity("Rust", description="A language."))
    second = repo.upsert_entity(_entity("  rust. ", description="Short."))
    assert second.created is False
    assert second.entity.id == first.entity.id
    assert second.entity.description == "A language."
    assert len(repo.list_entities("alice")) == 1


def test_upsert_entity_longer_description_wins(repo):
    repo.upsert_entity(_entity("Rust", description="A language."))
    outcome = repo.upsert_entity(
        _entity("Rust", description="A systems language focused on memory safety.")
    )
    assert outcome.description_replaced is True
    assert outcome.entity.description == "A systems language focused on memory safety."
    hits = repo.search_entities_fts("alice", "memory safety")
    assert [h.id for h in hits] == [outcome.entity.id]


def test_upsert_entity_type_is_part_of_identity(repo):
    repo.upsert_entity(_entity("Mercury", entity_type=EntityType.CONCEPT))
    repo.upsert_entity(_entity("Mercury", entity_type=EntityType.PROJECT))
    assert len(repo.list_entities("alice")) == 2


def test_upsert_entity_is_owner_scoped(repo):
    a = repo.upsert_entity(_entity("Rust", owner="alice"))
    b = repo.upsert_entity(_entity("Rust", owner="bob"))
    assert a.created and b.created
    assert a.entity.id != b.entity.id


def test_concurrent_upserts_yield_one_entity(tmp_path):
    path = tmp_path / "race.db"
    setup = Database(path).connect()
    from cairn.db.schema import initialize

    initialize(setup)
    setup.close()

    barrier = threading.Barrier(4)
    results = []

    def worker(i: int) -> None:
        conn = Database(path).connect()
        try:
            barrier.wait()
            outcome = Repository(conn).upsert_entity(
                _entity("Vector index", description=f"description {i}")
            )
            results.append(outcome.entity.id)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    check = Database(path).connect()
    assert check.execute("SELECT COUNT(*) FROM entities").fetchone()[0] == 1
    check.close()


def test_find_entity(repo):
    stored = repo.upsert_entity(_entity("Borrow Checker")).entity
    found = repo.find_entity("alice", "borrow checker", EntityType.CONCEPT)
    assert found is not None and found.id == stored.id
    assert repo.find_entity("bob", "borrow checker", EntityType.CONCEPT) is None


def test_get_entity_other_owner(repo):
    stored = repo.upsert_entity(_entity("Rust")).entity
    with pytest.raises(OwnershipError):
        repo.get_entity(stored.id, "bob")


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


def test_add_relationship_deduplicates(repo):
    a = repo.upsert_entity(_entity("Borrow checker")).entity
    b = repo.upsert_entity(_entity("Rust")).entity
    first, created = repo.add_relationship(_rel(a, b))
    again, created_again = repo.add_relationship(_rel(a, b))
    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert len(repo.list_relationships("alice")) == 1


def test_add_relationship_distinct_types(repo):
    a = repo.upsert_entity(_entity("Borrow checker")).entity
    b = repo.upsert_entity(_entity("Rust")).entity
    repo.add_relationship(_rel(a, b, "part of"))
    repo.add_relationship(_rel(a, b, "enforces rules of"))
    assert len(repo.list_relationships("alice", a.id)) == 2


def test_add_relationship_cross_owner_rejected(repo):
    a = repo.upsert_entity(_entity("Rust", owner="alice")).entity
    b = repo.upsert_entity(_entity("Go", owner="bob")).entity
    with pytest.raises(OwnershipError):
        repo.add_relationship(_rel(a, b, owner="alice"))


def test_add_relationship_unknown_endpoint(repo):
    a = repo.upsert_entity(_entity("Rust")).entity
    ghost = _entity("Ghost")
    with pytest.raises(NotFoundError):
        repo.add_relationship(_rel(a, ghost))


def test_neighbors_both_directions(repo):
    rust = repo.upsert_entity(_entity("Rust")).entity
    checker = repo.upsert_entity(_entity("Borrow checker")).entity
    cargo = repo.upsert_entity(_entity("Cargo")).entity
    repo.add_relationship(_rel(checker, rust, "part of"))
    repo.add_relationship(_rel(rust, cargo, "ships with"))

    neighbors = repo.neighbors("alice", rust.id)
    assert [(n.entity.name, n.direction, n.rel_type) for n in neighbors] == [
        ("Borrow checker", "in", "part of"),
        ("Cargo", "out", "ships with"),
    ]
    assert len(repo.neighbors("alice", rust.id, limit=1)) == 1
    assert repo.neighbors("bob", rust.id) == []


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def test_add_file_unique_per_owner_and_hash(repo):
    ref = FileRef(id="f1", owner="alice", sha256="abc", path="/x", mime_type="text/plain")
    stored, created = repo.add_file(ref)
    dup, created_again = repo.add_file(
        FileRef(id="f2", owner="alice", sha256="abc", path="/x", mime_type="text/plain")
    )
    assert created and not created_again
    assert dup.id == stored.id == "f1"
    _, other_owner = repo.add_file(
        FileRef(id="f3", owner="bob", sha256="abc", path="/x", mime_type="text/plain")
    )
    assert other_owner is True


def test_get_file_other_owner(repo):
    repo.add_file(FileRef(id="f1", owner="alice", sha256="abc", path="/x", mime_type="a/b"))
    with pytest.raises(OwnershipError):
        repo.get_file("f1", "bob")
    assert repo.get_file("missing", "alice") is None


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def _seed_search(repo: Repository) -> tuple[str, Content, Content]:
    table = repo.ensure_vector_table(CHUNKS, MODEL, DIMS)
    rust = _content(category="systems", title="Rust", context="language notes")
    food = _content(category="cooking", title="Pasta")
    repo.add_content(
        rust,
        [_chunk(rust, 0, "Ownership and borrowing in Rust", embedding=[1.0, 0.0, 0.0, 0.0])],
        table,
    )
    repo.add_content(
        food,
        [_chunk(food, 0, "Simmer the tomato sauce slowly", embedding=[0.0, 1.0, 0.0, 0.0])],
        table,
    )
    bob = _content(owner="bob", category="systems", title="Bob's Rust")
    repo.add_content(
        bob, [_chunk(bob, 0, "Ownership in Rust", embedding=[1.0, 0.0, 0.0, 0.0])], table
    )
    return table, rust, food


def test_search_vec_best_first_and_owner_scoped(repo):
    table, rust, food = _seed_search(repo)
    hits = repo.search_vec(table, "alice", [0.9, 0.1, 0.0, 0.0], limit=5)
    assert [h.source_id for h in hits] == [rust.id, food.id]
    assert hits[0].score > hits[1].score
    assert hits[0].kind == "chunk"
    assert hits[0].title == "Rust"


def test_search_vec_with_category_filter(repo):
    table, _, food = _seed_search(repo)
    hits = repo.search_vec(
        table, "alice", [1.0, 0.0, 0.0, 0.0], limit=5, filters=QueryFilters(categories=["cooking"])
    )
    assert [h.source_id for h in hits] == [food.id]


def test_search_vec_missing_index_returns_empty(repo):
    assert repo.search_vec("vec_chunks_nothing", "alice", [1.0]) == []


def test_search_vec_dimension_mismatch(repo):
    table, _, _ = _seed_search(repo)
    with pytest.raises(DimensionMismatchError):
        repo.search_vec(table, "alice", [1.0, 0.0])


def test_search_chunks_fts_matches_title_and_context(repo):
    _, rust, _ = _seed_search(repo)
    by_text = repo.search_chunks_fts("alice", "borrowing")
    by_context = repo.search_chunks_fts("alice", "language")
    assert [h.source_id for h in by_text] == [rust.id]
    assert [h.source_id for h in by_context] == [rust.id]
    assert "<b>" in by_text[0].highlight


def test_search_chunks_fts_porter_stemming(repo):
    _, rust, _ = _seed_search(repo)
    hits = repo.search_chunks_fts("alice", "borrow")
    assert [h.source_id for h in hits] == [rust.id]


def test_search_chunks_fts_owner_and_source_filters(repo):
    _, rust, _ = _seed_search(repo)
    assert len(repo.search_chunks_fts("alice", "ownership")) == 1
    assert repo.search_chunks_fts(
        "alice", "ownership", filters=QueryFilters(source_ids=["other"])
    ) == []
    hits = repo.search_chunks_fts("alice", "ownership", filters=QueryFilters(source_ids=[rust.id]))
    assert len(hits) == 1


def test_search_fts_punctuation_is_safe(repo):
    _seed_search(repo)
    assert repo.search_chunks_fts("alice", 'rust" OR (*') != []
    assert repo.search_entities_fts("alice", "???") == []


# ---------------------------------------------------------------------------
# Re-embedding
# ---------------------------------------------------------------------------


def test_rebuild_vector_index_replaces_dimension(repo):
    table, _, _ = _seed_search(repo)
    chunks = repo.all_chunks()
    rows = [(c.rowid, c.owner, [1.0] + [0.0] * 7) for c in chunks]
    new_table = repo.rebuild_vector_index(CHUNKS, MODEL, 8, rows)
    assert new_table == table
    assert repo.vector_table_dimensions(table) == 8
    assert len(repo.search_vec(table, "alice", [1.0] + [0.0] * 7, limit=10)) == 2


def test_rebuild_vector_index_checks_lengths_first(repo):
    table, _, _ = _seed_search(repo)
    with pytest.raises(DimensionMismatchError):
        repo.rebuild_vector_index(CHUNKS, MODEL, 8, [(1, "alice", [1.0, 0.0])])
    assert repo.vector_table_dimensions(table) == DIMS
