"""Tests for the boundary-aware text chunker."""

from __future__ import annotations

import pytest

from cairn.ingest.chunker import Span, TextChunker, reconstruct, split

PROSE = (
    "Rust enforces memory safety through ownership. Every value has a single owner. "
    "When the owner goes out of scope, the value is dropped.\n\n"
    "Borrowing lets code reference a value without taking ownership. The borrow checker "
    "verifies that references never outlive the data they point to. Mutable borrows are "
    "exclusive.\n\n"
    "Approximate nearest neighbour search trades exactness for speed. HNSW builds a "
    "layered proximity graph. Queries descend from the sparse top layer to the dense "
    "bottom layer."
)


# ------------------------------------------------------------------
# split()
# ------------------------------------------------------------------


def test_empty_text_yields_no_spans():
    assert split("", 100, 10) == []


def test_short_text_is_one_span():
    assert split("hello world", 100, 10) == [Span("hello world", 0, 11)]


@pytest.mark.parametrize("max_size,overlap", [(60, 0), (60, 12), (120, 30), (200, 0), (7, 3)])
def test_spans_respect_max_size_and_offsets(max_size, overlap):
    spans = split(PROSE, max_size, overlap)
    assert spans
    for span in spans:
        assert 0 < len(span.text) <= max_size
        assert PROSE[span.start:span.end] == span.text


@pytest.mark.parametrize("max_size,overlap", [(60, 0), (60, 12), (120, 30), (7, 3)])
def test_reconstruct_round_trips(max_size, overlap):
    assert reconstruct(split(PROSE, max_size, overlap)) == PROSE


def test_spans_advance_and_overlap_is_bounded():
    spans = split(PROSE, 80, 20)
    for prev, cur in zip(spans, spans[1:]):
        assert cur.start > prev.start
        assert prev.end - cur.start <= 20
        assert cur.start <= prev.end


def test_no_overlap_spans_are_contiguous():
    spans = split(PROSE, 80, 0)
    for prev, cur in zip(spans, spans[1:]):
        assert cur.start == prev.end


def test_prefers_paragraph_break():
    text = "a" * 40 + "\n\n" + "b" * 40
    spans = split(text, 60, 0)
    assert spans[0].text == "a" * 40 + "\n\n"


def test_prefers_sentence_end_over_whitespace():
    text = "First sentence is here. Second one follows and keeps going on"
    spans = split(text, 40, 0)
    assert spans[0].text == "First sentence is here. "


def test_hard_cut_without_boundaries():
    text = "x" * 25
    spans = split(text, 10, 0)
    assert [len(s.text) for s in spans] == [10, 10, 5]


def test_split_is_deterministic():
    assert split(PROSE, 90, 15) == split(PROSE, 90, 15)


@pytest.mark.parametrize("max_size,overlap", [(0, 0), (10, 10), (10, -1)])
def test_invalid_arguments(max_size, overlap):
    with pytest.raises(ValueError):
        split("text", max_size, overlap)


# ------------------------------------------------------------------
# TextChunker
# ------------------------------------------------------------------


def test_text_chunker_window_in_chars():
    chunker = TextChunker(chunk_size=100, overlap=0.2)
    assert chunker.max_chars == 400
    assert chunker.overlap_chars == 80


def test_text_chunker_builds_indexed_chunks():
    chunker = TextChunker(chunk_size=20, overlap=0.1)
    chunks = chunker.chunk("content-1", "alice", PROSE)
    assert len(chunks) > 1
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert all(c.source_id == "content-1" and c.owner == "alice" for c in chunks)
    assert len({c.id for c in chunks}) == len(chunks)
    assert all(PROSE[c.start:c.end] == c.text for c in chunks)


def test_count_tokens_approximation():
    assert TextChunker.count_tokens("a" * 400) == 100
    assert TextChunker.count_tokens("") == 1


@pytest.mark.parametrize("chunk_size,overlap", [(0, 0.1), (10, 1.0), (10, -0.1)])
def test_text_chunker_invalid_settings(chunk_size, overlap):
    with pytest.raises(ValueError):
        TextChunker(chunk_size=chunk_size, overlap=overlap)
