"""Boundary-aware text chunker with overlap.

Chunks are exact substrings of the source text and carry their character
offsets, so the source can be rebuilt by concatenating chunks with the
overlapping prefix of each one removed (see :func:`reconstruct`).

Sizes follow the 4-chars-per-token approximation; no external tokenizer
dependency is required.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass

from cairn.db.models import Chunk

_SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s+")


@dataclass(frozen=True)
class Span:
    text: str
    start: int
    end: int


def split(text: str, max_size: int, overlap: int) -> list[Span]:
    """Split *text* into ordered spans of at most *max_size* characters.

    A span ends, in order of preference, after a paragraph break, after a
    sentence end, or after whitespace, provided that leaves it at least half
    of *max_size* long; otherwise it is cut hard. Each following span starts
    up to *overlap* characters before the previous end, moved forward to a
    word start when there is one.

    Args:
        text: Normalized source text.
        max_size: Maximum span length in characters (>= 1).
        overlap: Characters shared with the previous span (0 <= overlap < max_size).

    Returns:
        Ordered spans; empty for empty *text*.
    """
    if max_size < 1:
        raise ValueError("max_size must be >= 1")
    if not 0 <= overlap < max_size:
        raise ValueError("overlap must be in [0, max_size)")

    spans: list[Span] = []
    length = len(text)
    pos = 0
    while pos < length:
        end = min(pos + max_size, length)
        if end < length:
            end = _find_break(text, pos, end, max_size)
        spans.append(Span(text[pos:end], pos, end))
        if end >= length:
            break
        pos = _next_start(text, pos, end, overlap)
    return spans


def _find_break(text: str, pos: int, limit: int, max_size: int) -> int:
    floor = pos + max(1, max_size // 2)
    if floor >= limit:
        return limit

    para = text.rfind("\n\n", floor, limit)
    if para != -1:
        return para + 2

    last_sentence = None
    for match in _SENTENCE_END.finditer(text, floor, limit):
        last_sentence = match
    if last_sentence is not None:
        return last_sentence.end()

    for i in range(limit - 1, floor - 1, -1):
        if text[i].isspace():
            return i + 1
    return limit


def _next_start(text: str, pos: int, end: int, overlap: int) -> int:
    if overlap == 0:
        return end
    start = max(pos + 1, end - overlap)
    # begin the overlap at a word start when one exists inside it
    for i in range(start, end):
        if text[i - 1].isspace() and not text[i].isspace():
            return i
    return start


def reconstruct(spans: list[Span]) -> str:
    """Concatenate *spans*, dropping the part of each that overlaps its predecessor."""
    parts: list[str] = []
    covered = 0
    for span in spans:
        if span.end <= covered:
            continue
        parts.append(span.text[max(0, covered - span.start):])
        covered = span.end
    return "".join(parts)


class TextChunker:
    """Split normalized content into Chunk records.

    Args:
        chunk_size: Target chunk size in tokens (window = chunk_size * 4 chars).
        overlap: Fraction of the window shared between neighbouring chunks.
    """

    def __init__(self, chunk_size: int = 512, overlap: float = 0.10) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @property
    def max_chars(self) -> int:
        return self.chunk_size * 4

    @property
    def overlap_chars(self) -> int:
        return int(self.max_chars * self.overlap)

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    def split(self, text: str) -> list[Span]:
        return split(text, self.max_chars, self.overlap_chars)

    def chunk(self, source_id: str, owner: str, text: str) -> list[Chunk]:
        """Return sequentially indexed chunks of *text* for content *source_id*."""
        return [
            Chunk(
                id=uuid.uuid4().hex,
                source_id=source_id,
                owner=owner,
                chunk_index=i,
                text=span.text,
                start=span.start,
                end=span.end,
            )
            for i, span in enumerate(self.split(text))
        ]
