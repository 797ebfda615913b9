"""Heading-aware word chunker."""

from __future__ import annotations

import re
from typing import List, Sequence

from localrag.errors import InvalidParameters

MAX_CHUNK_WORDS = 10_000
MAX_HEADING_WORDS = 12
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_HEADING_TERMINATORS = (".", "!", "?", ",", ";")


def validate_chunk_parameters(target_size_words: int, overlap_words: int) -> None:
    if target_size_words <= 0:
        raise InvalidParameters(f"chunk size must be positive, got {target_size_words}")
    if target_size_words > MAX_CHUNK_WORDS:
        raise InvalidParameters(f"chunk size {target_size_words} exceeds the limit of {MAX_CHUNK_WORDS} words")
    if overlap_words < 0:
        raise InvalidParameters(f"overlap must not be negative, got {overlap_words}")
    if overlap_words >= target_size_words:
        raise InvalidParameters(
            f"overlap ({overlap_words}) must be smaller than chunk size ({target_size_words})"
        )


def is_heading(paragraph: str) -> bool:
    """Short, single-line paragraphs without sentence punctuation are headings."""

    stripped = paragraph.strip()
    if not stripped or "\n" in stripped:
        return False
    if len(stripped.split()) > MAX_HEADING_WORDS:
        return False
    return not stripped.endswith(_HEADING_TERMINATORS)


def chunk_text(text: str, target_size_words: int = 800, overlap_words: int = 200) -> List[str]:
    """Split ``text`` into overlapping chunks of at most ``target_size_words`` words."""

    validate_chunk_parameters(target_size_words, overlap_words)
    if not text or not text.strip():
        return []
    chunks = _chunk_paragraphs(text, target_size_words, overlap_words)
    if not chunks:
        chunks = _window_slices(text.split(), target_size_words, overlap_words)
    return chunks


def _chunk_paragraphs(text: str, size: int, overlap: int) -> List[str]:
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(text) if p.strip()]
    accumulator = _ChunkAccumulator(size, overlap)
    for paragraph in paragraphs:
        accumulator.add(paragraph.split(), heading=is_heading(paragraph))
    return accumulator.finish()


class _ChunkAccumulator:
    """Running chunk state for the paragraph-aware pass."""

    def __init__(self, size: int, overlap: int) -> None:
        self.size = size
        self.overlap = overlap
        self.chunks: List[str] = []
        self.current: List[str] = []
        self.heading: List[str] = []
        # words in ``current`` carried over from the previous chunk
        self.carried = 0

    def add(self, words: List[str], *, heading: bool = False) -> None:
        if heading:
            self.heading = []
        if not self._fits(words) and self._has_new_words():
            self._close()
        if self._fits(words):
            self.current.extend(words)
        else:
            for word in words:
                if len(self.current) >= self.size:
                    self._close()
                self.current.append(word)
        if heading:
            self.heading = list(words)

    def finish(self) -> List[str]:
        if self._has_new_words():
            self.chunks.append(" ".join(self.current))
        return self.chunks

    def _fits(self, words: Sequence[str]) -> bool:
        return len(self.current) + len(words) <= self.size

    def _has_new_words(self) -> bool:
        return len(self.current) > self.carried

    def _close(self) -> None:
        if self._has_new_words():
            self.chunks.append(" ".join(self.current))
        tail = self.current[-self.overlap :] if self.overlap else []
        # carried words must leave room for at least one new word
        if self.heading and not _contains(tail, self.heading) and len(self.heading) + len(tail) < self.size:
            tail = self.heading + tail
        self.current = list(tail)
        self.carried = len(self.current)


def _window_slices(words: Sequence[str], size: int, overlap: int) -> List[str]:
    chunks: List[str] = []
    step = size - overlap
    start = 0
    while start < len(words):
        end = min(start + size, len(words))
        chunks.append(" ".join(words[start:end]))
        if end >= len(words):
            break
        start += step
    return chunks


def _contains(window: Sequence[str], needle: Sequence[str]) -> bool:
    if not needle or len(needle) > len(window):
        return False
    width = len(needle)
    return any(list(window[i : i + width]) == list(needle) for i in range(len(window) - width + 1))
