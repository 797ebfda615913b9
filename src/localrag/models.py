"""Shared domain models used across the localrag pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Sequence, Tuple

import numpy as np

from localrag.errors import EmbeddingFailed

_BLOB_DTYPE = np.dtype("<f4")


def chunk_id_for(document_id: str, ordinal_index: int) -> str:
    return f"{document_id}-{ordinal_index}"


@dataclass(frozen=True)
class Chunk:
    """Immutable segment of a document's extracted text."""

    chunk_id: str
    document_id: str
    text: str
    ordinal_index: int
    file_name: str = ""
    page_number: int | None = None


@dataclass(frozen=True)
class Embedding:
    """Fixed-length vector owned by a single chunk."""

    vector: Tuple[float, ...]

    @property
    def dimension(self) -> int:
        return len(self.vector)

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "Embedding":
        return cls(vector=tuple(float(value) for value in values))

    def to_bytes(self) -> bytes:
        return np.asarray(self.vector, dtype=_BLOB_DTYPE).tobytes()

    @classmethod
    def from_bytes(cls, blob: bytes) -> "Embedding":
        if len(blob) % _BLOB_DTYPE.itemsize:
            raise EmbeddingFailed(f"Embedding blob of {len(blob)} bytes is not a float32 array")
        values = np.frombuffer(blob, dtype=_BLOB_DTYPE)
        return cls(vector=tuple(float(value) for value in values))

    def cosine_similarity(self, other: "Embedding") -> float:
        if self.dimension != other.dimension:
            return 0.0
        a = np.asarray(self.vector, dtype=np.float64)
        b = np.asarray(other.vector, dtype=np.float64)
        norm = float(np.linalg.norm(a) * np.linalg.norm(b))
        if norm == 0.0:
            return 0.0
        return float(np.dot(a, b) / norm)


@dataclass(frozen=True)
class SearchResult:
    """Chunk returned by retrieval, ordered by ``score``."""

    chunk_id: str
    document_id: str
    text: str
    chunk_index: int
    score: float
    file_name: str = ""
    page_number: int | None = None

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float) -> "SearchResult":
        return cls(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            text=chunk.text,
            chunk_index=chunk.ordinal_index,
            score=score,
            file_name=chunk.file_name,
            page_number=chunk.page_number,
        )


@dataclass
class PromptCacheEntry:
    """Hash of the last prompt seen by a loaded model."""

    prompt_hash: str
    token_count: int
    hit_count: int = 0


@dataclass(frozen=True)
class PromptCacheStats:
    has_entry: bool
    hits: int
    hit_rate: float


class StopReason(str, enum.Enum):
    """Why a generation call returned."""

    MAX_TOKENS = "max_tokens"
    END_OF_GENERATION = "end_of_generation"
    STOP_MARKER = "stop_marker"
    CANCELLED = "cancelled"
    PROMPT_ECHO = "prompt_echo"
    BLOCK_REPETITION = "block_repetition"
    FILLER_LOOP = "filler_loop"
    SENTENCE_REPETITION = "sentence_repetition"
    SIMILARITY_LOOP = "similarity_loop"

    @property
    def is_degenerate(self) -> bool:
        return self in _DEGENERATE_REASONS


_DEGENERATE_REASONS = frozenset(
    {
        StopReason.PROMPT_ECHO,
        StopReason.BLOCK_REPETITION,
        StopReason.FILLER_LOOP,
        StopReason.SENTENCE_REPETITION,
        StopReason.SIMILARITY_LOOP,
    }
)


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of a single generation call."""

    text: str
    stop_reason: StopReason
    tokens_generated: int
    prompt_tokens: int
    cache_hit: bool
    elapsed_seconds: float = 0.0


class PreloadStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    content: str


@dataclass(frozen=True)
class Citation:
    """Document reference parsed out of a generated answer."""

    document_name: str
    chunk_index: int | None = None
    page_number: int | None = None


@dataclass(frozen=True)
class Answer:
    """Answer produced for a question, with the chunks it was grounded on."""

    text: str
    citations: Sequence[SearchResult]
    query_id: str
    latency_ms: float
    sources: Sequence[Citation] = field(default_factory=tuple)
    retrieval_ms: float | None = None
    generation_ms: float | None = None
    stop_reason: StopReason | None = None
