"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    EmbeddingPipeline,
    HashEmbeddingBackend,
    HuggingFaceEmbeddingBackend,
    build_embedding_backend,
)
from .store import ChromaChunkStore, ChunkStore

__all__ = [
    "ChromaChunkStore",
    "ChunkStore",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingPipeline",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
    "build_embedding_backend",
]
