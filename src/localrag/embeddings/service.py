"""Embedding backends and the batched embedding pipeline."""

from __future__ import annotations

import hashlib
import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Protocol, Sequence

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from localrag.errors import EmbeddingFailed
from localrag.metrics.observability import PipelineMetrics
from localrag.models import Embedding

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends and batching."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    cache_folder: str | None = None
    small_corpus: int = 100
    medium_corpus: int = 1000
    small_batch: int = 32
    medium_batch: int = 64
    large_batch: int = 128
    max_workers: int | None = None


class EmbeddingBackend(Protocol):
    """Protocol describing a sentence-embedding model."""

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, in order."""

    def embed_query(self, text: str) -> List[float]:
        """Return the vector for a single query string."""


class HashEmbeddingBackend:
    """Deterministic lightweight embedding fallback used for testing and offline runs."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return [value / norm for value in vector]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._hash_to_vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._hash_to_vector(text)


class HuggingFaceEmbeddingBackend:
    """Sentence-transformers model loaded through LangChain, normalised at encode time."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        model_kwargs = {"device": self._config.device} if self._config.device else {}
        try:
            self._client: LangChainEmbeddings = HuggingFaceEmbeddings(
                model_name=self._config.model,
                cache_folder=self._config.cache_folder,
                model_kwargs=model_kwargs,
                encode_kwargs={"normalize_embeddings": True},
            )
        except Exception as exc:
            raise EmbeddingFailed(f"Failed to load embedding model {self._config.model}: {exc}") from exc
        LOGGER.info("Loaded embedding model %s", self._config.model)

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return self._client.embed_documents(texts)

    def embed_query(self, text: str) -> List[float]:
        return self._client.embed_query(text)


def build_embedding_backend(config: EmbeddingConfig) -> EmbeddingBackend:
    if not config.use_model:
        LOGGER.info("Embedding pipeline running in hash-only mode.")
        return HashEmbeddingBackend(config)
    return HuggingFaceEmbeddingBackend(config)


class EmbeddingPipeline:
    """Turns texts into embeddings, batching and parallelising large inputs."""

    def __init__(self, backend: EmbeddingBackend, config: EmbeddingConfig | None = None) -> None:
        self._backend = backend
        self._config = config or EmbeddingConfig()

    def embed(self, text: str) -> Embedding:
        try:
            vector = self._backend.embed_query(text)
        except Exception as exc:
            raise EmbeddingFailed(f"Failed to embed text: {exc}") from exc
        if not vector:
            raise EmbeddingFailed("Embedding model returned an empty vector")
        return Embedding.from_sequence(vector)

    def embed_batch(self, texts: Sequence[str]) -> List[Embedding]:
        if not texts:
            return []
        try:
            vectors = self._backend.embed_documents(list(texts))
        except Exception as exc:
            raise EmbeddingFailed(f"Failed to generate batch embeddings: {exc}") from exc
        if len(vectors) != len(texts):
            LOGGER.error("Embedding backend returned %d vectors for %d texts", len(vectors), len(texts))
            raise EmbeddingFailed("Mismatch between number of texts and embedding vectors")
        return [Embedding.from_sequence(vector) for vector in vectors]

    def batch_size_for(self, total: int) -> int:
        if total < self._config.small_corpus:
            return self._config.small_batch
        if total < self._config.medium_corpus:
            return self._config.medium_batch
        return self._config.large_batch

    def embed_parallel(
        self,
        texts: Sequence[str],
        progress_callback: ProgressCallback | None = None,
    ) -> List[Embedding]:
        """Embed ``texts`` in concurrent batches; the output keeps input order.

        ``progress_callback`` receives ``(processed_so_far, total)`` from worker
        threads after each batch. Any batch failure aborts the whole call.
        """

        total = len(texts)
        if total == 0:
            return []
        batch_size = self.batch_size_for(total)
        batches = [list(texts[start : start + batch_size]) for start in range(0, total, batch_size)]
        workers = max(1, min(len(batches), self._config.max_workers or os.cpu_count() or 1))
        LOGGER.info(
            "Embedding %d texts in %d batches of %d using %d workers", total, len(batches), batch_size, workers
        )

        processed = 0
        progress_lock = threading.Lock()

        def run_batch(batch: List[str]) -> List[Embedding]:
            nonlocal processed
            embeddings = self.embed_batch(batch)
            with progress_lock:
                processed += len(batch)
                done = processed
            if progress_callback is not None:
                try:
                    progress_callback(done, total)
                except Exception:
                    LOGGER.exception("Embedding progress callback failed")
            return embeddings

        start = time.perf_counter()
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as pool:
            futures = [pool.submit(run_batch, batch) for batch in batches]
            try:
                results = [future.result() for future in futures]
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        duration = time.perf_counter() - start
        PipelineMetrics.observe_embedding(duration, total)
        LOGGER.info("Embedded %d texts in %.2fs", total, duration)
        return [embedding for batch_result in results for embedding in batch_result]
