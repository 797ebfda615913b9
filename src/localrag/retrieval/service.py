"""Hybrid retrieval over the chunk store: dense cosine plus BM25, fused by RRF."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from localrag.embeddings.service import EmbeddingPipeline
from localrag.embeddings.store import ChunkStore
from localrag.metrics.observability import PipelineMetrics
from localrag.models import SearchResult
from localrag.retrieval.fusion import cosine_similarity, reciprocal_rank_fusion
from localrag.retrieval.lexical import expand_query, phrase_terms, sanitize_lexical_query

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    top_k: int = 8
    rrf_k: float = 60.0
    dense_weight: float = 1.2
    candidate_multiplier: int = 2
    max_query_chars: int = 500
    expand_synonyms: bool = True


class Retriever(Protocol):
    """Retrieve relevant chunks for a query string."""

    def retrieve(self, query: str, *, top_k: int | None = None) -> Sequence[SearchResult]:
        """Return the top-k retrieved chunks."""


class HybridRetriever:
    """Retriever combining dense vector similarity with a keyword index."""

    def __init__(
        self,
        pipeline: EmbeddingPipeline,
        store: ChunkStore,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._config = config or RetrievalConfig()

    def dense_search(self, query: str, limit: int) -> List[SearchResult]:
        if limit <= 0:
            return []
        query_vector = self._pipeline.embed(query).vector
        scored: List[SearchResult] = []
        for chunk, embedding in self._store.iter_vectors():
            scored.append(SearchResult.from_chunk(chunk, cosine_similarity(query_vector, embedding.vector)))
        scored.sort(key=lambda result: result.score, reverse=True)
        return scored[:limit]

    def keyword_search(self, query: str, limit: int) -> List[SearchResult]:
        if limit <= 0 or not query.strip():
            return []
        expanded = expand_query(query) if self._config.expand_synonyms else query
        sanitized = sanitize_lexical_query(expanded, self._config.max_query_chars)
        terms = phrase_terms(sanitized)
        if not terms:
            return []
        return list(self._store.keyword_search(terms, limit))

    def hybrid_search(self, query: str, top_k: int | None = None) -> List[SearchResult]:
        limit = self._config.top_k if top_k is None else top_k
        if limit <= 0:
            return []
        candidates = limit * self._config.candidate_multiplier
        start = time.perf_counter()

        dense_error: Exception | None = None
        try:
            dense = self.dense_search(query, candidates)
        except Exception as exc:
            LOGGER.warning("Dense search failed, continuing with keyword results: %s", exc)
            PipelineMetrics.observe_source_failure("dense")
            dense_error = exc
            dense = []
        try:
            lexical = self.keyword_search(query, candidates)
        except Exception as exc:
            if dense_error is not None:
                raise dense_error
            LOGGER.warning("Keyword search failed, continuing with dense results: %s", exc)
            PipelineMetrics.observe_source_failure("keyword")
            lexical = []

        results = reciprocal_rank_fusion(
            dense,
            lexical,
            limit,
            k_rrf=self._config.rrf_k,
            dense_weight=self._config.dense_weight,
        )
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results))
        LOGGER.debug(
            "Hybrid search returned %d results (%d dense, %d keyword) in %.3fs",
            len(results),
            len(dense),
            len(lexical),
            duration,
        )
        return results

    def retrieve(self, query: str, *, top_k: int | None = None) -> Sequence[SearchResult]:
        return self.hybrid_search(query, top_k=top_k)

