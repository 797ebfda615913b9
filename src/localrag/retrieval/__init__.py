"""Retrieval components."""

from .fusion import cosine_similarity, reciprocal_rank_fusion
from .lexical import expand_query, phrase_terms, sanitize_lexical_query
from .service import HybridRetriever, RetrievalConfig, Retriever

__all__ = [
    "HybridRetriever",
    "RetrievalConfig",
    "Retriever",
    "cosine_similarity",
    "expand_query",
    "phrase_terms",
    "reciprocal_rank_fusion",
    "sanitize_lexical_query",
]
