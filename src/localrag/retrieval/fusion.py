"""Scoring helpers shared by the dense and hybrid retrieval paths."""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Sequence

import numpy as np

from localrag.models import SearchResult


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def reciprocal_rank_fusion(
    dense: Sequence[SearchResult],
    lexical: Sequence[SearchResult],
    top_k: int,
    k_rrf: float = 60.0,
    dense_weight: float = 1.2,
) -> List[SearchResult]:
    """Merge two ranked lists by weighted reciprocal rank.

    Each list contributes ``weight / (k_rrf + rank)`` per chunk, with ``rank``
    starting at 1. Lexical hits weigh 1.0. When one list is empty the other is
    returned truncated, with its original scores.
    """

    if top_k <= 0:
        return []
    if not dense:
        return list(lexical[:top_k])
    if not lexical:
        return list(dense[:top_k])

    scores: Dict[str, float] = {}
    first_seen: Dict[str, SearchResult] = {}
    for weight, ranked in ((dense_weight, dense), (1.0, lexical)):
        for rank, result in enumerate(ranked, start=1):
            scores[result.chunk_id] = scores.get(result.chunk_id, 0.0) + weight / (k_rrf + rank)
            first_seen.setdefault(result.chunk_id, result)

    # sorted() is stable, so ties keep dense-then-lexical arrival order
    ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [replace(first_seen[chunk_id], score=score) for chunk_id, score in ordered[:top_k]]


__all__ = ["cosine_similarity", "reciprocal_rank_fusion"]
