"""Query preparation for the keyword side of hybrid retrieval."""

from __future__ import annotations

import re
from typing import List

_OPERATORS = re.compile(r"\b(?:AND|OR|NOT|NEAR)\b")
_NON_WORD = re.compile(r"[^\w\s]|_", re.UNICODE)
EMPTY_PHRASE = '""'

SYNONYMS: dict[str, tuple[str, ...]] = {
    "revenue": ("income", "earnings", "sales"),
    "cost": ("expense", "expenditure", "spending"),
    "profit": ("earnings", "gain", "margin"),
    "growth": ("increase", "expansion", "rise"),
    "decline": ("decrease", "reduction", "drop"),
    "customer": ("client", "consumer", "buyer"),
    "product": ("item", "goods", "merchandise"),
    "service": ("offering", "solution", "support"),
    "company": ("business", "organization", "corporation"),
    "employee": ("worker", "staff", "personnel"),
    "market": ("industry", "sector", "segment"),
    "strategy": ("plan", "approach", "tactic"),
    "risk": ("threat", "hazard", "danger"),
    "opportunity": ("chance", "prospect", "potential"),
    "analysis": ("examination", "review", "assessment"),
}


def expand_query(query: str) -> str:
    """Append synonyms for known business terms, joined with ``" OR "``.

    Matching is a case-insensitive substring test, so ``"costs"`` expands the
    ``cost`` entry. A query with no matching term is returned unchanged.
    """

    lowered = query.lower()
    terms = [query]
    for term, synonyms in SYNONYMS.items():
        if term in lowered:
            terms.extend(synonyms)
    if len(terms) == 1:
        return query
    return " OR ".join(terms)


def sanitize_lexical_query(query: str, max_chars: int = 500) -> str:
    """Reduce ``query`` to a quoted phrase of plain words.

    Boolean operators are dropped, every character that is not alphanumeric or
    whitespace is removed, whitespace is collapsed and the result is capped at
    ``max_chars`` characters. Nothing left yields ``'""'``.
    """

    cleaned = _OPERATORS.sub(" ", query)
    cleaned = _NON_WORD.sub("", cleaned)
    cleaned = " ".join(cleaned.split())
    if len(cleaned) > max_chars:
        cleaned = cleaned[:max_chars].rstrip()
    if not cleaned:
        return EMPTY_PHRASE
    return f'"{cleaned}"'


def phrase_terms(sanitized: str) -> List[str]:
    inner = sanitized.strip()
    if inner.startswith('"') and inner.endswith('"') and len(inner) >= 2:
        inner = inner[1:-1]
    return [term.lower() for term in inner.split()]


__all__ = ["EMPTY_PHRASE", "SYNONYMS", "expand_query", "phrase_terms", "sanitize_lexical_query"]
