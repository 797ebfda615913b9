"""Service layer orchestrations for localrag."""

from .citations import clean_response, parse_citations
from .prompts import PromptBuilder, PromptBuilderConfig
from .query import QueryConfig, QueryService, StreamEvents

__all__ = [
    "PromptBuilder",
    "PromptBuilderConfig",
    "QueryConfig",
    "QueryService",
    "StreamEvents",
    "clean_response",
    "parse_citations",
]
