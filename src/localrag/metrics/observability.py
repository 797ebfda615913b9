"""Observability helpers for localrag."""

from __future__ import annotations

import logging
from contextvars import ContextVar

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "localrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    ingestion_latency = Histogram(
        "localrag_ingestion_duration_seconds",
        "Time spent chunking, embedding and storing a document.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    ingestion_chunks = Histogram(
        "localrag_ingestion_chunk_count",
        "Chunks produced per ingested document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    embedding_latency = Histogram(
        "localrag_embedding_duration_seconds",
        "Time spent in parallel embedding calls.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0),
    )
    embedded_texts = Counter(
        "localrag_embedded_texts_total",
        "Texts embedded through the parallel pipeline.",
    )
    retrieval_latency = Histogram(
        "localrag_retrieval_duration_seconds",
        "Time spent in hybrid retrieval.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "localrag_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    retrieval_source_failures = Counter(
        "localrag_retrieval_source_failures_total",
        "Retrieval sources that failed and were skipped.",
        ["source"],
    )
    generation_latency = Histogram(
        "localrag_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
    )
    generated_tokens = Histogram(
        "localrag_generated_tokens",
        "Tokens sampled per generation call.",
        buckets=(0, 16, 64, 128, 256, 512, 1024, 2048),
    )
    generation_stops = Counter(
        "localrag_generation_stops_total",
        "Generation calls by stop reason.",
        ["reason"],
    )
    prompt_cache_lookups = Counter(
        "localrag_prompt_cache_lookups_total",
        "Prompt cache hits and misses.",
        ["result"],
    )
    model_loaded = Gauge(
        "localrag_model_loaded",
        "Whether a generation model is loaded in the cache.",
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)

    @classmethod
    def observe_embedding(cls, duration_seconds: float, text_count: int) -> None:
        cls.embedding_latency.observe(duration_seconds)
        cls.embedded_texts.inc(text_count)

    @classmethod
    def observe_retrieval(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)

    @classmethod
    def observe_source_failure(cls, source: str) -> None:
        cls.retrieval_source_failures.labels(source=source).inc()

    @classmethod
    def observe_generation(cls, duration_seconds: float, tokens: int, reason: str) -> None:
        cls.generation_latency.observe(duration_seconds)
        cls.generated_tokens.observe(tokens)
        cls.generation_stops.labels(reason=reason).inc()

    @classmethod
    def observe_prompt_cache(cls, hit: bool) -> None:
        cls.prompt_cache_lookups.labels(result="hit" if hit else "miss").inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
