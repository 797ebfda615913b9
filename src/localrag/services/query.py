"""Query orchestration combining retrieval and generation."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence
from uuid import NAMESPACE_URL, uuid5

from localrag.embeddings.store import ChunkStore
from localrag.generation.cache import ModelCache
from localrag.metrics.observability import get_logger
from localrag.models import Answer, ConversationMessage, GenerationResult, SearchResult
from localrag.retrieval.service import Retriever
from localrag.services.citations import clean_response, parse_citations
from localrag.services.prompts import PromptBuilder, truncate_words

NO_MODEL_MESSAGE = (
    "No AI model is currently loaded. Please wait for the model to download, "
    "or check the application logs for errors."
)


@dataclass(frozen=True)
class QueryConfig:
    """Configuration for answering questions."""

    top_k: int = 10
    max_tokens: int = 2000
    model_path: str | None = None
    max_chunk_words: int = 1000


@dataclass(frozen=True)
class StreamEvents:
    """Callbacks receiving token batches and the final answer of a streamed query."""

    on_token: Callable[[str], None]
    on_complete: Callable[[Answer], None] = lambda answer: None


class QueryService:
    """Orchestrates retrieval and generation for incoming questions."""

    def __init__(
        self,
        retriever: Retriever,
        store: ChunkStore,
        model_cache: ModelCache | None = None,
        prompt_builder: PromptBuilder | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self._retriever = retriever
        self._store = store
        self._model_cache = model_cache
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._config = config or QueryConfig()
        self._logger = get_logger("query")

    def answer(
        self,
        question: str,
        *,
        top_k: int | None = None,
        history: Sequence[ConversationMessage] = (),
        model_path: str | None = None,
        max_tokens: int | None = None,
    ) -> Answer:
        return self._run(question, top_k, history, model_path, max_tokens, None, None)

    def answer_streaming(
        self,
        question: str,
        events: StreamEvents,
        *,
        top_k: int | None = None,
        history: Sequence[ConversationMessage] = (),
        model_path: str | None = None,
        max_tokens: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Answer:
        """Like :meth:`answer`, forwarding token batches to ``events.on_token`` as they arrive."""

        answer = self._run(question, top_k, history, model_path, max_tokens, events.on_token, cancel_event)
        events.on_complete(answer)
        return answer

    def retrieve(self, question: str, top_k: int | None = None) -> Sequence[SearchResult]:
        if self._store.count() == 0:
            return []
        limit = top_k or self._config.top_k
        start = time.perf_counter()
        retrieved = self._retriever.retrieve(question, top_k=limit)
        self._logger.info(
            "retrieval.complete",
            question=question,
            chunk_count=len(retrieved),
            duration_seconds=time.perf_counter() - start,
            top_k=limit,
        )
        return retrieved

    def fallback_text(self, question: str, results: Sequence[SearchResult]) -> str:
        """Answer built from the passages alone, used when no model is configured."""

        if not results:
            return NO_MODEL_MESSAGE
        lines = ["Based on your documents, here are the most relevant passages:\n\n"]
        for index, result in enumerate(results, start=1):
            text = truncate_words(result.text, self._config.max_chunk_words)
            lines.append(f'{index}. From "{result.file_name}" (similarity: {result.score:.2f}):\n{text}\n\n')
        lines.append(f"\nQuestion: {question}\n\n")
        lines.append(
            "Note: No model selected. Download a model to get AI-generated answers. "
            "The above passages are the most relevant sections from your documents.\n"
        )
        return "".join(lines)

    def _run(
        self,
        question: str,
        top_k: int | None,
        history: Sequence[ConversationMessage],
        model_path: str | None,
        max_tokens: int | None,
        on_token: Callable[[str], None] | None,
        cancel_event: threading.Event | None,
    ) -> Answer:
        start = time.perf_counter()
        query_id = uuid5(NAMESPACE_URL, question).hex

        retrieval_start = time.perf_counter()
        retrieved = self.retrieve(question, top_k)
        retrieval_ms = (time.perf_counter() - retrieval_start) * 1000
        selected = self._prompt_builder.select_chunks(retrieved)

        path = model_path or self._config.model_path
        if path is None or self._model_cache is None:
            text = self.fallback_text(question, selected)
            if on_token is not None:
                on_token(text)
            return Answer(
                text=text,
                citations=selected,
                query_id=query_id,
                latency_ms=(time.perf_counter() - start) * 1000,
                retrieval_ms=retrieval_ms,
            )

        prompt = self._prompt_builder.build(question, selected, history)
        status = self._model_cache.get_or_load(path)
        self._logger.info("model.ready", model_path=path, status=status)

        generation_start = time.perf_counter()
        result: GenerationResult = self._model_cache.complete(
            prompt,
            max_tokens or self._config.max_tokens,
            on_token_batch=on_token,
            cancel_event=cancel_event,
        )
        generation_ms = (time.perf_counter() - generation_start) * 1000
        text = clean_response(result.text)
        sources = parse_citations(text)
        self._logger.info(
            "generation.complete",
            question=question,
            duration_seconds=generation_ms / 1000,
            tokens=result.tokens_generated,
            stop_reason=result.stop_reason.value,
            cache_hit=result.cache_hit,
            citation_count=len(sources),
        )
        return Answer(
            text=text,
            citations=selected,
            query_id=query_id,
            latency_ms=(time.perf_counter() - start) * 1000,
            sources=sources,
            retrieval_ms=retrieval_ms,
            generation_ms=generation_ms,
            stop_reason=result.stop_reason,
        )


__all__ = ["NO_MODEL_MESSAGE", "QueryConfig", "QueryService", "StreamEvents"]
