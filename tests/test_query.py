from __future__ import annotations

import threading
from typing import List, Sequence

from fakes import ScriptedLoader

from localrag.generation import ModelCache
from localrag.models import Answer, ConversationMessage, SearchResult, StopReason
from localrag.services.query import NO_MODEL_MESSAGE, QueryConfig, QueryService, StreamEvents


class StubRetriever:
    def __init__(self, results: Sequence[SearchResult]) -> None:
        self.results = list(results)
        self.calls: List[tuple[str, int | None]] = []

    def retrieve(self, query: str, *, top_k: int | None = None) -> Sequence[SearchResult]:
        self.calls.append((query, top_k))
        return self.results[: top_k or len(self.results)]


class StubStore:
    def __init__(self, count: int) -> None:
        self._count = count

    def count(self) -> int:
        return self._count


def _results() -> List[SearchResult]:
    return [
        SearchResult(
            chunk_id="report-0",
            document_id="report",
            text="Revenue grew twelve percent.",
            chunk_index=0,
            score=0.91,
            file_name="report.pdf",
        ),
        SearchResult(
            chunk_id="notes-0",
            document_id="notes",
            text="Discuss revenue targets.",
            chunk_index=0,
            score=0.5,
            file_name="notes.txt",
        ),
    ]


def _service(loader: ScriptedLoader | None = None, *, count: int = 2, **config) -> tuple[QueryService, StubRetriever]:
    retriever = StubRetriever(_results())
    cache = ModelCache(loader=loader) if loader is not None else None
    return QueryService(retriever, StubStore(count), model_cache=cache, config=QueryConfig(**config)), retriever


def test_empty_store_skips_retrieval():
    service, retriever = _service()
    assert len(service.retrieve("anything")) == 2
    service, retriever = _service(count=0)
    assert service.retrieve("anything") == []
    assert retriever.calls == []


def test_answer_without_model_lists_passages():
    service, retriever = _service(top_k=4)
    answer = service.answer("How did revenue change?")
    assert retriever.calls == [("How did revenue change?", 4)]
    assert answer.text.startswith("Based on your documents, here are the most relevant passages:")
    assert '1. From "report.pdf" (similarity: 0.91):\nRevenue grew twelve percent.' in answer.text
    assert "Question: How did revenue change?" in answer.text
    assert [citation.chunk_id for citation in answer.citations] == ["report-0", "notes-0"]
    assert answer.stop_reason is None


def test_answer_without_model_or_documents():
    service, _ = _service(count=0)
    assert service.answer("Anything?").text == NO_MODEL_MESSAGE


def test_answer_with_model_generates_and_parses_citations():
    loader = ScriptedLoader(["According to [report.pdf] (chunk 0),", " **revenue** grew."])
    service, _ = _service(loader, model_path="/models/qwen")
    answer = service.answer(
        "How did revenue change?",
        history=[ConversationMessage("user", "hello")],
        max_tokens=20,
    )
    assert answer.text == "According to [report.pdf] (chunk 0), revenue grew."
    assert [source.document_name for source in answer.sources] == ["report.pdf"]
    assert answer.stop_reason is StopReason.END_OF_GENERATION
    assert answer.generation_ms is not None
    assert loader.loaded == ["/models/qwen"]


def test_same_question_has_stable_query_id():
    service, _ = _service()
    assert service.answer("Same?").query_id == service.answer("Same?").query_id


def test_streaming_answer_forwards_batches_and_completion():
    loader = ScriptedLoader(["Rev", "enue", " grew"])
    service, _ = _service(loader)
    batches: List[str] = []
    completed: List[Answer] = []
    answer = service.answer_streaming(
        "What grew?",
        StreamEvents(on_token=batches.append, on_complete=completed.append),
        model_path="/models/qwen",
    )
    assert "".join(batches) == "Revenue grew"
    assert completed == [answer]
    assert answer.text == "Revenue grew"


def test_streaming_answer_can_be_cancelled():
    loader = ScriptedLoader(["word "], cycle=True)
    service, _ = _service(loader)
    cancel = threading.Event()

    def on_token(text: str) -> None:
        cancel.set()

    answer = service.answer_streaming(
        "Talk forever",
        StreamEvents(on_token=on_token),
        model_path="/models/qwen",
        max_tokens=100,
        cancel_event=cancel,
    )
    assert answer.stop_reason is StopReason.CANCELLED
    assert answer.text == "word"


def test_streaming_fallback_sends_passages_as_one_batch():
    service, _ = _service()
    batches: List[str] = []
    answer = service.answer_streaming("Question?", StreamEvents(on_token=batches.append))
    assert batches == [answer.text]
