"""FastAPI application exposing localrag services."""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass
from typing import Iterator, Sequence
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from localrag.api.schemas import (
    DocumentDeletionResponse,
    DocumentSummary,
    ModelStatusResponse,
    PreloadRequest,
    PromptCacheModel,
    QueryRequest,
    QueryResponse,
    SearchRequest,
    SearchResponse,
    SearchResultModel,
    SourceModel,
    TextIngestionRequest,
)
from localrag.config import Settings, get_settings
from localrag.embeddings import ChromaChunkStore, EmbeddingConfig, EmbeddingPipeline, build_embedding_backend
from localrag.errors import (
    EmbeddingFailed,
    IngestionError,
    InvalidParameters,
    LocalRAGError,
    ModelLoadFailed,
    ModelNotFound,
    NoModelLoaded,
    PromptTooLarge,
)
from localrag.generation import DegeneracyConfig, GenerationConfig, ModelCache, SamplerConfig, transformers_loader
from localrag.ingestion import DocumentIngestor, IngestionConfig
from localrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from localrag.models import Answer, ConversationMessage, SearchResult
from localrag.retrieval import HybridRetriever, RetrievalConfig
from localrag.services import PromptBuilder, PromptBuilderConfig, QueryConfig, QueryService, StreamEvents

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: Sequence[tuple[type[LocalRAGError], int]] = (
    (InvalidParameters, status.HTTP_400_BAD_REQUEST),
    (ModelNotFound, status.HTTP_404_NOT_FOUND),
    (NoModelLoaded, status.HTTP_409_CONFLICT),
    (PromptTooLarge, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (IngestionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ModelLoadFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
    (EmbeddingFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@dataclass(frozen=True)
class AppDependencies:
    ingestor: DocumentIngestor
    store: ChromaChunkStore
    retriever: HybridRetriever
    query_service: QueryService
    model_cache: ModelCache


def generation_config_from(settings: Settings) -> GenerationConfig:
    return GenerationConfig(
        context_window_tokens=settings.context_window_tokens,
        safe_prompt_tokens=settings.safe_prompt_tokens,
        prompt_batch_size=settings.prompt_batch_size,
        token_ceiling=settings.generation_token_ceiling,
        stream_buffer_chars=settings.stream_buffer_chars,
        cache_enabled=settings.prompt_cache_enabled,
        sampler=SamplerConfig(
            temperature=settings.sampler_temperature,
            top_k=settings.sampler_top_k,
            top_p=settings.sampler_top_p,
            repeat_penalty=settings.sampler_repeat_penalty,
            penalty_last_n=settings.sampler_penalty_last_n,
            seed=settings.sampler_seed,
        ),
        degeneracy=DegeneracyConfig(
            check_interval=settings.degeneracy_check_interval,
            filler_threshold=settings.degeneracy_filler_threshold,
            sentence_repeats=settings.degeneracy_sentence_repeats,
            similarity_threshold=settings.degeneracy_similarity_threshold,
            similarity_strikes=settings.degeneracy_similarity_strikes,
            similarity_window_chars=settings.degeneracy_window_chars,
        ),
    )


def build_dependencies(settings: Settings, model_cache: ModelCache | None = None) -> AppDependencies:
    embedding_config = EmbeddingConfig(
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        use_model=settings.use_model_embeddings,
        cache_folder=settings.embedding_cache_folder,
        small_corpus=settings.embedding_small_corpus,
        medium_corpus=settings.embedding_medium_corpus,
        small_batch=settings.embedding_small_batch,
        medium_batch=settings.embedding_medium_batch,
        large_batch=settings.embedding_large_batch,
        max_workers=settings.embedding_max_workers,
    )
    pipeline = EmbeddingPipeline(build_embedding_backend(embedding_config), embedding_config)
    store = ChromaChunkStore(
        collection_name=settings.chroma_collection,
        persist_directory=settings.chroma_persist_dir,
    )
    model_cache = model_cache or ModelCache(
        loader=transformers_loader(gpu_layers=settings.gpu_layers),
        config=generation_config_from(settings),
    )
    retriever = HybridRetriever(
        pipeline,
        store,
        RetrievalConfig(
            top_k=settings.retrieval_top_k,
            rrf_k=settings.rrf_k,
            dense_weight=settings.rrf_dense_weight,
            max_query_chars=settings.lexical_max_query_chars,
        ),
    )
    ingestor = DocumentIngestor(
        pipeline,
        store,
        model_cache=model_cache,
        config=IngestionConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap),
    )
    prompt_builder = PromptBuilder(
        PromptBuilderConfig(
            max_chunks=settings.max_context_chunks,
            max_chunk_words=settings.max_chunk_words_in_prompt,
            history_messages=settings.conversation_history_messages,
        )
    )
    query_service = QueryService(
        retriever,
        store,
        model_cache=model_cache,
        prompt_builder=prompt_builder,
        config=QueryConfig(
            top_k=settings.query_top_k,
            max_tokens=settings.generation_max_tokens,
            model_path=settings.model_path,
            max_chunk_words=settings.max_chunk_words_in_prompt,
        ),
    )
    return AppDependencies(
        ingestor=ingestor,
        store=store,
        retriever=retriever,
        query_service=query_service,
        model_cache=model_cache,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    from localrag import __version__

    app = FastAPI(title="localrag API", version=__version__)
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(LocalRAGError)
    async def handle_localrag_error(request: Request, exc: LocalRAGError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        status_code = _status_for(exc)
        log = logger.warning if status_code < 500 else logger.error
        log("request.error", correlation_id=correlation_id, error=type(exc).__name__, detail=str(exc))
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__, "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/documents/text", response_model=DocumentSummary, status_code=status.HTTP_201_CREATED)
    def ingest_text(payload: TextIngestionRequest, dep: AppDependencies = Depends(get_dependencies)) -> DocumentSummary:
        if not payload.text.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No non-empty text provided")
        result = dep.ingestor.ingest_text(payload.file_name, payload.text, document_id=payload.document_id)
        return DocumentSummary(
            document_id=result.document_id,
            file_name=result.file_name,
            chunk_count=result.chunk_count,
        )

    @app.delete("/documents/{document_id}", response_model=DocumentDeletionResponse)
    def delete_document(document_id: str, dep: AppDependencies = Depends(get_dependencies)) -> DocumentDeletionResponse:
        removed = dep.ingestor.delete_document(document_id)
        if removed == 0:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown document: {document_id}")
        return DocumentDeletionResponse(document_id=document_id, removed_chunks=removed)

    @app.post("/search", response_model=SearchResponse)
    def search(payload: SearchRequest, dep: AppDependencies = Depends(get_dependencies)) -> SearchResponse:
        results = dep.retriever.hybrid_search(payload.query, top_k=payload.top_k)
        return SearchResponse(results=[_result_model(result) for result in results])

    @app.post("/query", response_model=QueryResponse)
    def query_documents(payload: QueryRequest, dep: AppDependencies = Depends(get_dependencies)) -> QueryResponse:
        answer = dep.query_service.answer(
            payload.question,
            top_k=payload.top_k,
            history=_history(payload),
            model_path=payload.model_path,
            max_tokens=payload.max_tokens,
        )
        return _query_response(answer)

    @app.post("/query/stream")
    def query_stream(payload: QueryRequest, dep: AppDependencies = Depends(get_dependencies)) -> Response:
        events: queue.Queue[tuple[str, object]] = queue.Queue()

        def run() -> None:
            try:
                dep.query_service.answer_streaming(
                    payload.question,
                    StreamEvents(
                        on_token=lambda text: events.put(("token", text)),
                        on_complete=lambda answer: events.put(("complete", answer)),
                    ),
                    top_k=payload.top_k,
                    history=_history(payload),
                    model_path=payload.model_path,
                    max_tokens=payload.max_tokens,
                )
            except Exception as exc:
                logger.error("query.stream_failed", error=type(exc).__name__, detail=str(exc))
                events.put(("error", {"detail": str(exc), "error": type(exc).__name__}))
            finally:
                events.put(("end", None))

        worker = threading.Thread(target=run, name="query-stream", daemon=True)
        worker.start()

        def iter_sse() -> Iterator[str]:
            try:
                yield ": heartbeat\n\n"
                while True:
                    kind, item = events.get()
                    if kind == "end":
                        return
                    if kind == "token":
                        yield f"data: {json.dumps({'text': item})}\n\n"
                    elif kind == "complete":
                        body = _query_response(item).model_dump()  # type: ignore[arg-type]
                        yield f"event: complete\ndata: {json.dumps(body)}\n\n"
                    else:
                        yield f"event: error\ndata: {json.dumps(item)}\n\n"
            finally:
                if worker.is_alive():
                    dep.model_cache.stop_generation()

        return StreamingResponse(iter_sse(), media_type="text/event-stream")

    @app.post("/generation/stop", status_code=status.HTTP_202_ACCEPTED)
    async def stop_generation(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        dep.model_cache.stop_generation()
        return {"status": "stopping"}

    @app.post("/models/preload", status_code=status.HTTP_202_ACCEPTED)
    async def preload_model(payload: PreloadRequest, dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        dep.model_cache.preload(payload.model_path)
        return {"status": dep.model_cache.preload_status().value}

    @app.get("/models/status", response_model=ModelStatusResponse)
    def model_status(dep: AppDependencies = Depends(get_dependencies)) -> ModelStatusResponse:
        cache = dep.model_cache
        stats = cache.prompt_cache_stats()
        return ModelStatusResponse(
            loaded=cache.is_loaded,
            model_path=cache.current_path,
            preload_status=cache.preload_status().value,
            preload_error=cache.preload_error,
            prompt_cache=PromptCacheModel(has_entry=stats.has_entry, hits=stats.hits, hit_rate=stats.hit_rate),
        )

    @app.delete("/models", status_code=status.HTTP_204_NO_CONTENT)
    def clear_models(dep: AppDependencies = Depends(get_dependencies)) -> Response:
        dep.model_cache.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


def _status_for(exc: LocalRAGError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _history(payload: QueryRequest) -> list[ConversationMessage]:
    return [ConversationMessage(role=message.role, content=message.content) for message in payload.history]


def _result_model(result: SearchResult) -> SearchResultModel:
    return SearchResultModel(
        chunk_id=result.chunk_id,
        document_id=result.document_id,
        file_name=result.file_name,
        chunk_index=result.chunk_index,
        page_number=result.page_number,
        score=result.score,
        text=result.text,
    )


def _query_response(answer: Answer) -> QueryResponse:
    return QueryResponse(
        query_id=answer.query_id,
        answer=answer.text,
        citations=[_result_model(result) for result in answer.citations],
        sources=[
            SourceModel(
                document_name=source.document_name,
                chunk_index=source.chunk_index,
                page_number=source.page_number,
            )
            for source in answer.sources
        ],
        latency_ms=answer.latency_ms,
        retrieval_ms=answer.retrieval_ms,
        generation_ms=answer.generation_ms,
        stop_reason=answer.stop_reason.value if answer.stop_reason else None,
    )


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("localrag.api.app:create_app", factory=True, host=settings.api_host, port=settings.api_port)
