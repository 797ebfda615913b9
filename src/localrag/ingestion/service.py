"""Document ingestion: extract, chunk, embed and store."""

from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence
from uuid import NAMESPACE_URL, uuid5

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader, TextLoader
from langchain_community.document_loaders.base import BaseLoader
from langchain_core.documents import Document as LCDocument

from localrag.embeddings.service import EmbeddingPipeline, ProgressCallback
from localrag.embeddings.store import ChunkStore
from localrag.errors import IngestionError, UnsupportedFileTypeError
from localrag.generation.cache import ModelCache
from localrag.ingestion.chunker import chunk_text, validate_chunk_parameters
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import Chunk, chunk_id_for

_HORIZONTAL_SPACE = re.compile(r"[ \t\f\v]+")


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for document ingestion."""

    chunk_size: int = 800
    chunk_overlap: int = 200
    encoding: str = "utf-8"


@dataclass(frozen=True)
class IngestedDocument:
    document_id: str
    file_name: str
    chunk_count: int


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ").replace("\r\n", "\n")
    lines = [_HORIZONTAL_SPACE.sub(" ", line).strip() for line in normalized.split("\n")]
    return "\n".join(lines).strip()


def document_id_for(name: str) -> str:
    return uuid5(NAMESPACE_URL, name).hex


class DocumentIngestor:
    """Chunks extracted text, embeds it in parallel and persists it.

    Any write invalidates the prompt cache of the loaded model so that stale
    document context is never reported as a cache hit.
    """

    _LOADERS: Mapping[str, type[BaseLoader]] = {
        ".pdf": PyPDFLoader,
        ".docx": Docx2txtLoader,
        ".txt": TextLoader,
        ".md": TextLoader,
    }

    _logger = get_logger("ingestion")

    def __init__(
        self,
        pipeline: EmbeddingPipeline,
        store: ChunkStore,
        model_cache: ModelCache | None = None,
        config: IngestionConfig | None = None,
    ) -> None:
        self._config = config or IngestionConfig()
        validate_chunk_parameters(self._config.chunk_size, self._config.chunk_overlap)
        self._pipeline = pipeline
        self._store = store
        self._model_cache = model_cache

    def ingest_text(
        self,
        file_name: str,
        text: str,
        document_id: str | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> IngestedDocument:
        document = LCDocument(page_content=text, metadata={"source": file_name})
        return self._ingest_documents(file_name, [document], document_id, progress_callback)

    def ingest_paths(
        self,
        paths: Sequence[Path],
        progress_callback: ProgressCallback | None = None,
    ) -> List[IngestedDocument]:
        results: List[IngestedDocument] = []
        for path in paths:
            documents = self._load(Path(path))
            document_id = document_id_for(str(Path(path).resolve()))
            results.append(self._ingest_documents(Path(path).name, documents, document_id, progress_callback))
        return results

    def delete_document(self, document_id: str) -> int:
        removed = self._store.delete_document(document_id)
        self._invalidate_prompt_cache()
        self._logger.info("ingestion.deleted", document_id=document_id, chunk_count=removed)
        return removed

    def _ingest_documents(
        self,
        file_name: str,
        documents: Sequence[LCDocument],
        document_id: str | None,
        progress_callback: ProgressCallback | None,
    ) -> IngestedDocument:
        start = time.perf_counter()
        document_id = document_id or document_id_for(file_name)
        chunks: List[Chunk] = []
        for document in documents:
            page = document.metadata.get("page")
            page_number = int(page) + 1 if isinstance(page, int) else None
            texts = chunk_text(
                _normalize_text(document.page_content),
                self._config.chunk_size,
                self._config.chunk_overlap,
            )
            for text in texts:
                ordinal = len(chunks)
                chunks.append(
                    Chunk(
                        chunk_id=chunk_id_for(document_id, ordinal),
                        document_id=document_id,
                        text=text,
                        ordinal_index=ordinal,
                        file_name=file_name,
                        page_number=page_number,
                    )
                )
        if not chunks:
            raise IngestionError(f"No text could be extracted from {file_name}")

        embeddings = self._pipeline.embed_parallel([chunk.text for chunk in chunks], progress_callback)
        self._store.delete_document(document_id)
        self._store.put_chunks(chunks, embeddings)
        self._invalidate_prompt_cache()

        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(chunks))
        self._logger.info(
            "ingestion.complete",
            file_name=file_name,
            document_id=document_id,
            chunk_count=len(chunks),
            duration_seconds=duration,
        )
        return IngestedDocument(document_id=document_id, file_name=file_name, chunk_count=len(chunks))

    def _load(self, path: Path) -> Sequence[LCDocument]:
        suffix = path.suffix.lower()
        loader_cls = self._LOADERS.get(suffix)
        if loader_cls is None:
            raise UnsupportedFileTypeError(f"Unsupported document type: {suffix or '<none>'}")
        try:
            loader = self._build_loader(loader_cls, path)
            return loader.load()
        except Exception as exc:
            raise IngestionError(f"Failed to load {path}: {exc}") from exc

    def _build_loader(self, loader_cls: type[BaseLoader], path: Path) -> BaseLoader:
        if loader_cls is TextLoader:
            return loader_cls(str(path), encoding=self._config.encoding)
        return loader_cls(str(path))

    def _invalidate_prompt_cache(self) -> None:
        if self._model_cache is not None:
            self._model_cache.invalidate_prompt_cache()
