from __future__ import annotations

import uuid
from pathlib import Path

import chromadb
import pytest

from fakes import ScriptedLoader

from localrag.embeddings.service import EmbeddingConfig, EmbeddingPipeline, HashEmbeddingBackend
from localrag.embeddings.store import ChromaChunkStore
from localrag.errors import IngestionError, InvalidParameters, UnsupportedFileTypeError
from localrag.generation import ModelCache
from localrag.ingestion.service import DocumentIngestor, IngestionConfig, document_id_for


def _ingestor(model_cache: ModelCache | None = None, **config) -> tuple[DocumentIngestor, ChromaChunkStore]:
    embedding_config = EmbeddingConfig(dim=16)
    pipeline = EmbeddingPipeline(HashEmbeddingBackend(embedding_config), embedding_config)
    store = ChromaChunkStore(f"test-{uuid.uuid4().hex}", client=chromadb.EphemeralClient())
    return DocumentIngestor(pipeline, store, model_cache, IngestionConfig(**config)), store


def test_ingest_text_stores_ordered_chunks():
    ingestor, store = _ingestor(chunk_size=50, chunk_overlap=10)
    text = " ".join(f"word{i}" for i in range(120))
    result = ingestor.ingest_text("report.txt", text)
    assert result.document_id == document_id_for("report.txt")
    assert result.chunk_count == store.count() > 1
    chunks = sorted((chunk for chunk, _ in store.iter_vectors()), key=lambda chunk: chunk.ordinal_index)
    assert [chunk.ordinal_index for chunk in chunks] == list(range(result.chunk_count))
    assert all(chunk.file_name == "report.txt" for chunk in chunks)
    assert chunks[0].chunk_id == f"{result.document_id}-0"


def test_reingesting_a_document_replaces_its_chunks():
    ingestor, store = _ingestor(chunk_size=50, chunk_overlap=10)
    long_text = " ".join(f"word{i}" for i in range(200))
    ingestor.ingest_text("notes.txt", long_text, document_id="notes")
    ingestor.ingest_text("notes.txt", "Short replacement text.", document_id="notes")
    assert store.count() == 1


def test_ingest_text_normalizes_whitespace():
    ingestor, store = _ingestor()
    ingestor.ingest_text("spaces.txt", "Revenue  grew \t strongly.\r\n\r\nCosts fell.")
    (chunk, _), = list(store.iter_vectors())
    assert chunk.text == "Revenue grew strongly. Costs fell."


def test_blank_document_is_rejected():
    ingestor, _ = _ingestor()
    with pytest.raises(IngestionError):
        ingestor.ingest_text("empty.txt", "   \n\n  ")


def test_invalid_chunk_configuration_is_rejected():
    with pytest.raises(InvalidParameters):
        _ingestor(chunk_size=100, chunk_overlap=100)


def test_ingestion_invalidates_the_prompt_cache():
    cache = ModelCache(loader=ScriptedLoader())
    cache.get_or_load("/models/a")
    cache.generate("prompt", 5)
    assert cache.prompt_cache_stats().has_entry

    ingestor, _ = _ingestor(cache)
    result = ingestor.ingest_text("report.txt", "Revenue grew.")
    assert cache.prompt_cache_stats().has_entry is False

    cache.generate("prompt", 5)
    assert ingestor.delete_document(result.document_id) == 1
    assert cache.prompt_cache_stats().has_entry is False


def test_ingest_paths_reads_text_files(tmp_path: Path):
    path = tmp_path / "guide.md"
    path.write_text("Setup\n\nInstall the package and run the server.", encoding="utf-8")
    ingestor, store = _ingestor()
    progress: list[tuple[int, int]] = []
    (result,) = ingestor.ingest_paths([path], progress_callback=lambda done, total: progress.append((done, total)))
    assert result.file_name == "guide.md"
    assert result.document_id == document_id_for(str(path.resolve()))
    assert progress == [(1, 1)]
    assert store.document_ids() == [result.document_id]


def test_unsupported_and_missing_files_are_rejected(tmp_path: Path):
    ingestor, _ = _ingestor()
    with pytest.raises(UnsupportedFileTypeError):
        ingestor.ingest_paths([tmp_path / "image.png"])
    with pytest.raises(IngestionError):
        ingestor.ingest_paths([tmp_path / "missing.txt"])
