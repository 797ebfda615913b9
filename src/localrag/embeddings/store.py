"""Chunk persistence: vectors and text in Chroma, a BM25 index for keyword search."""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Iterator, List, Mapping, MutableMapping, Protocol, Sequence, Tuple

import chromadb
import numpy as np
from chromadb.api import ClientAPI
from rank_bm25 import BM25Okapi

from localrag.models import Chunk, Embedding, SearchResult

LOGGER = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+", re.UNICODE)
_PAGE_SIZE = 1000


def tokenize_for_index(text: str) -> List[str]:
    return [token.lower() for token in _TOKEN.findall(text)]


class ChunkStore(Protocol):
    """Protocol for chunk persistence backends."""

    def put_chunks(self, chunks: Sequence[Chunk], embeddings: Sequence[Embedding]) -> Sequence[str]:
        """Persist chunks with their embeddings, keyed by (document_id, chunk_index)."""

    def delete_document(self, document_id: str) -> int:
        """Remove every chunk of a document and return how many were removed."""

    def iter_vectors(self) -> Iterator[Tuple[Chunk, Embedding]]:
        """Yield every stored chunk with its embedding."""

    def keyword_search(self, terms: Sequence[str], limit: int) -> Sequence[SearchResult]:
        """Return chunks ranked by BM25 score for the given terms."""

    def count(self) -> int:
        """Return total number of stored chunks."""

    def document_ids(self) -> Sequence[str]:
        """Return the ids of every document with stored chunks."""

    def reset(self) -> None:
        """Remove all stored chunks."""


class _KeywordIndex:
    """BM25 snapshot over the chunk texts present when it was built."""

    def __init__(self, chunks: Sequence[Chunk]) -> None:
        self.chunks = list(chunks)
        self.tokens = [tokenize_for_index(chunk.text) for chunk in self.chunks]
        self._bm25 = BM25Okapi(self.tokens) if self.chunks else None

    def search(self, terms: Sequence[str], limit: int) -> List[SearchResult]:
        if self._bm25 is None or not terms or limit <= 0:
            return []
        query = [term.lower() for term in terms]
        scores = np.asarray(self._bm25.get_scores(query), dtype=float)
        wanted = set(query)
        matching = [i for i, tokens in enumerate(self.tokens) if wanted.intersection(tokens)]
        # stable: equal scores keep insertion order
        matching.sort(key=lambda i: -scores[i])
        return [SearchResult.from_chunk(self.chunks[i], float(scores[i])) for i in matching[:limit]]


class ChromaChunkStore:
    """Chroma-backed chunk store with an in-process BM25 keyword index."""

    def __init__(
        self,
        collection_name: str = "localrag-chunks",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection_name = collection_name
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._index: _KeywordIndex | None = None
        self._index_lock = threading.Lock()

    def put_chunks(self, chunks: Sequence[Chunk], embeddings: Sequence[Embedding]) -> Sequence[str]:
        if len(chunks) != len(embeddings):
            raise ValueError("Every chunk needs exactly one embedding")
        if not chunks:
            return []
        ids = [chunk.chunk_id for chunk in chunks]
        self._collection.upsert(
            ids=ids,
            documents=[chunk.text for chunk in chunks],
            embeddings=[list(embedding.vector) for embedding in embeddings],
            metadatas=[self._serialize_chunk(chunk) for chunk in chunks],
        )
        self._invalidate_index()
        return ids

    def delete_document(self, document_id: str) -> int:
        existing = self._collection.get(where={"document_id": document_id}, include=["metadatas"])
        ids = list(existing.get("ids") or [])
        if ids:
            self._collection.delete(ids=ids)
            self._invalidate_index()
        LOGGER.info("Deleted %d chunks for document %s", len(ids), document_id)
        return len(ids)

    def iter_vectors(self) -> Iterator[Tuple[Chunk, Embedding]]:
        for batch in self._pages(include=["documents", "metadatas", "embeddings"]):
            ids = batch.get("ids") or []
            documents = batch.get("documents") or []
            metadatas = batch.get("metadatas") or []
            embeddings = batch.get("embeddings")
            if embeddings is None:
                embeddings = []
            for chunk_id, document, metadata, vector in zip(ids, documents, metadatas, embeddings):
                if vector is None:
                    continue
                yield self._deserialize_chunk(chunk_id, document, metadata), Embedding.from_sequence(vector)

    def keyword_search(self, terms: Sequence[str], limit: int) -> Sequence[SearchResult]:
        return self._keyword_index().search(terms, limit)

    def count(self) -> int:
        return int(self._collection.count())

    def document_ids(self) -> Sequence[str]:
        seen: dict[str, None] = {}
        for batch in self._pages(include=["metadatas"]):
            for metadata in batch.get("metadatas") or []:
                if isinstance(metadata, Mapping):
                    seen.setdefault(str(metadata.get("document_id", "")), None)
        return list(seen)

    def reset(self) -> None:
        self._client.delete_collection(self._collection_name)
        self._collection = self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._invalidate_index()

    def _pages(self, include: list[str]) -> Iterator[Mapping[str, object]]:
        offset = 0
        while True:
            batch = self._collection.get(include=include, limit=_PAGE_SIZE, offset=offset)
            ids = batch.get("ids") or []
            if not ids:
                return
            yield batch
            if len(ids) < _PAGE_SIZE:
                return
            offset += _PAGE_SIZE

    def _keyword_index(self) -> _KeywordIndex:
        with self._index_lock:
            if self._index is None:
                chunks = list(self._iter_chunks())
                chunks.sort(key=lambda c: (c.document_id, c.ordinal_index))
                self._index = _KeywordIndex(chunks)
                LOGGER.debug("Rebuilt keyword index over %d chunks", len(chunks))
            return self._index

    def _iter_chunks(self) -> Iterator[Chunk]:
        for batch in self._pages(include=["documents", "metadatas"]):
            for chunk_id, document, metadata in zip(
                batch.get("ids") or [], batch.get("documents") or [], batch.get("metadatas") or []
            ):
                yield self._deserialize_chunk(chunk_id, document, metadata)

    def _invalidate_index(self) -> None:
        with self._index_lock:
            self._index = None

    @staticmethod
    def _serialize_chunk(chunk: Chunk) -> MutableMapping[str, object]:
        metadata: MutableMapping[str, object] = {
            "document_id": chunk.document_id,
            "chunk_index": chunk.ordinal_index,
            "file_name": chunk.file_name,
        }
        if chunk.page_number is not None:
            metadata["page_number"] = chunk.page_number
        return metadata

    @staticmethod
    def _deserialize_chunk(chunk_id: str, document: str | None, metadata: Mapping[str, object] | None) -> Chunk:
        metadata = metadata or {}
        page = metadata.get("page_number")
        return Chunk(
            chunk_id=chunk_id,
            document_id=str(metadata.get("document_id", "")),
            text=document or "",
            ordinal_index=int(metadata.get("chunk_index", 0)),
            file_name=str(metadata.get("file_name", "")),
            page_number=int(page) if page is not None else None,
        )
