"""Pydantic models for the localrag API."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class TextIngestionRequest(BaseModel):
    """Payload for ingesting already-extracted document text."""

    file_name: str = Field(..., min_length=1, description="Display name used in prompts and citations")
    text: str = Field(..., min_length=1, description="Extracted document text")
    document_id: Optional[str] = Field(default=None, description="Replace the chunks of this document id")


class DocumentSummary(BaseModel):
    document_id: str = Field(..., description="Stable identifier for the ingested document")
    file_name: str
    chunk_count: int = Field(..., ge=0, description="Number of chunks created for the document")


class DocumentDeletionResponse(BaseModel):
    document_id: str
    removed_chunks: int


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    top_k: Optional[int] = Field(default=None, ge=1, le=50, description="Override the number of results")


class SearchResultModel(BaseModel):
    chunk_id: str
    document_id: str
    file_name: str
    chunk_index: int
    page_number: Optional[int] = None
    score: float
    text: str


class SearchResponse(BaseModel):
    results: List[SearchResultModel]


class ConversationMessageModel(BaseModel):
    role: str = Field(..., min_length=1)
    content: str


class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question to answer")
    top_k: Optional[int] = Field(default=None, ge=1, le=50, description="Override the number of retrieved chunks")
    model_path: Optional[str] = Field(default=None, description="Local model directory; defaults to settings")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Upper bound on generated tokens")
    history: List[ConversationMessageModel] = Field(default_factory=list, description="Earlier conversation turns")


class SourceModel(BaseModel):
    document_name: str
    chunk_index: Optional[int] = None
    page_number: Optional[int] = None


class QueryResponse(BaseModel):
    query_id: str
    answer: str
    citations: List[SearchResultModel]
    sources: List[SourceModel] = Field(default_factory=list)
    latency_ms: float
    retrieval_ms: Optional[float] = None
    generation_ms: Optional[float] = None
    stop_reason: Optional[str] = None


class PreloadRequest(BaseModel):
    model_path: str = Field(..., min_length=1)


class PromptCacheModel(BaseModel):
    has_entry: bool
    hits: int
    hit_rate: float


class ModelStatusResponse(BaseModel):
    loaded: bool
    model_path: Optional[str] = None
    preload_status: str
    preload_error: Optional[str] = None
    prompt_cache: PromptCacheModel
