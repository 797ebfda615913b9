"""Document ingestion pipeline."""

from .chunker import MAX_CHUNK_WORDS, chunk_text, is_heading, validate_chunk_parameters
from .service import DocumentIngestor, IngestedDocument, IngestionConfig, document_id_for

__all__ = [
    "DocumentIngestor",
    "IngestedDocument",
    "IngestionConfig",
    "MAX_CHUNK_WORDS",
    "chunk_text",
    "document_id_for",
    "is_heading",
    "validate_chunk_parameters",
]
