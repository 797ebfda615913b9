"""Error taxonomy shared by the localrag pipeline."""

from __future__ import annotations


class LocalRAGError(RuntimeError):
    """Base class for all errors raised by localrag."""


class InvalidParameters(LocalRAGError, ValueError):
    """Raised when a caller passes a configuration that cannot work."""


class EmbeddingFailed(LocalRAGError):
    """Raised when the embedding model fails or returns unusable vectors."""


class IngestionError(LocalRAGError):
    """Raised when ingestion fails for a particular document."""


class UnsupportedFileTypeError(IngestionError):
    """Raised when a document extension is not supported by the ingestor."""


class ModelError(LocalRAGError):
    """Base class for model cache failures."""


class ModelNotFound(ModelError):
    """Raised when the requested model path does not exist."""


class ModelLoadFailed(ModelError):
    """Raised when weights exist but cannot be loaded."""


class NoModelLoaded(ModelError):
    """Raised when generation is requested before any model is loaded."""


class GenerationError(LocalRAGError):
    """Base class for failures during a single generation call."""


class PromptTooLarge(GenerationError):
    """Raised when the prompt does not fit the safe context budget."""

    def __init__(self, token_count: int, limit: int) -> None:
        super().__init__(
            f"Prompt is too large ({token_count} tokens, limit {limit}). "
            "Try asking a shorter question or removing some documents."
        )
        self.token_count = token_count
        self.limit = limit


class TokenizationFailed(GenerationError):
    """Raised when the prompt cannot be tokenized."""


class ContextCreationFailed(GenerationError):
    """Raised when the model cannot allocate an inference context."""


class DecodeFailed(GenerationError):
    """Raised when the model fails while decoding prompt or generated tokens."""


__all__ = [
    "ContextCreationFailed",
    "DecodeFailed",
    "EmbeddingFailed",
    "GenerationError",
    "IngestionError",
    "InvalidParameters",
    "LocalRAGError",
    "ModelError",
    "ModelLoadFailed",
    "ModelNotFound",
    "NoModelLoaded",
    "PromptTooLarge",
    "TokenizationFailed",
    "UnsupportedFileTypeError",
]
