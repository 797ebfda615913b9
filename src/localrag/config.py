"""Runtime configuration for the localrag services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="localrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    chroma_persist_dir: Path | None = Path("./.chroma")
    chroma_collection: str = "localrag-chunks"

    # Sentence-embedding model; vectors come back L2-normalised
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    embedding_cache_folder: str | None = None
    use_model_embeddings: bool = False
    embedding_small_corpus: int = 100
    embedding_medium_corpus: int = 1000
    embedding_small_batch: int = 32
    embedding_medium_batch: int = 64
    embedding_large_batch: int = 128
    embedding_max_workers: int | None = None

    # Chunking (words)
    chunk_size: int = 800
    chunk_overlap: int = 200

    # Retrieval
    retrieval_top_k: int = 8
    rrf_k: int = 60
    rrf_dense_weight: float = 1.2
    lexical_max_query_chars: int = 500

    # Query orchestration
    query_top_k: int = 10
    max_context_chunks: int = 8
    max_chunk_words_in_prompt: int = 1000
    conversation_history_messages: int = 3

    # Local generation model (directory with weights + tokenizer)
    model_path: str | None = None
    gpu_layers: int = 0
    generation_max_tokens: int = 2000
    generation_token_ceiling: int = 8192
    context_window_tokens: int = 8192
    safe_prompt_tokens: int = 7000
    prompt_batch_size: int = 2048
    stream_buffer_chars: int = 2
    prompt_cache_enabled: bool = True

    # Sampler chain
    sampler_temperature: float = 0.5
    sampler_top_k: int = 40
    sampler_top_p: float = 0.9
    sampler_repeat_penalty: float = 1.1
    sampler_penalty_last_n: int = 256
    sampler_seed: int = 42

    # Degeneracy heuristics
    degeneracy_check_interval: int = 10
    degeneracy_filler_threshold: int = 4
    degeneracy_sentence_repeats: int = 3
    degeneracy_similarity_threshold: float = 0.7
    degeneracy_similarity_strikes: int = 3
    degeneracy_window_chars: int = 100

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
