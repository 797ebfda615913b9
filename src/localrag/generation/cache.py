"""Model cache and the streaming generation loop.

``ModelCache`` keeps at most one loaded model. ``CachedModel`` runs the
token-by-token loop: prompt ingestion in batches, sampling, cooperative
cancellation, stop markers and degeneracy checks, with output flushed to the
caller in small character batches.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from localrag.errors import (
    ContextCreationFailed,
    DecodeFailed,
    InvalidParameters,
    LocalRAGError,
    NoModelLoaded,
    PromptTooLarge,
    TokenizationFailed,
)
from localrag.generation.backend import BackendLoader, InferenceBackend, SamplerConfig, transformers_loader
from localrag.generation.degeneracy import DegeneracyConfig, SimilarityTracker, check_degeneracy
from localrag.metrics.observability import PipelineMetrics
from localrag.models import GenerationResult, PreloadStatus, PromptCacheEntry, PromptCacheStats, StopReason

LOGGER = logging.getLogger(__name__)

STOP_MARKERS = ("</s>", "<|endoftext|>", "<|end|>", "<|im_end|>", "<|im_start|>")

TokenBatchCallback = Callable[[str], None]


@dataclass(frozen=True)
class GenerationConfig:
    """Limits and tuning for generation calls."""

    context_window_tokens: int = 8192
    safe_prompt_tokens: int = 7000
    prompt_batch_size: int = 2048
    token_ceiling: int = 8192
    stream_buffer_chars: int = 2
    cache_enabled: bool = True
    stop_markers: tuple[str, ...] = STOP_MARKERS
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    degeneracy: DegeneracyConfig = field(default_factory=DegeneracyConfig)


class CachedModel:
    """A loaded inference backend plus the bookkeeping for its last prompt."""

    def __init__(self, backend: InferenceBackend, path: str, config: GenerationConfig | None = None) -> None:
        self._backend = backend
        self.path = path
        self._config = config or GenerationConfig()
        self.cache_enabled = self._config.cache_enabled
        self._prompt_cache: PromptCacheEntry | None = None
        self._prompt_cache_lock = threading.Lock()

    @staticmethod
    def hash_prompt(prompt: str) -> str:
        return hashlib.sha256(prompt.encode("utf-8")).hexdigest()

    def invalidate_prompt_cache(self) -> None:
        with self._prompt_cache_lock:
            if self._prompt_cache is not None:
                LOGGER.info("Invalidating prompt cache after document changes")
            self._prompt_cache = None

    def prompt_cache_stats(self) -> PromptCacheStats:
        with self._prompt_cache_lock:
            entry = self._prompt_cache
            if entry is None:
                return PromptCacheStats(has_entry=False, hits=0, hit_rate=0.0)
            hit_rate = entry.hit_count / (entry.hit_count + 1) * 100.0 if entry.hit_count else 0.0
            return PromptCacheStats(has_entry=True, hits=entry.hit_count, hit_rate=hit_rate)

    def generate(self, prompt: str, max_tokens: int) -> str:
        return self.complete(prompt, max_tokens).text

    def generate_streaming(
        self,
        prompt: str,
        max_tokens: int,
        on_token_batch: TokenBatchCallback,
        cancel_event: threading.Event | None = None,
    ) -> str:
        return self.complete(prompt, max_tokens, on_token_batch=on_token_batch, cancel_event=cancel_event).text

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        on_token_batch: TokenBatchCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> GenerationResult:
        config = self._config
        if max_tokens <= 0:
            raise InvalidParameters("max_tokens must be greater than 0")
        if max_tokens > config.token_ceiling:
            LOGGER.warning(
                "max_tokens %d exceeds recommended limit of %d, capping", max_tokens, config.token_ceiling
            )
            max_tokens = config.token_ceiling

        start = time.perf_counter()
        try:
            tokens = self._backend.tokenize(prompt)
        except Exception as exc:
            raise TokenizationFailed(f"Failed to tokenize prompt: {exc}") from exc
        LOGGER.info("Tokenized prompt into %d tokens", len(tokens))
        if len(tokens) > config.safe_prompt_tokens:
            LOGGER.error("Prompt of %d tokens exceeds safe limit of %d", len(tokens), config.safe_prompt_tokens)
            raise PromptTooLarge(len(tokens), config.safe_prompt_tokens)

        try:
            context = self._backend.create_context(config.context_window_tokens, config.prompt_batch_size)
        except Exception as exc:
            raise ContextCreationFailed(f"Failed to create context: {exc}") from exc

        prompt_hash = self.hash_prompt(prompt)
        cache_hit = self._lookup_prompt(prompt_hash)

        for offset in range(0, len(tokens), config.prompt_batch_size):
            batch = tokens[offset : offset + config.prompt_batch_size]
            is_final = offset + len(batch) == len(tokens)
            try:
                context.decode(batch, offset, is_final)
            except Exception as exc:
                raise DecodeFailed(f"Failed to decode prompt batch at {offset}: {exc}") from exc

        self._record_prompt(prompt_hash, len(tokens), cache_hit)

        budget = min(max_tokens, config.context_window_tokens - len(tokens))
        if budget < max_tokens:
            LOGGER.info("Limiting generation to %d tokens to fit the context window", budget)

        text, stop_reason, generated = self._generation_loop(
            context, len(tokens), budget, on_token_batch, cancel_event
        )
        elapsed = time.perf_counter() - start
        PipelineMetrics.observe_generation(elapsed, generated, stop_reason.value)
        LOGGER.info(
            "Generation finished: %d tokens in %.2fs (%s)", generated, elapsed, stop_reason.value
        )
        stats = self.prompt_cache_stats()
        if stats.has_entry:
            LOGGER.debug("Prompt cache stats: %d hits, %.1f%% hit rate", stats.hits, stats.hit_rate)
        return GenerationResult(
            text=text,
            stop_reason=stop_reason,
            tokens_generated=generated,
            prompt_tokens=len(tokens),
            cache_hit=cache_hit,
            elapsed_seconds=elapsed,
        )

    def close(self) -> None:
        self.invalidate_prompt_cache()
        self._backend.close()

    def _generation_loop(
        self,
        context,
        position: int,
        budget: int,
        on_token_batch: TokenBatchCallback | None,
        cancel_event: threading.Event | None,
    ) -> tuple[str, StopReason, int]:
        config = self._config
        sampler = self._backend.create_sampler(config.sampler)
        tracker = SimilarityTracker(config.degeneracy)
        interval = max(config.degeneracy.check_interval, 1)
        response = ""
        buffer = ""
        generated = 0

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        def flush() -> None:
            nonlocal buffer
            if buffer and on_token_batch is not None:
                on_token_batch(buffer)
            buffer = ""

        for iteration in range(budget):
            if cancelled():
                flush()
                LOGGER.info("Generation stopped by request before sampling")
                return response, StopReason.CANCELLED, generated

            try:
                token = sampler.sample(context)
            except LocalRAGError:
                raise
            except Exception as exc:
                raise DecodeFailed(f"Failed to sample token: {exc}") from exc

            if cancelled():
                flush()
                LOGGER.info("Generation stopped by request after sampling")
                return response, StopReason.CANCELLED, generated

            if self._backend.is_end_of_generation(token):
                flush()
                LOGGER.info("End-of-generation token at iteration %d", iteration)
                return response, StopReason.END_OF_GENERATION, generated

            piece = self._backend.token_to_piece(token)
            if any(marker in piece for marker in config.stop_markers):
                flush()
                LOGGER.info("Stop marker at iteration %d", iteration)
                return response, StopReason.STOP_MARKER, generated

            sampler.accept(token)
            response += piece
            buffer += piece
            generated += 1

            if iteration % interval == 0:
                reason = check_degeneracy(response, config.degeneracy)
                if reason is None and tracker.update(response):
                    reason = StopReason.SIMILARITY_LOOP
                if reason is not None:
                    flush()
                    LOGGER.warning("Stopping generation: %s detected", reason.value)
                    return response, reason, generated

            if cancelled():
                flush()
                LOGGER.info("Generation stopped by request before flush")
                return response, StopReason.CANCELLED, generated

            last = iteration == budget - 1
            if len(buffer) >= config.stream_buffer_chars or last:
                flush()

            if cancelled():
                LOGGER.info("Generation stopped by request after flush")
                return response, StopReason.CANCELLED, generated

            if last:
                break
            try:
                context.decode([token], position, True)
            except Exception as exc:
                raise DecodeFailed(f"Failed to decode generated token: {exc}") from exc
            position += 1

        flush()
        return response, StopReason.MAX_TOKENS, generated

    def _lookup_prompt(self, prompt_hash: str) -> bool:
        if not self.cache_enabled:
            return False
        with self._prompt_cache_lock:
            hit = self._prompt_cache is not None and self._prompt_cache.prompt_hash == prompt_hash
        PipelineMetrics.observe_prompt_cache(hit)
        LOGGER.info("Prompt cache %s", "hit" if hit else "miss")
        return hit

    def _record_prompt(self, prompt_hash: str, token_count: int, cache_hit: bool) -> None:
        with self._prompt_cache_lock:
            if cache_hit and self._prompt_cache is not None:
                self._prompt_cache.hit_count += 1
            else:
                self._prompt_cache = PromptCacheEntry(prompt_hash=prompt_hash, token_count=token_count)


class ModelCache:
    """Holds the single loaded model and coordinates loading, preloading and stopping.

    Model state is guarded by one re-entrant lock. An exception raised while
    the lock is held is logged and re-raised after the lock is released, so a
    failed call never leaves the cache wedged.
    """

    def __init__(self, loader: BackendLoader | None = None, config: GenerationConfig | None = None) -> None:
        self._loader = loader or transformers_loader()
        self._config = config or GenerationConfig()
        self._lock = threading.RLock()
        self._status_lock = threading.Lock()
        self._model: CachedModel | None = None
        self._path: str | None = None
        self._preload_status = PreloadStatus.NOT_STARTED
        self._preload_error: str | None = None
        self._preload_ticket = 0
        self._stop_event = threading.Event()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def current_path(self) -> Optional[str]:
        return self._path

    @property
    def preload_error(self) -> Optional[str]:
        with self._status_lock:
            return self._preload_error

    def preload_status(self) -> PreloadStatus:
        with self._status_lock:
            return self._preload_status

    def get_or_load(self, path: str) -> str:
        """Make ``path`` the loaded model; returns ``"cached"`` or ``"loaded"``."""

        with self._guard("get_or_load"):
            if self._model is not None and self._path == path:
                LOGGER.info("Using already-loaded model %s", path)
                return "cached"
            self._evict()
            LOGGER.info("Loading new model: %s", path)
            start = time.perf_counter()
            backend = self._loader(path)
            self._install(backend, path)
            LOGGER.info("Model loaded in %.2fs", time.perf_counter() - start)
            return "loaded"

    def preload(self, path: str) -> threading.Thread:
        """Load ``path`` on a background thread and return that thread."""

        with self._status_lock:
            self._preload_ticket += 1
            ticket = self._preload_ticket
            self._preload_status = PreloadStatus.LOADING
            self._preload_error = None
        LOGGER.info("Starting background model preload of %s", path)
        thread = threading.Thread(
            target=self._run_preload, args=(path, ticket), name="model-preload", daemon=True
        )
        thread.start()
        return thread

    def cancel_preload(self) -> None:
        LOGGER.info("Preload cancelled")
        with self._status_lock:
            self._preload_status = PreloadStatus.CANCELLED

    def stop_generation(self) -> None:
        LOGGER.info("Stop generation requested")
        self._stop_event.set()

    def generate(self, prompt: str, max_tokens: int) -> str:
        with self._guard("generate"):
            return self._require_model().generate(prompt, max_tokens)

    def generate_streaming(
        self,
        prompt: str,
        max_tokens: int,
        on_token_batch: TokenBatchCallback,
        cancel_event: threading.Event | None = None,
    ) -> str:
        return self.complete(prompt, max_tokens, on_token_batch=on_token_batch, cancel_event=cancel_event).text

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        on_token_batch: TokenBatchCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> GenerationResult:
        """Run a generation; without ``cancel_event`` the shared stop flag is reset and used."""

        if cancel_event is None:
            self._stop_event.clear()
            cancel_event = self._stop_event
        with self._guard("generate"):
            return self._require_model().complete(
                prompt, max_tokens, on_token_batch=on_token_batch, cancel_event=cancel_event
            )

    def clear(self) -> None:
        LOGGER.info("Clearing model cache")
        with self._guard("clear"):
            self._evict()

    def invalidate_prompt_cache(self) -> None:
        with self._guard("invalidate_prompt_cache"):
            if self._model is not None:
                self._model.invalidate_prompt_cache()

    def prompt_cache_stats(self) -> PromptCacheStats:
        # Lock-free read: generation holds ``_lock`` for its whole run and the
        # entry is guarded by the model's own lock.
        model = self._model
        if model is None:
            return PromptCacheStats(has_entry=False, hits=0, hit_rate=0.0)
        return model.prompt_cache_stats()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except LocalRAGError:
                raise
            except Exception:
                LOGGER.exception("Model cache %s failed; cache state kept", operation)
                raise

    def _require_model(self) -> CachedModel:
        if self._model is None:
            raise NoModelLoaded("No model loaded in cache")
        return self._model

    def _install(self, backend: InferenceBackend, path: str) -> None:
        self._model = CachedModel(backend, path, self._config)
        self._path = path
        PipelineMetrics.model_loaded.set(1)

    def _evict(self) -> None:
        if self._model is None:
            return
        model, self._model, self._path = self._model, None, None
        PipelineMetrics.model_loaded.set(0)
        try:
            model.close()
        except Exception:
            LOGGER.exception("Failed to release model %s", model.path)

    def _run_preload(self, path: str, ticket: int) -> None:
        start = time.perf_counter()
        if self._path == path and self._model is not None:
            self._finish_preload(ticket, PreloadStatus.LOADED)
            return
        try:
            backend = self._loader(path)
        except Exception as exc:
            LOGGER.error("Model preload failed: %s", exc)
            self._finish_preload(ticket, PreloadStatus.FAILED, str(exc))
            return
        with self._lock, self._status_lock:
            if self._preload_status is PreloadStatus.CANCELLED or ticket != self._preload_ticket:
                stale = True
            else:
                stale = False
                self._evict()
                self._install(backend, path)
                self._preload_status = PreloadStatus.LOADED
        if stale:
            LOGGER.info("Discarding preloaded model %s", path)
            backend.close()
            return
        LOGGER.info("Model preloaded in %.2fs", time.perf_counter() - start)

    def _finish_preload(self, ticket: int, status: PreloadStatus, error: str | None = None) -> None:
        with self._status_lock:
            if ticket != self._preload_ticket or self._preload_status is PreloadStatus.CANCELLED:
                return
            self._preload_status = status
            self._preload_error = error


__all__ = ["CachedModel", "GenerationConfig", "ModelCache", "STOP_MARKERS", "TokenBatchCallback"]
