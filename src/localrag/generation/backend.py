"""Interfaces between the generation loop and a local inference runtime."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Protocol, Sequence


@dataclass(frozen=True)
class SamplerConfig:
    """Sampler chain settings; the fixed seed keeps runs reproducible."""

    temperature: float = 0.5
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    penalty_last_n: int = 256
    seed: int = 42


class InferenceContext(Protocol):
    """Per-call model state holding the key/value cache."""

    def decode(self, tokens: Sequence[int], start_pos: int, logits_last: bool) -> None:
        """Feed ``tokens`` at positions starting from ``start_pos``."""


class TokenSampler(Protocol):
    def sample(self, context: InferenceContext) -> int:
        """Pick the next token from the context's latest logits."""

    def accept(self, token: int) -> None:
        """Record ``token`` so repetition penalties see it."""


class InferenceBackend(Protocol):
    """A loaded model plus its tokenizer."""

    def tokenize(self, text: str) -> List[int]:
        ...

    def create_context(self, n_ctx: int, n_batch: int) -> InferenceContext:
        ...

    def create_sampler(self, config: SamplerConfig) -> TokenSampler:
        ...

    def is_end_of_generation(self, token: int) -> bool:
        ...

    def token_to_piece(self, token: int) -> str:
        ...

    def close(self) -> None:
        ...


BackendLoader = Callable[[str], InferenceBackend]


def transformers_loader(gpu_layers: int = 0, device: str | None = None) -> BackendLoader:
    """Return a loader that opens local Hugging Face model directories."""

    def load(path: str) -> InferenceBackend:
        from localrag.generation.transformers_backend import TransformersBackend

        return TransformersBackend.load(path, gpu_layers=gpu_layers, device=device)

    return load


__all__ = [
    "BackendLoader",
    "InferenceBackend",
    "InferenceContext",
    "SamplerConfig",
    "TokenSampler",
    "transformers_loader",
]
