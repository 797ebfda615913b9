"""Inference backend running causal language models through Transformers."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Deque, List, Sequence

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    LogitsProcessorList,
    RepetitionPenaltyLogitsProcessor,
    TemperatureLogitsWarper,
    TopKLogitsWarper,
    TopPLogitsWarper,
)

from localrag.errors import DecodeFailed, ModelLoadFailed, ModelNotFound
from localrag.generation.backend import SamplerConfig

LOGGER = logging.getLogger(__name__)


class TransformersContext:
    """Keeps ``past_key_values`` between decode calls so each step only feeds new tokens."""

    def __init__(self, model, device: str, n_ctx: int, n_batch: int) -> None:
        self._model = model
        self._device = device
        self._n_ctx = n_ctx
        self._n_batch = n_batch
        self._past = None
        self.position = 0
        self.logits: torch.Tensor | None = None

    def decode(self, tokens: Sequence[int], start_pos: int, logits_last: bool) -> None:
        if not tokens:
            return
        if len(tokens) > self._n_batch:
            raise DecodeFailed(f"Batch of {len(tokens)} tokens exceeds the batch size of {self._n_batch}")
        if start_pos != self.position:
            raise DecodeFailed(f"Decode at position {start_pos} but the context is at {self.position}")
        if start_pos + len(tokens) > self._n_ctx:
            raise DecodeFailed(f"Context window of {self._n_ctx} tokens exhausted")
        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=self._device)
        with torch.no_grad():
            output = self._model(input_ids=input_ids, past_key_values=self._past, use_cache=True)
        self._past = output.past_key_values
        self.position = start_pos + len(tokens)
        self.logits = output.logits[0, -1, :].detach() if logits_last else None


class TorchSampler:
    """Repetition penalty, temperature, top-k and top-p, then a seeded draw."""

    def __init__(self, config: SamplerConfig) -> None:
        self._config = config
        self._generator = torch.Generator(device="cpu").manual_seed(config.seed)
        self._history: Deque[int] = deque(maxlen=max(config.penalty_last_n, 1))
        self._penalty = (
            RepetitionPenaltyLogitsProcessor(penalty=float(config.repeat_penalty))
            if config.repeat_penalty != 1.0
            else None
        )
        self._warpers = LogitsProcessorList([TemperatureLogitsWarper(max(float(config.temperature), 1e-5))])
        if config.top_k > 0:
            self._warpers.append(TopKLogitsWarper(top_k=config.top_k))
        if 0.0 < config.top_p < 1.0:
            self._warpers.append(TopPLogitsWarper(top_p=float(config.top_p)))

    def sample(self, context: TransformersContext) -> int:
        if context.logits is None:
            raise DecodeFailed("No logits available to sample from")
        scores = context.logits.float().cpu().clone().unsqueeze(0)
        history = torch.tensor([sorted(set(self._history))], dtype=torch.long)

        if self._penalty is not None and self._history:
            scores = self._penalty(history, scores)
        scores = self._warpers(history, scores)

        probs = torch.softmax(scores, dim=-1)
        return int(torch.multinomial(probs[0], 1, generator=self._generator).item())

    def accept(self, token: int) -> None:
        self._history.append(token)


class TransformersBackend:
    """Local causal LM and tokenizer loaded from a model directory."""

    def __init__(self, model, tokenizer, device: str = "cpu") -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._device = device
        eos = getattr(model.generation_config, "eos_token_id", None) or tokenizer.eos_token_id
        if isinstance(eos, int):
            eos = [eos]
        self._eos_ids = frozenset(eos or [])

    @classmethod
    def load(cls, path: str, *, gpu_layers: int = 0, device: str | None = None) -> "TransformersBackend":
        model_dir = Path(path)
        if not model_dir.exists():
            raise ModelNotFound(f"Model not found at {path}")
        if device is None:
            device = "cuda" if gpu_layers > 0 and torch.cuda.is_available() else "cpu"
        LOGGER.info("Loading model from %s on %s (gpu_layers=%d)", path, device, gpu_layers)
        try:
            tokenizer = AutoTokenizer.from_pretrained(model_dir, local_files_only=True)
            model = AutoModelForCausalLM.from_pretrained(model_dir, local_files_only=True)
            model.to(device)
            model.eval()
        except Exception as exc:
            raise ModelLoadFailed(f"Failed to load model from {path}: {exc}") from exc
        LOGGER.info("Loaded generation model %s", path)
        return cls(model, tokenizer, device)

    def tokenize(self, text: str) -> List[int]:
        return list(self._tokenizer(text, add_special_tokens=True)["input_ids"])

    def create_context(self, n_ctx: int, n_batch: int) -> TransformersContext:
        return TransformersContext(self._model, self._device, n_ctx, n_batch)

    def create_sampler(self, config: SamplerConfig) -> TorchSampler:
        return TorchSampler(config)

    def is_end_of_generation(self, token: int) -> bool:
        return token in self._eos_ids

    def token_to_piece(self, token: int) -> str:
        return self._tokenizer.decode([token], skip_special_tokens=False)

    def close(self) -> None:
        self._model = None
        if self._device.startswith("cuda"):
            torch.cuda.empty_cache()
