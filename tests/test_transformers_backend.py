from __future__ import annotations

from types import SimpleNamespace

import pytest
import torch

from localrag.errors import DecodeFailed, ModelNotFound
from localrag.generation.backend import SamplerConfig, transformers_loader
from localrag.generation.transformers_backend import TorchSampler, TransformersBackend, TransformersContext


class _StubModel:
    """Returns logits favouring token 2 and records each forward call."""

    def __init__(self, vocab: int = 5) -> None:
        self.vocab = vocab
        self.calls: list[tuple[list[int], object]] = []

    def __call__(self, input_ids, past_key_values=None, use_cache=True):
        self.calls.append((input_ids[0].tolist(), past_key_values))
        logits = torch.zeros(1, input_ids.shape[1], self.vocab)
        logits[0, -1, 2] = 5.0
        return SimpleNamespace(logits=logits, past_key_values=len(self.calls))


def _context(logits: list[float]) -> SimpleNamespace:
    return SimpleNamespace(logits=torch.tensor(logits))


def test_context_threads_past_key_values_between_decodes():
    model = _StubModel()
    context = TransformersContext(model, "cpu", n_ctx=16, n_batch=4)
    context.decode([1, 2, 3], 0, False)
    assert context.logits is None
    context.decode([4], 3, True)
    assert model.calls == [([1, 2, 3], None), ([4], 1)]
    assert int(torch.argmax(context.logits)) == 2


def test_context_rejects_bad_batches_and_positions():
    context = TransformersContext(_StubModel(), "cpu", n_ctx=4, n_batch=2)
    with pytest.raises(DecodeFailed):
        context.decode([1, 2, 3], 0, True)
    with pytest.raises(DecodeFailed):
        context.decode([1], 1, True)
    context.decode([1, 2], 0, False)
    context.decode([3, 4], 2, True)
    with pytest.raises(DecodeFailed):
        context.decode([5], 4, True)


def test_sampler_with_top_k_one_is_greedy():
    sampler = TorchSampler(SamplerConfig(top_k=1))
    assert sampler.sample(_context([0.1, 3.0, 0.2, -1.0])) == 1


def test_sampler_is_reproducible_for_a_seed():
    logits = [1.0, 1.1, 0.9, 1.05, 0.95]
    first = [TorchSampler(SamplerConfig(seed=7)).sample(_context(logits)) for _ in range(3)]
    second = [TorchSampler(SamplerConfig(seed=7)).sample(_context(logits)) for _ in range(3)]
    assert first == second


def test_repeat_penalty_discourages_accepted_tokens():
    sampler = TorchSampler(SamplerConfig(top_k=1, repeat_penalty=10.0))
    assert sampler.sample(_context([2.0, 1.0, 0.5])) == 0
    sampler.accept(0)
    assert sampler.sample(_context([2.0, 1.0, 0.5])) == 1


def test_sampler_requires_logits():
    with pytest.raises(DecodeFailed):
        TorchSampler(SamplerConfig()).sample(SimpleNamespace(logits=None))


def test_loading_a_missing_model_directory_fails(tmp_path):
    with pytest.raises(ModelNotFound):
        TransformersBackend.load(str(tmp_path / "absent"))
    with pytest.raises(ModelNotFound):
        transformers_loader()(str(tmp_path / "absent"))


def test_top_p_keeps_only_the_nucleus():
    sampler = TorchSampler(SamplerConfig(temperature=1.0, top_k=0, top_p=0.5))
    draws = {sampler.sample(_context([6.0, 0.0, 0.0, 0.0])) for _ in range(20)}
    assert draws == {0}
