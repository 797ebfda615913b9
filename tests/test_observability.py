from __future__ import annotations

from prometheus_client import REGISTRY

from localrag.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    get_correlation_id,
)


def test_correlation_id_binding_round_trip():
    bind_correlation_id("abc123")
    assert get_correlation_id() == "abc123"
    clear_correlation_id()
    assert get_correlation_id() == "-"


def test_generation_stops_are_counted_by_reason():
    labels = {"reason": "block_repetition"}
    before = REGISTRY.get_sample_value("localrag_generation_stops_total", labels) or 0.0
    PipelineMetrics.observe_generation(0.5, 12, "block_repetition")
    assert REGISTRY.get_sample_value("localrag_generation_stops_total", labels) == before + 1


def test_prompt_cache_lookups_split_hits_and_misses():
    hit_before = REGISTRY.get_sample_value("localrag_prompt_cache_lookups_total", {"result": "hit"}) or 0.0
    PipelineMetrics.observe_prompt_cache(True)
    PipelineMetrics.observe_prompt_cache(False)
    assert REGISTRY.get_sample_value("localrag_prompt_cache_lookups_total", {"result": "hit"}) == hit_before + 1
