"""Local model loading and streaming generation."""

from .backend import BackendLoader, InferenceBackend, InferenceContext, SamplerConfig, TokenSampler, transformers_loader
from .cache import STOP_MARKERS, CachedModel, GenerationConfig, ModelCache
from .degeneracy import DegeneracyConfig, check_degeneracy

__all__ = [
    "BackendLoader",
    "CachedModel",
    "DegeneracyConfig",
    "GenerationConfig",
    "InferenceBackend",
    "InferenceContext",
    "ModelCache",
    "STOP_MARKERS",
    "SamplerConfig",
    "TokenSampler",
    "check_degeneracy",
    "transformers_loader",
]
