"""
Provider interfaces and implementations.

Live providers (Ollama, OpenAI) are selected by name from knotwork.toml;
the deterministic hash/template providers are the fallback for every call.
"""

from .base import (
    EmbeddingProvider,
    GenerationProvider,
    ProviderRegistry,
    get_registry,
)
from .fallback import HashEmbedding, TemplateGeneration
from .gateway import ProviderGateway

__all__ = [
    "EmbeddingProvider",
    "GenerationProvider",
    "ProviderRegistry",
    "get_registry",
    "HashEmbedding",
    "TemplateGeneration",
    "ProviderGateway",
]
