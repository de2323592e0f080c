"""
Embedding providers for diaryindex.

Concrete providers are auto-registered when this module is imported.
"""

from .base import EmbeddingProvider, ProviderRegistry, get_registry

# Importing concrete providers triggers registration
from .embeddings import (
    OllamaEmbedding,
    OpenAICompatibleEmbedding,
    UserEmbeddingResolver,
)

__all__ = [
    # Protocols
    "EmbeddingProvider",
    # Providers
    "OpenAICompatibleEmbedding",
    "OllamaEmbedding",
    "UserEmbeddingResolver",
    # Registry
    "ProviderRegistry",
    "get_registry",
]
