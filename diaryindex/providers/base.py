"""
Base provider protocol and registry.

Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Optional, Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    A provider must return vectors of a fixed dimension for a given model.
    Calls may be slow (network) and may fail; they must honour the
    timeout they are given so a build can stay within its deadline.

    Example implementation:
        class ConstantEmbedding:
            model_name = "constant"

            def embed(self, text: str, *, timeout: float | None = None) -> list[float]:
                return [1.0, 0.0, 0.0]
    """

    model_name: str

    def embed(self, text: str, *, timeout: Optional[float] = None) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed
            timeout: Seconds the call may take at most; None for the
                provider's own default

        Returns:
            A list of floats representing the embedding vector

        Raises:
            EmbeddingAPIError: If the provider rejected the request
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry of available embedding provider implementations.

    Concrete providers register themselves on import; the user's
    `ai.embedding_provider` setting selects one by name.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("openai", OpenAICompatibleEmbedding)

        # Later, from settings:
        provider = registry.create_embedding("openai", {"model": "text-embedding-3-small", ...})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Import triggers registration; it only registers classes
        from . import embeddings  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """
        Create an embedding provider instance.

        Raises:
            ValueError: If no provider is registered under name
            RuntimeError: If the provider cannot be constructed
        """
        self._ensure_providers_loaded()
        if name not in self._embedding_providers:
            available = ", ".join(self._embedding_providers.keys()) or "none"
            raise ValueError(
                f"Unknown embedding provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._embedding_providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create embedding provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except (TypeError, ValueError) as e:
            raise RuntimeError(
                f"Failed to create embedding provider '{name}': {e}"
            ) from e

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
