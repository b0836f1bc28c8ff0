"""
Base provider protocols.

These define the interfaces that concrete embedding and generation
providers must implement. Using Protocol for structural subtyping - no
explicit inheritance required.

Provider calls here are synchronous; ProviderGateway adds the timeout and
fallback policy and the async surface used by search and suggestion.
"""

from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider must be used for indexing and querying: spatial keys
    and cosine scores are only meaningful between vectors from one model.

    Example implementation:
        class HashEmbedding:
            @property
            def dimension(self) -> int:
                return 512

            def embed(self, text: str) -> list[float]:
                ...

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return [self.embed(t) for t in texts]
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed

        Returns:
            A list of floats representing the embedding vector
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, one per input text
        """
        ...


# -----------------------------------------------------------------------------
# Text Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class GenerationProvider(Protocol):
    """
    Generates text from a prompt.

    Used to label link suggestions with a relation type.
    """

    def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 256,
    ) -> str:
        """
        Args:
            prompt: User prompt
            system: Optional system prompt
            max_tokens: Upper bound on generated tokens

        Returns:
            Generated text
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and instantiated from configuration,
    so the store's knotwork.toml selects providers by name.

    Example:
        registry = get_registry()
        provider = registry.create_embedding("ollama", {"model": "nomic-embed-text"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._generation_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load all provider modules."""
        if self._lazy_loaded:
            return

        self._lazy_loaded = True

        # Importing a provider module registers its classes
        from . import fallback, ollama, openai  # noqa: F401

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def register_generation(self, name: str, provider_class: type) -> None:
        """Register a generation provider class."""
        self._generation_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_generation(self, name: str, params: dict | None = None) -> GenerationProvider:
        """Create a generation provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("generation", name, self._generation_providers, params)

    # Introspection

    def list_embedding_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())

    def list_generation_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return list(self._generation_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
