"""
Async provider gateway with timeout and deterministic fallback.

Every call resolves to either the live result or the fallback value. A
caller that must not accept the fallback (cross-project search embedding
the query) passes strict=True and gets ProviderTimeoutError or
ProviderUnavailableError instead.
"""

import asyncio
import logging
from typing import Optional

from ..config import StoreConfig
from ..errors import ProviderTimeoutError, ProviderUnavailableError
from .base import EmbeddingProvider, GenerationProvider, get_registry
from .fallback import HashEmbedding, TemplateGeneration

logger = logging.getLogger(__name__)


class ProviderGateway:
    """
    Narrow async interface over one live and one fallback adapter per kind.

    Live calls are synchronous and run in a worker thread under
    asyncio.wait_for.
    """

    def __init__(
        self,
        embedder: Optional[EmbeddingProvider] = None,
        generator: Optional[GenerationProvider] = None,
        *,
        fallback_embedder: Optional[EmbeddingProvider] = None,
        fallback_generator: Optional[GenerationProvider] = None,
        timeout: float = 5.0,
    ):
        self.fallback_embedder = fallback_embedder or HashEmbedding()
        self.fallback_generator = fallback_generator or TemplateGeneration()
        self.embedder = embedder or self.fallback_embedder
        self.generator = generator or self.fallback_generator
        self.timeout = timeout
        self.fallback_count = 0

    @classmethod
    def from_config(cls, config: StoreConfig) -> "ProviderGateway":
        """
        Build live adapters from the store config.

        A live provider that cannot be constructed (missing library, no API
        key) is logged and replaced by its fallback.
        """
        registry = get_registry()
        dimension = config.providers.embedding_dimension
        fallback_embedder = HashEmbedding(dimension=dimension)
        fallback_generator = TemplateGeneration()

        embedder = None
        if config.embedding.name != "hash":
            try:
                embedder = registry.create_embedding(config.embedding.name, config.embedding.params)
            except (RuntimeError, ValueError) as e:
                logger.warning("Embedding provider %s unavailable, using fallback: %s",
                               config.embedding.name, e)
        else:
            fallback_embedder = registry.create_embedding(
                "hash", {"dimension": dimension, **config.embedding.params}
            )

        generator = None
        if config.generation.name != "template":
            try:
                generator = registry.create_generation(config.generation.name, config.generation.params)
            except (RuntimeError, ValueError) as e:
                logger.warning("Generation provider %s unavailable, using fallback: %s",
                               config.generation.name, e)

        return cls(
            embedder,
            generator,
            fallback_embedder=fallback_embedder,
            fallback_generator=fallback_generator,
            timeout=config.providers.timeout_seconds,
        )

    @property
    def embedding_is_live(self) -> bool:
        return self.embedder is not self.fallback_embedder

    @property
    def generation_is_live(self) -> bool:
        return self.generator is not self.fallback_generator

    async def _call(self, kind: str, func, *args, strict: bool = False, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("%s provider timed out after %.1fs", kind, self.timeout)
            if strict:
                raise ProviderTimeoutError(f"{kind} provider timed out after {self.timeout}s")
        except Exception as e:
            logger.warning("%s provider failed: %s", kind, e)
            if strict:
                raise ProviderUnavailableError(f"{kind} provider failed: {e}") from e
        self.fallback_count += 1
        return None

    async def embed(self, text: str, strict: bool = False) -> list[float]:
        """
        Embed text with the live provider, falling back on error/timeout.

        Raises:
            ProviderTimeoutError, ProviderUnavailableError: only when strict
        """
        if self.embedding_is_live:
            result = await self._call("Embedding", self.embedder.embed, text, strict=strict)
            if result:
                return list(result)
            if result is not None:
                logger.warning("Embedding provider returned an empty vector")
                if strict:
                    raise ProviderUnavailableError("Embedding provider returned an empty vector")
                self.fallback_count += 1
        return self.fallback_embedder.embed(text)

    async def embed_batch(self, texts: list[str], strict: bool = False) -> list[list[float]]:
        if self.embedding_is_live and texts:
            result = await self._call("Embedding", self.embedder.embed_batch, texts, strict=strict)
            if result and len(result) == len(texts):
                return [list(v) for v in result]
        return self.fallback_embedder.embed_batch(texts)

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        strict: bool = False,
        max_tokens: int = 256,
    ) -> str:
        """
        Generate text with the live provider, falling back on error/timeout.

        Raises:
            ProviderTimeoutError, ProviderUnavailableError: only when strict
        """
        if self.generation_is_live:
            result = await self._call(
                "Generation", self.generator.generate, prompt,
                strict=strict, system=system, max_tokens=max_tokens,
            )
            if result is not None:
                return result
        return self.fallback_generator.generate(prompt, system=system, max_tokens=max_tokens)
