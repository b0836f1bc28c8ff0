"""
OpenAI providers.

Requires the optional 'openai' package and KNOTWORK_OPENAI_API_KEY or
OPENAI_API_KEY.
"""

import os

from .base import get_registry


def _client(api_key: str | None):
    try:
        from openai import OpenAI
    except ImportError:
        raise RuntimeError("OpenAI providers require the 'openai' library (pip install knotwork[openai])")

    key = api_key or os.environ.get("KNOTWORK_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not key:
        raise ValueError(
            "OpenAI API key required. Set KNOTWORK_OPENAI_API_KEY or OPENAI_API_KEY"
        )
    return OpenAI(api_key=key)


class OpenAIEmbedding:
    """Embedding provider using OpenAI's embeddings API."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 512,
        api_key: str | None = None,
    ):
        self.model = model
        self._dimension = dimensions
        self._client = _client(api_key)

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self._client.embeddings.create(
            model=self.model,
            input=texts,
            dimensions=self._dimension,
        )
        return [item.embedding for item in response.data]


class OpenAIGeneration:
    """Generation provider using OpenAI's chat API."""

    def __init__(self, model: str = "gpt-4o-mini", api_key: str | None = None):
        self.model = model
        self._client = _client(api_key)

    def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 256,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=0.0,
        )
        if response.choices:
            return (response.choices[0].message.content or "").strip()
        return ""


_registry = get_registry()
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_generation("openai", OpenAIGeneration)
