"""
Ollama providers over the local HTTP API.

Respects OLLAMA_HOST (default: http://localhost:11434).
"""

import logging
import os

import requests

from .base import get_registry

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama URL from an explicit value or OLLAMA_HOST."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_available(base_url: str | None = None) -> bool:
    try:
        resp = requests.get(f"{ollama_base_url(base_url)}/api/tags", timeout=5)
        return resp.ok
    except requests.RequestException:
        return False


class OllamaEmbedding:
    """Embedding provider using Ollama's /api/embed endpoint."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
        dimension: int | None = None,
    ):
        self.model = model
        self.base_url = ollama_base_url(base_url)
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension check"))
        return self._dimension

    def _post(self, inputs: list[str]) -> list[list[float]]:
        response = requests.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model, "input": inputs},
            timeout=(10, 120),  # (connect, read)
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama embedding failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        return response.json()["embeddings"]

    def embed(self, text: str) -> list[float]:
        return self._post([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._post(texts)


class OllamaGeneration:
    """Generation provider using Ollama's /api/chat endpoint."""

    def __init__(self, model: str = "llama3.2", base_url: str | None = None):
        self.model = model
        self.base_url = ollama_base_url(base_url)

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

        response = requests.post(
            f"{self.base_url}/api/chat",
            json={
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {"num_predict": max_tokens},
            },
            timeout=(10, 300),  # (connect, read)
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama generate failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        return response.json()["message"]["content"].strip()


_registry = get_registry()
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_generation("ollama", OllamaGeneration)
