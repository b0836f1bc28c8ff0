"""
Deterministic providers.

Used when no live backend is configured and as the fallback value whenever
a live call errors or times out. Same input always gives the same output.
"""

import hashlib
import math
import re

from .base import get_registry

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _hash_vector(token: str, dimension: int, seed: str) -> list[float]:
    """Pseudo-random vector in [-1, 1]^dimension derived from sha256."""
    values: list[float] = []
    block = 0
    while len(values) < dimension:
        digest = hashlib.sha256(f"{seed}:{token}:{block}".encode("utf-8")).digest()
        values.extend((b / 255.0) * 2.0 - 1.0 for b in digest)
        block += 1
    return values[:dimension]


class HashEmbedding:
    """
    Unit-length embeddings from hashed tokens.

    Each lowercase word token maps to a fixed pseudo-random vector; a text
    embeds as the normalized sum of its token vectors, so texts sharing
    words have positive cosine similarity. Text with no word tokens hashes
    as a whole.
    """

    def __init__(self, dimension: int = 512, seed: str = "knotwork"):
        self._dimension = int(dimension)
        self.seed = seed

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall((text or "").lower()) or [text or ""]
        vector = [0.0] * self._dimension
        for token in tokens:
            for i, v in enumerate(_hash_vector(token, self._dimension, self.seed)):
                vector[i] += v
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class TemplateGeneration:
    """Deterministic text: the first sentence of the prompt, trimmed."""

    def __init__(self, max_chars: int = 200):
        self.max_chars = max_chars

    def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 256,
    ) -> str:
        text = " ".join((prompt or "").split())
        first = re.split(r"(?<=[.!?])\s", text, maxsplit=1)[0]
        return first[: self.max_chars]


_registry = get_registry()
_registry.register_embedding("hash", HashEmbedding)
_registry.register_generation("template", TemplateGeneration)
