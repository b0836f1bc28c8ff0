"""
Shared pytest fixtures for knotwork tests.

Provides deterministic mock providers so no model server or network is
needed, and tmp_path-backed stores.
"""

import hashlib
import math
import random
import time

import pytest

from knotwork.config import StoreConfig
from knotwork.federation import FederationManager
from knotwork.link_store import LinkStore
from knotwork.linker import Linker
from knotwork.memory import InteractionMemory, InteractionStore
from knotwork.node_store import NodeStore
from knotwork.providers.gateway import ProviderGateway
from knotwork.registry import ProjectRegistry
from knotwork.types import Node


def unit(vector):
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector] if norm else list(vector)


def random_unit_vectors(count: int, dimension: int, seed: int = 7) -> list[list[float]]:
    rng = random.Random(seed)
    return [unit([rng.gauss(0.0, 1.0) for _ in range(dimension)]) for _ in range(count)]


def block_vector(values, block: int = 64) -> list[float]:
    """Embedding whose blockavg reduction to len(values) dims gives ``values``."""
    return [v for v in values for _ in range(block)]


def make_node(node_id: str, project_id: str, embedding=None, title=None, text=None, **kwargs) -> Node:
    return Node(
        id=node_id,
        project_id=project_id,
        title=title if title is not None else node_id,
        text=text if text is not None else f"Text of {node_id}",
        embedding=embedding,
        **kwargs,
    )


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no model loading.
    """

    dimension = 32

    def __init__(self):
        self.embed_calls = 0
        self.batch_calls = 0

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        values = [int(h[i:i + 2], 16) / 255.0 - 0.5 for i in range(0, 32, 2)]
        return unit((values * 2)[:self.dimension])

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class SlowEmbeddingProvider(MockEmbeddingProvider):
    """Sleeps past any reasonable gateway timeout."""

    def __init__(self, delay: float = 1.0):
        super().__init__()
        self.delay = delay

    def embed(self, text: str) -> list[float]:
        time.sleep(self.delay)
        return super().embed(text)


class FailingEmbeddingProvider(MockEmbeddingProvider):
    def embed(self, text: str) -> list[float]:
        raise RuntimeError("embedding service down")

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding service down")


class MockGenerationProvider:
    """Returns a canned response and records prompts."""

    def __init__(self, response: str = '{"relation": "supports", "confidence": 0.9, "rationale": "Backs it up"}'):
        self.response = response
        self.prompts: list[str] = []

    def generate(self, prompt: str, *, system=None, max_tokens: int = 256) -> str:
        self.prompts.append(prompt)
        return self.response


class FailingGenerationProvider:
    def generate(self, prompt: str, *, system=None, max_tokens: int = 256) -> str:
        raise RuntimeError("generation service down")


@pytest.fixture
def mock_embedding_provider():
    return MockEmbeddingProvider()


@pytest.fixture
def node_store(tmp_path):
    with NodeStore(tmp_path / "nodes.db") as store:
        yield store


@pytest.fixture
def federation(node_store):
    return FederationManager(node_store)


@pytest.fixture
def registry(tmp_path):
    with ProjectRegistry(tmp_path / "projects.db") as reg:
        yield reg


@pytest.fixture
def link_store(tmp_path):
    with LinkStore(tmp_path / "links.db") as store:
        yield store


@pytest.fixture
def linker(link_store):
    return Linker(link_store)


@pytest.fixture
def memory(tmp_path):
    with InteractionStore(tmp_path / "interactions.db") as store:
        yield InteractionMemory(store)


@pytest.fixture
def gateway(mock_embedding_provider):
    """Gateway whose live embedder is the mock and whose generator is the template fallback."""
    return ProviderGateway(mock_embedding_provider, timeout=2.0)


@pytest.fixture
def store_config(tmp_path):
    return StoreConfig(path=tmp_path / "store")


@pytest.fixture
def workspace(store_config, gateway):
    from knotwork.api import Workspace

    ws = Workspace(config=store_config, gateway=gateway)
    yield ws
    ws.close()
