"""
Single-project semantic search.

Range scan around the query's spatial key with a widening radius, then
exact cosine re-rank of the candidates. Projects without quantization
params are searched by linear scan.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import SearchSettings
from .errors import ValidationError
from .federation import FederationManager
from .spatial_key import encode_embedding, max_key
from .types import Node

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity. 0.0 for mismatched lengths or a zero vector."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def generate_snippet(text: Optional[str], max_length: int = 140) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length].strip() + "..."


@dataclass
class SearchHit:
    """A node matched within one project."""
    project_id: str
    node_id: str
    title: str
    snippet: str
    raw_similarity: float
    spatial_key: Optional[str] = None


def default_radii(key_bits: int, settings: Optional[SearchSettings] = None) -> list[int]:
    """
    Scan radii for a key space of ``key_bits`` bits.

    The first radius is 2^(key_bits - radius_headroom_bits), so it covers the
    same fraction of the key space whatever D and B are; each widening
    multiplies it by 2^radius_growth_bits.
    """
    settings = settings or SearchSettings()
    base = 1 << max(key_bits - settings.radius_headroom_bits, 0)
    return [base << (settings.radius_growth_bits * i) for i in range(settings.max_radius_widenings + 1)]


class SingleProjectSearcher:
    """Search one project's spatial index."""

    def __init__(self, federation: FederationManager, settings: Optional[SearchSettings] = None):
        self._federation = federation
        self._store = federation.store
        self._settings = settings or SearchSettings()

    def search(
        self,
        project_id: str,
        query_embedding: Sequence[float],
        top_k: int = 10,
        radii: Optional[list[int]] = None,
        similarity_floor: Optional[float] = None,
        subtree_root_id: Optional[str] = None,
    ) -> list[SearchHit]:
        """
        Top-k nodes of a project by cosine similarity to the query.

        Candidates come from up to len(radii) range scans with widening
        radius, stopping as soon as there are at least ``top_k``. If every
        radius comes up short, the ``limit`` keys nearest the query key are
        taken wherever they lie. When a project has no params, or holds no
        more embedded nodes than the candidate budget and the scans came up
        short, every embedded node is scored instead.

        Raises:
            ValidationError: empty query embedding
            IndexCorruptionError: the project's index is unusable
        """
        if not query_embedding:
            raise ValidationError("Query embedding is empty")
        if top_k <= 0:
            return []

        limit = top_k * self._settings.candidate_multiplier
        index = self._federation.get_index(project_id)

        candidate_ids: Optional[list[str]] = None
        with index.lock:
            params = self._federation.get_quant_params(project_id)
            if params is not None and index.size() > 0:
                query_key = encode_embedding(query_embedding, params)
                for radius in radii or default_radii(params.key_bits, self._settings):
                    candidate_ids = index.range_scan(query_key, radius, limit, params)
                    if len(candidate_ids) >= top_k:
                        break
                    logger.debug(
                        "Radius %d gave %d candidates in %s, widening",
                        radius, len(candidate_ids), project_id,
                    )
                else:
                    # Still short: take the keys nearest the query anywhere
                    # in the key space
                    candidate_ids = index.range_scan(query_key, max_key(params), limit, params)

        if candidate_ids is None:
            logger.debug("No quantization params for %s, linear scan", project_id)
            nodes = self._store.list_nodes(project_id, embedded_only=True)
        elif len(candidate_ids) < top_k and self._store.count_embedded(project_id) <= limit:
            nodes = self._store.list_nodes(project_id, embedded_only=True)
        else:
            nodes = list(self._store.get_nodes(project_id, candidate_ids).values())

        if subtree_root_id is not None:
            allowed = self.subtree_ids(project_id, subtree_root_id)
            nodes = [n for n in nodes if n.id in allowed]

        return self._rerank(project_id, query_embedding, nodes, top_k, similarity_floor)

    def linear_scan(
        self,
        project_id: str,
        query_embedding: Sequence[float],
        top_k: int = 10,
        similarity_floor: Optional[float] = None,
    ) -> list[SearchHit]:
        """Exact search over every embedded node of a project."""
        nodes = self._store.list_nodes(project_id, embedded_only=True)
        return self._rerank(project_id, query_embedding, nodes, top_k, similarity_floor)

    def subtree_ids(self, project_id: str, root_id: str) -> set[str]:
        """Ids of ``root_id`` and all of its descendants."""
        children: dict[str, set[str]] = {}
        for node in self._store.list_nodes(project_id):
            children.setdefault(node.id, set()).update(node.child_ids)
            if node.parent_id:
                children.setdefault(node.parent_id, set()).add(node.id)

        seen = {root_id}
        frontier = [root_id]
        while frontier:
            current = frontier.pop()
            for child in children.get(current, ()):
                if child not in seen:
                    seen.add(child)
                    frontier.append(child)
        return seen

    @staticmethod
    def _rerank(
        project_id: str,
        query_embedding: Sequence[float],
        nodes: list[Node],
        top_k: int,
        similarity_floor: Optional[float],
    ) -> list[SearchHit]:
        hits = []
        for node in nodes:
            if not node.has_embedding:
                continue
            sim = cosine_similarity(query_embedding, node.embedding)
            if similarity_floor is not None and sim < similarity_floor:
                continue
            hits.append(SearchHit(
                project_id=project_id,
                node_id=node.id,
                title=node.title or "Untitled",
                snippet=generate_snippet(node.text),
                raw_similarity=sim,
                spatial_key=node.spatial_key,
            ))
        hits.sort(key=lambda h: (-h.raw_similarity, h.node_id))
        return hits[:top_k]
