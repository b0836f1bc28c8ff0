"""
Cross-project federated search.

One concurrent task per active project runs the single-project search;
per-project scores are min-max normalized, multiplied by the project's
weight and a freshness boost, then merged into one ranking.

    final_score = normalized_similarity * project_weight * freshness_boost
    freshness_boost = 1 + 0.2 * exp(-ln2 * days_since_last_access / 30)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from .config import FederationSettings, SearchSettings, StoreConfig
from .errors import (
    IndexCorruptionError,
    KnotworkError,
    ProviderError,
    SearchCancelledError,
    SearchFailedError,
)
from .federation import FederationManager
from .providers.gateway import ProviderGateway
from .registry import ProjectRegistry
from .searcher import SearchHit, SingleProjectSearcher, generate_snippet
from .types import Project, days_since, decay

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class FederatedResult:
    """A search result ranked across projects."""
    project_id: str
    project_name: str
    node_id: str
    title: str
    snippet: str
    raw_similarity: float
    normalized_similarity: float
    project_weight: float
    freshness_boost: float
    final_score: float
    spatial_key: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def freshness_boost(
    last_accessed_at: Optional[str],
    now: Optional[datetime] = None,
    max_boost: float = 0.2,
    half_life_days: float = 30.0,
) -> float:
    """
    1 + max_boost * exp(-ln2 * days / half_life), bounded to [1, 1 + max_boost].

    Unparseable or missing timestamps get no boost.
    """
    if not last_accessed_at:
        return 1.0
    try:
        days = days_since(last_accessed_at, now)
    except (ValueError, TypeError):
        return 1.0
    boost = 1.0 + max_boost * decay(days, half_life_days)
    return min(1.0 + max_boost, max(1.0, boost))


def normalize_scores(similarities: Sequence[float]) -> list[float]:
    """
    Min-max normalize to [0, 1].

    A single value, or all-equal values, normalize to 1.0.
    """
    if not similarities:
        return []
    lo = min(similarities)
    hi = max(similarities)
    if hi - lo == 0:
        return [1.0] * len(similarities)
    return [(s - lo) / (hi - lo) for s in similarities]


class CrossProjectSearcher:
    """Federated search over the active projects of a registry."""

    def __init__(
        self,
        registry: ProjectRegistry,
        federation: FederationManager,
        gateway: ProviderGateway,
        config: Optional[StoreConfig] = None,
    ):
        self._registry = registry
        self._federation = federation
        self._gateway = gateway
        self._search = config.search if config else SearchSettings()
        self._fed = config.federation if config else FederationSettings()
        self._searcher = SingleProjectSearcher(federation, self._search)

    @staticmethod
    def _check_cancel(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SearchCancelledError("Search cancelled")

    async def embed_query(self, query: str) -> list[float]:
        """
        Raises:
            SearchFailedError: no query vector could be obtained
        """
        strict = not self._search.allow_embedding_fallback
        try:
            embedding = await self._gateway.embed(query, strict=strict)
        except ProviderError as e:
            raise SearchFailedError(f"Could not embed query: {e}") from e
        if not embedding:
            raise SearchFailedError("Could not embed query: empty vector")
        return embedding

    def _projects(self, project_ids: Optional[list[str]]) -> list[Project]:
        if project_ids is None:
            return self._registry.list_projects(active_only=True)
        projects = []
        for pid in project_ids:
            project = self._registry.get_project(pid)
            if project is None:
                logger.warning("Unknown project %s skipped", pid)
            elif project.active:
                projects.append(project)
        return projects

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
        apply_weights: bool = True,
        apply_freshness: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[FederatedResult]:
        """
        Search all active projects (or the given ones) for a text query.

        Raises:
            SearchFailedError: the query could not be embedded
            SearchCancelledError: cancel_event was set
        """
        if not query or not query.strip():
            return []
        self._check_cancel(cancel_event)
        embedding = await self.embed_query(query)
        return await self.search_embedding(
            embedding,
            top_k=top_k,
            project_ids=project_ids,
            apply_weights=apply_weights,
            apply_freshness=apply_freshness,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )

    async def search_embedding(
        self,
        query_embedding: Sequence[float],
        top_k: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
        apply_weights: bool = True,
        apply_freshness: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        touch_projects: bool = True,
    ) -> list[FederatedResult]:
        """
        Federated search with a precomputed query embedding.

        ``touch_projects=False`` leaves last_accessed_at alone, for internal
        callers that search on the user's behalf.
        """
        if top_k is None:
            top_k = self._search.default_top_k
        projects = self._projects(project_ids)
        if not projects or top_k <= 0:
            return []

        semaphore = asyncio.Semaphore(max(1, self._fed.max_concurrent_searches))
        total = len(projects)
        floor = self._search.similarity_floor

        async def run(project: Project, position: int) -> Optional[list[SearchHit]]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                if on_progress is not None:
                    on_progress(project.id, position, total)
                try:
                    return await asyncio.to_thread(
                        self._searcher.search,
                        project.id,
                        query_embedding,
                        top_k,
                        None,
                        floor,
                    )
                except IndexCorruptionError as e:
                    logger.warning("Skipping project %s: %s", project.id, e.reason)
                except Exception as e:
                    self._federation.mark_degraded(project.id, str(e))
                    logger.warning("Skipping project %s: %s", project.id, e)
                return None

        outcomes = await asyncio.gather(
            *(run(p, i + 1) for i, p in enumerate(projects))
        )
        self._check_cancel(cancel_event)

        results: dict[tuple[str, str], FederatedResult] = {}
        searched = []
        for project, hits in zip(projects, outcomes):
            if hits is None:
                continue
            searched.append(project.id)
            weight = project.weight if apply_weights else 1.0
            boost = 1.0
            if apply_freshness:
                boost = freshness_boost(
                    project.last_accessed_at,
                    max_boost=self._search.freshness_max_boost,
                    half_life_days=self._search.freshness_half_life_days,
                )
            normalized = normalize_scores([h.raw_similarity for h in hits])
            for hit, norm in zip(hits, normalized):
                key = (hit.project_id, hit.node_id)
                result = FederatedResult(
                    project_id=hit.project_id,
                    project_name=project.name,
                    node_id=hit.node_id,
                    title=hit.title,
                    snippet=hit.snippet,
                    raw_similarity=hit.raw_similarity,
                    normalized_similarity=norm,
                    project_weight=weight,
                    freshness_boost=boost,
                    final_score=norm * weight * boost,
                    spatial_key=hit.spatial_key,
                )
                existing = results.get(key)
                if existing is None or result.final_score > existing.final_score:
                    results[key] = result

        ranked = sorted(
            results.values(),
            key=lambda r: (-r.final_score, r.project_id, r.node_id),
        )[:top_k]

        if touch_projects:
            for pid in searched:
                self._registry.touch_project(pid)

        logger.info(
            "Cross-project search: %d results from %d/%d projects",
            len(ranked), len(searched), total,
        )
        return ranked

    async def batch_search(
        self,
        queries: Sequence[str],
        top_k: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict[str, list[FederatedResult]]:
        """
        Run ``search`` for each query in turn, keyed by query.

        A query that fails gets an empty list and the batch goes on;
        cancellation stops the whole batch.
        """
        results: dict[str, list[FederatedResult]] = {}
        for query in queries:
            try:
                results[query] = await self.search(
                    query, top_k=top_k, project_ids=project_ids, cancel_event=cancel_event,
                )
            except SearchCancelledError:
                raise
            except KnotworkError as e:
                logger.warning("Batch search failed for %r: %s", query, e)
                results[query] = []
        return results

    async def search_within_project(
        self,
        project_id: str,
        query: str,
        top_k: int = 20,
    ) -> list[FederatedResult]:
        """Single-project mode: normalized similarity only, no weight or boost."""
        if not query or not query.strip():
            return []
        embedding = await self.embed_query(query)
        project = self._registry.get_project(project_id)
        hits = await asyncio.to_thread(
            self._searcher.search, project_id, embedding, top_k,
        )
        normalized = normalize_scores([h.raw_similarity for h in hits])
        results = [
            FederatedResult(
                project_id=project_id,
                project_name=project.name if project else project_id,
                node_id=h.node_id,
                title=h.title,
                snippet=h.snippet,
                raw_similarity=h.raw_similarity,
                normalized_similarity=n,
                project_weight=1.0,
                freshness_boost=1.0,
                final_score=n,
                spatial_key=h.spatial_key,
            )
            for h, n in zip(hits, normalized)
        ]
        results.sort(key=lambda r: (-r.final_score, r.node_id))
        return results[:top_k]

    def text_search(
        self,
        query: str,
        top_k: int = 20,
        project_ids: Optional[list[str]] = None,
    ) -> list[FederatedResult]:
        """
        Substring search over titles and text.

        For callers to fall back on when the query cannot be embedded.
        Title matches score 1.0, text-only matches 0.5.
        """
        if not query or not query.strip():
            return []
        projects = {p.id: p for p in self._projects(project_ids)}
        if not projects:
            return []
        nodes = self._federation.store.search_text(
            query.strip(), list(projects), limit=max(top_k * 5, top_k)
        )
        needle = query.strip().lower()
        results = []
        for node in nodes:
            project = projects[node.project_id]
            score = 1.0 if needle in (node.title or "").lower() else 0.5
            results.append(FederatedResult(
                project_id=node.project_id,
                project_name=project.name,
                node_id=node.id,
                title=node.title or "Untitled",
                snippet=generate_snippet(node.text),
                raw_similarity=0.0,
                normalized_similarity=score,
                project_weight=project.weight,
                freshness_boost=1.0,
                final_score=score,
                spatial_key=node.spatial_key,
            ))
        results.sort(key=lambda r: (-r.final_score, r.project_id, r.node_id))
        return results[:top_k]
