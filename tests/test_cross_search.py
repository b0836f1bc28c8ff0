"""Tests for federated search across projects."""

import asyncio
import math
from datetime import datetime, timezone

import pytest

from knotwork.cross_search import CrossProjectSearcher, freshness_boost, normalize_scores
from knotwork.errors import SearchCancelledError, SearchFailedError
from knotwork.federation import FederationManager
from knotwork.providers.gateway import ProviderGateway

from conftest import FailingEmbeddingProvider, MockEmbeddingProvider, make_node

QUERY = [1.0, 0.0, 0.0, 0.0]
# cosine 0.9 to QUERY
NEAR = [0.9, math.sqrt(0.19), 0.0, 0.0]


@pytest.fixture
def searcher(registry, federation, gateway):
    return CrossProjectSearcher(registry, federation, gateway)


@pytest.fixture
def two_projects(registry, federation):
    """P1 weighted 2.0 and just accessed; P2 weighted 1.0, untouched for 60 days."""
    federation.add_project_index("p1", [make_node("n1", "p1", NEAR, title="First")])
    federation.add_project_index("p2", [make_node("n2", "p2", NEAR, title="Second")])
    registry.register_project("p1", weight=2.0, node_count=1, embedding_count=1)
    registry.register_project("p2", weight=1.0, node_count=1, embedding_count=1)
    registry.update_project("p2", last_accessed_at="2000-01-01T00:00:00.000000")
    return registry


class TestScoring:

    def test_freshness_bounds(self):
        now = datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert freshness_boost("2026-03-02T00:00:00.000000", now=now) == pytest.approx(1.2)
        assert freshness_boost("2026-01-31T00:00:00.000000", now=now) == pytest.approx(1.1)
        assert 1.0 <= freshness_boost("2000-01-01T00:00:00.000000", now=now) < 1.001

    def test_freshness_without_timestamp(self):
        assert freshness_boost(None) == 1.0
        assert freshness_boost("not a date") == 1.0

    def test_future_access_is_capped(self):
        now = datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert freshness_boost("2027-01-01T00:00:00.000000", now=now) == pytest.approx(1.2)

    def test_normalize(self):
        assert normalize_scores([]) == []
        assert normalize_scores([0.4]) == [1.0]
        assert normalize_scores([0.5, 0.5]) == [1.0, 1.0]
        assert normalize_scores([0.2, 0.6, 1.0]) == pytest.approx([0.0, 0.5, 1.0])


class TestFederatedSearch:

    @pytest.mark.asyncio
    async def test_weight_and_freshness_break_equal_similarity(self, searcher, two_projects):
        results = await searcher.search_embedding(QUERY, top_k=10)
        assert [r.project_id for r in results] == ["p1", "p2"]
        first, second = results
        assert first.raw_similarity == pytest.approx(0.9)
        assert second.raw_similarity == pytest.approx(0.9)
        assert first.final_score > second.final_score
        assert first.project_weight == 2.0
        assert first.freshness_boost > second.freshness_boost

    @pytest.mark.asyncio
    async def test_without_weights_and_freshness(self, searcher, two_projects):
        results = await searcher.search_embedding(
            QUERY, top_k=10, apply_weights=False, apply_freshness=False,
        )
        assert {r.final_score for r in results} == {1.0}
        # Equal scores order by project id
        assert [r.project_id for r in results] == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_top_k_bound(self, registry, federation, searcher):
        for pid in ("a", "b", "c"):
            federation.add_project_index(pid, [
                make_node(f"{pid}{i}", pid, [1.0, 0.1 * i, 0.0, 0.0]) for i in range(4)
            ])
            registry.register_project(pid)
        results = await searcher.search_embedding(QUERY, top_k=5)
        assert len(results) == 5
        scores = [r.final_score for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_search_touches_projects(self, searcher, two_projects):
        await searcher.search_embedding(QUERY)
        assert two_projects.get_project("p2").last_accessed_at > "2000-01-01T00:00:00.000000"

    @pytest.mark.asyncio
    async def test_zero_top_k_returns_nothing(self, searcher, two_projects):
        assert await searcher.search_embedding(QUERY, top_k=0) == []
        assert two_projects.get_project("p2").last_accessed_at == "2000-01-01T00:00:00.000000"
        assert len(await searcher.search_embedding(QUERY, top_k=None)) == 2

    @pytest.mark.asyncio
    async def test_inactive_and_unknown_projects_skipped(self, searcher, two_projects):
        two_projects.set_active("p1", False)
        results = await searcher.search_embedding(QUERY, project_ids=["p1", "p2", "ghost"])
        assert [r.project_id for r in results] == ["p2"]

    @pytest.mark.asyncio
    async def test_no_projects(self, searcher):
        assert await searcher.search_embedding(QUERY) == []

    @pytest.mark.asyncio
    async def test_progress_reported_per_project(self, searcher, two_projects):
        seen = []
        await searcher.search_embedding(QUERY, on_progress=lambda pid, i, n: seen.append((pid, n)))
        assert sorted(seen) == [("p1", 2), ("p2", 2)]

    @pytest.mark.asyncio
    async def test_cancelled(self, searcher, two_projects):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(SearchCancelledError):
            await searcher.search("anything", cancel_event=cancel)
        with pytest.raises(SearchCancelledError):
            await searcher.search_embedding(QUERY, cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_text_query_uses_provider(self, registry, federation, searcher, mock_embedding_provider):
        text = "spatial indexing of embeddings"
        federation.add_project_index("p", [
            make_node("hit", "p", mock_embedding_provider.embed(text)),
            make_node("miss", "p", mock_embedding_provider.embed("unrelated words")),
        ])
        registry.register_project("p")
        results = await searcher.search(text)
        assert results[0].node_id == "hit"
        assert results[0].raw_similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_blank_query(self, searcher, two_projects):
        assert await searcher.search("   ") == []

    @pytest.mark.asyncio
    async def test_embedding_failure_raises(self, registry, federation, two_projects):
        failing = CrossProjectSearcher(registry, federation, ProviderGateway(FailingEmbeddingProvider()))
        with pytest.raises(SearchFailedError):
            await failing.search("anything")

    @pytest.mark.asyncio
    async def test_degraded_project_skipped(self, registry, node_store, gateway, two_projects):
        node_store.put_keys("p2", [("n2", "0" * 16)], params_version=99)
        fresh = FederationManager(node_store)
        searcher = CrossProjectSearcher(registry, fresh, gateway)
        results = await searcher.search_embedding(QUERY)
        assert [r.project_id for r in results] == ["p1"]
        assert "p2" in fresh.degraded_projects


class PickyEmbeddingProvider(MockEmbeddingProvider):
    """Fails for any text containing 'boom'."""

    def embed(self, text: str) -> list[float]:
        if "boom" in text:
            raise RuntimeError("cannot embed")
        return super().embed(text)


class TestBatchSearch:

    @pytest.fixture
    def project(self, registry, federation, mock_embedding_provider):
        federation.add_project_index("p", [
            make_node("alpha", "p", mock_embedding_provider.embed("alpha notes")),
            make_node("beta", "p", mock_embedding_provider.embed("beta notes")),
        ])
        registry.register_project("p")

    @pytest.mark.asyncio
    async def test_results_per_query(self, searcher, project):
        results = await searcher.batch_search(["alpha notes", "beta notes"], top_k=1)
        assert list(results) == ["alpha notes", "beta notes"]
        assert results["alpha notes"][0].node_id == "alpha"
        assert results["beta notes"][0].node_id == "beta"

    @pytest.mark.asyncio
    async def test_failed_query_isolated(self, registry, federation, project):
        picky = CrossProjectSearcher(registry, federation, ProviderGateway(PickyEmbeddingProvider()))
        results = await picky.batch_search(["boom", "alpha notes"], top_k=1)
        assert results["boom"] == []
        assert results["alpha notes"][0].node_id == "alpha"

    @pytest.mark.asyncio
    async def test_cancel_stops_batch(self, searcher, project):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(SearchCancelledError):
            await searcher.batch_search(["alpha notes"], cancel_event=cancel)


class TestSingleProjectMode:

    @pytest.mark.asyncio
    async def test_no_weight_or_boost(self, registry, federation, searcher, mock_embedding_provider):
        federation.add_project_index("p", [
            make_node("a", "p", mock_embedding_provider.embed("alpha")),
            make_node("b", "p", mock_embedding_provider.embed("beta")),
        ])
        registry.register_project("p", weight=2.0)
        results = await searcher.search_within_project("p", "alpha", top_k=5)
        assert results[0].node_id == "a"
        assert results[0].final_score == 1.0
        assert all(r.project_weight == 1.0 and r.freshness_boost == 1.0 for r in results)


class TestTextSearch:

    def test_title_beats_text(self, registry, federation, searcher):
        federation.add_project_index("p", [
            make_node("t", "p", None, title="Graph layout", text="nothing here"),
            make_node("x", "p", None, title="Other", text="about graph drawing"),
            make_node("z", "p", None, title="Unrelated", text="none"),
        ])
        registry.register_project("p")
        results = searcher.text_search("graph")
        assert [r.node_id for r in results] == ["t", "x"]
        assert [r.final_score for r in results] == [1.0, 0.5]

    def test_blank(self, searcher):
        assert searcher.text_search("") == []
