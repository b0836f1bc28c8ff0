"""Tests for single-project search."""

import random

import pytest

from knotwork.config import SearchSettings
from knotwork.errors import ValidationError
from knotwork.searcher import SingleProjectSearcher, cosine_similarity, default_radii, generate_snippet

from conftest import block_vector, make_node, random_unit_vectors


@pytest.fixture
def searcher(federation):
    return SingleProjectSearcher(federation)


@pytest.fixture
def small_project(federation):
    federation.add_project_index("p", [
        make_node("a", "p", [1.0, 0.0, 0.0, 0.0]),
        make_node("b", "p", [0.9, 0.1, 0.0, 0.0]),
        make_node("c", "p", [0.0, 1.0, 0.0, 0.0]),
        make_node("d", "p", [0.0, 0.0, 1.0, 0.0]),
        make_node("e", "p", [-1.0, 0.0, 0.0, 0.0]),
    ])
    return "p"


class TestHelpers:

    def test_cosine(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 2.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_default_radii(self):
        assert default_radii(128) == [2 ** 100, 2 ** 108, 2 ** 116]
        assert default_radii(16) == [1, 2 ** 8, 2 ** 16]
        settings = SearchSettings(radius_headroom_bits=20, radius_growth_bits=2, max_radius_widenings=1)
        assert default_radii(64, settings) == [2 ** 44, 2 ** 46]

    def test_snippet(self):
        assert generate_snippet(None) == ""
        assert generate_snippet("short") == "short"
        assert generate_snippet("x" * 200).endswith("...")
        assert len(generate_snippet("x" * 200)) == 143


class TestSearch:

    def test_ranked_by_similarity(self, searcher, small_project):
        hits = searcher.search(small_project, [1.0, 0.0, 0.0, 0.0], top_k=3)
        assert [h.node_id for h in hits][:2] == ["a", "b"]
        assert hits[0].raw_similarity == pytest.approx(1.0)
        assert all(hits[i].raw_similarity >= hits[i + 1].raw_similarity for i in range(len(hits) - 1))

    def test_top_k_bound(self, searcher, small_project):
        assert len(searcher.search(small_project, [1.0, 0.0, 0.0, 0.0], top_k=2)) == 2

    def test_similarity_floor(self, searcher, small_project):
        hits = searcher.search(small_project, [1.0, 0.0, 0.0, 0.0], top_k=10, similarity_floor=0.5)
        assert [h.node_id for h in hits] == ["a", "b"]

    def test_ties_broken_by_node_id(self, federation, searcher):
        federation.add_project_index("t", [
            make_node("n2", "t", [1.0, 0.0]),
            make_node("n1", "t", [1.0, 0.0]),
            make_node("n3", "t", [0.0, 1.0]),
        ])
        hits = searcher.search("t", [1.0, 0.0], top_k=2)
        assert [h.node_id for h in hits] == ["n1", "n2"]

    def test_linear_scan_without_params(self, federation, searcher):
        federation.add_project_index("solo", [make_node("only", "solo", [0.3, 0.4])])
        assert federation.get_quant_params("solo") is None
        hits = searcher.search("solo", [0.3, 0.4], top_k=5)
        assert [h.node_id for h in hits] == ["only"]

    def test_subtree_filter(self, federation, searcher):
        federation.add_project_index("tree", [
            make_node("root", "tree", [1.0, 0.0], child_ids=["x", "y"]),
            make_node("x", "tree", [0.9, 0.1], parent_id="root"),
            make_node("y", "tree", [0.8, 0.2], parent_id="root", child_ids=["y1"]),
            make_node("y1", "tree", [0.7, 0.3], parent_id="y"),
            make_node("other", "tree", [1.0, 0.0]),
        ])
        hits = searcher.search("tree", [1.0, 0.0], top_k=10, subtree_root_id="y")
        assert {h.node_id for h in hits} == {"y", "y1"}

    def test_empty_query_rejected(self, searcher, small_project):
        with pytest.raises(ValidationError):
            searcher.search(small_project, [], top_k=3)

    def test_zero_top_k(self, searcher, small_project):
        assert searcher.search(small_project, [1.0, 0.0, 0.0, 0.0], top_k=0) == []

    def test_range_scan_finds_exact_match(self, federation, searcher):
        vectors = random_unit_vectors(80, 32, seed=3)
        federation.add_project_index("big", [make_node(f"v{i:02d}", "big", v) for i, v in enumerate(vectors)])
        hits = searcher.search("big", vectors[17], top_k=1)
        assert hits[0].node_id == "v17"
        assert hits[0].raw_similarity == pytest.approx(1.0)
        assert hits[0].spatial_key is not None

    def test_agrees_with_linear_scan_on_best_hit(self, federation, searcher):
        vectors = random_unit_vectors(60, 16, seed=5)
        federation.add_project_index("big", [make_node(f"v{i:02d}", "big", v) for i, v in enumerate(vectors)])
        query = vectors[4]
        assert searcher.search("big", query, top_k=1)[0].node_id == searcher.linear_scan("big", query, top_k=1)[0].node_id


class TestLargeProject:
    """More embedded nodes than the candidate budget, so no linear fallback."""

    TARGET = [0.1, -0.2, 0.3, -0.4, 0.5, -0.6, 0.7, -0.05]

    @pytest.fixture
    def large_project(self, federation):
        rng = random.Random(21)
        nodes = [
            make_node("lo", "big", block_vector([-1.0] * 8)),
            make_node("hi", "big", block_vector([1.0] * 8)),
            make_node("target", "big", block_vector(self.TARGET)),
        ]
        for i in range(200):
            values = [rng.uniform(-0.9, 0.9) for _ in range(8)]
            nodes.append(make_node(f"v{i:03d}", "big", block_vector(values)))
        federation.add_project_index("big", nodes)
        return "big"

    def test_near_neighbour_found(self, federation, searcher, large_project):
        query = block_vector([self.TARGET[0] + 0.0001] + self.TARGET[1:])
        assert cosine_similarity(query, block_vector(self.TARGET)) > 0.99
        assert federation.store.count_embedded("big") > 5 * SearchSettings().candidate_multiplier

        hits = searcher.search(large_project, query, top_k=5)
        assert len(hits) == 5
        assert hits[0].node_id == "target"
        assert hits[0].node_id == searcher.linear_scan(large_project, query, top_k=1)[0].node_id

    def test_short_radii_still_return_nearest_keys(self, searcher, large_project):
        hits = searcher.search(large_project, block_vector(self.TARGET), top_k=3, radii=[0])
        assert len(hits) == 3
        assert hits[0].node_id == "target"
