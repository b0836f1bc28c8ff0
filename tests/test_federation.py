"""Tests for quantization params lifecycle and project indexing."""

import threading

import pytest

from knotwork.config import QuantizationSettings, StoreConfig
from knotwork.errors import IndexCorruptionError, ValidationError
from knotwork.federation import FederationManager
from knotwork.node_store import GLOBAL_SCOPE

from conftest import make_node


def small(i: int, scale: float = 0.1) -> list[float]:
    """16-dim vector with values in [0, scale]."""
    return [((i * 7 + d * 3) % 11) / 10.0 * scale for d in range(16)]


def config_with(tmp_path, **quant) -> StoreConfig:
    return StoreConfig(path=tmp_path, quantization=QuantizationSettings(**quant))


class TestParams:

    def test_no_params_below_min_sample(self, federation):
        result = federation.add_project_index("p", [make_node("a", "p", small(1))])
        assert result["params_version"] is None
        assert result["keyed"] == 0
        assert federation.get_quant_params("p") is None

    def test_params_built_once_sample_is_large_enough(self, federation):
        federation.add_project_index("p", [make_node("a", "p", small(1))])
        result = federation.add_project_index("p", [make_node("b", "p", small(2))])
        assert result["recomputed"] is True
        assert result["params_version"] == 1
        assert federation.store.count_keys("p") == 2

    def test_nodes_without_embedding_stay_unkeyed(self, federation):
        federation.add_project_index("p", [
            make_node("a", "p", small(1)),
            make_node("b", "p", small(2)),
            make_node("c", "p", None),
        ])
        assert federation.store.count("p") == 3
        assert federation.store.count_keys("p") == 2
        assert federation.store.get_key("p", "c") is None

    def test_forced_recompute_bumps_version_and_rekeys_all_projects(self, federation):
        federation.add_project_index("p1", [make_node(f"a{i}", "p1", small(i)) for i in range(4)])
        federation.add_project_index("p2", [make_node(f"b{i}", "p2", small(i + 4)) for i in range(4)])
        before = federation.get_quant_params("p1").version

        result = federation.add_project_index("p2", [], recompute_quant=True)
        after = federation.get_quant_params()
        assert result["recomputed"] is True
        assert after.version == before + 1
        for pid in ("p1", "p2"):
            assert {v for _, _, v in federation.store.list_keys(pid)} == {after.version}
            federation.get_index(pid)

    def test_out_of_bounds_batch_triggers_rebuild(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(5)])
        result = federation.add_project_index(
            "p", [make_node(f"far{i}", "p", [5.0 + i] * 16) for i in range(3)],
        )
        assert result["recomputed"] is True
        assert result["params_version"] == 2
        params = federation.get_quant_params("p")
        assert max(params.maxs) >= 7.0
        assert federation.store.count_keys("p") == 8

    def test_in_bounds_batch_keeps_params(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(8)])
        result = federation.add_project_index("p", [make_node("x", "p", small(3))])
        assert result["recomputed"] is False
        assert result["params_version"] == 1
        assert result["keyed"] == 1

    def test_auto_recompute_off(self, tmp_path, node_store):
        federation = FederationManager(node_store, config_with(tmp_path, auto_recompute=False))
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(5)])
        result = federation.add_project_index(
            "p", [make_node(f"far{i}", "p", [9.0] * 16) for i in range(3)],
        )
        assert result["recomputed"] is False
        assert result["params_version"] == 1
        # Out-of-bounds embeddings are still keyed, clamped to the edge
        assert federation.store.count_keys("p") == 8

    def test_project_scope_keeps_separate_params(self, tmp_path, node_store):
        federation = FederationManager(node_store, config_with(tmp_path, scope="project"))
        federation.add_project_index("p1", [make_node(f"a{i}", "p1", small(i)) for i in range(3)])
        federation.add_project_index("p2", [make_node(f"b{i}", "p2", small(i, scale=10.0)) for i in range(3)])
        p1 = federation.get_quant_params("p1")
        p2 = federation.get_quant_params("p2")
        assert p1.maxs != p2.maxs
        assert node_store.load_params(GLOBAL_SCOPE) is None
        assert not federation.shared

    def test_project_scope_rejects_shared_rebuild(self, tmp_path, node_store):
        federation = FederationManager(node_store, config_with(tmp_path, scope="project"))
        federation.add_project_index("p1", [make_node(f"a{i}", "p1", small(i)) for i in range(3)])
        with pytest.raises(ValidationError):
            federation.compute_global_quant_params()
        assert node_store.load_params(GLOBAL_SCOPE) is None
        federation.get_index("p1")


class TestProjectIndex:

    def test_update_rekeys_changed_nodes(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(6)])
        federation.update_project_nodes("p", [make_node("a0", "p", small(5))])
        new_key, _ = federation.store.get_key("p", "a0")
        assert new_key == federation.store.get_key("p", "a5")[0]

    def test_removing_embedding_drops_key(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        federation.update_project_nodes("p", [make_node("a1", "p", None)])
        assert federation.store.get_key("p", "a1") is None
        assert federation.store.get_node("p", "a1").spatial_key is None

    def test_replace_drops_previous_nodes(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        federation.add_project_index("p", [make_node("z", "p", small(9))], replace=True)
        assert [n.id for n in federation.store.list_nodes("p")] == ["z"]

    def test_remove_nodes_and_project(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        assert federation.remove_project_nodes("p", ["a0"]) == 1
        assert federation.store.count_keys("p") == 2
        assert federation.remove_project_index("p") == 2
        assert federation.store.count("p") == 0
        assert federation.store.count_keys("p") == 0

    def test_stored_key_mirrors_onto_node(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        key, _ = federation.store.get_key("p", "a2")
        assert federation.store.get_node("p", "a2").spatial_key == key


class TestDegraded:

    def test_version_mismatch_marks_project_degraded(self, node_store):
        federation = FederationManager(node_store)
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        node_store.put_keys("p", [("a0", "0" * 32)], params_version=99)

        fresh = FederationManager(node_store)
        with pytest.raises(IndexCorruptionError):
            fresh.get_index("p")
        assert "p" in fresh.degraded_projects
        assert "p" in fresh.stats()["degraded"]

    def test_rebuild_clears_degraded(self, node_store):
        federation = FederationManager(node_store)
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        node_store.put_keys("p", [("a0", "0" * 32)], params_version=99)

        fresh = FederationManager(node_store)
        with pytest.raises(IndexCorruptionError):
            fresh.get_index("p")
        fresh.compute_global_quant_params()
        assert "p" not in fresh.degraded_projects
        fresh.get_index("p")

    def test_stats(self, federation):
        federation.add_project_index("p", [make_node(f"a{i}", "p", small(i)) for i in range(3)])
        stats = federation.stats()
        assert stats["projects"] == 1
        assert stats["total_nodes"] == 3
        assert stats["keyed_nodes"] == 3
        assert stats["scope"] == "shared"
        assert stats["params_version"] == 1


class TestConcurrency:

    def test_rebuild_waits_for_batch_in_flight(self, federation, monkeypatch):
        federation.add_project_index("a", [make_node(f"a{i}", "a", small(i)) for i in range(4)])
        federation.add_project_index("b", [make_node("b0", "b", small(5))])
        start_version = federation.get_quant_params().version

        original = federation._params_for_batch
        rebuilder = threading.Thread(target=federation.compute_global_quant_params)
        blocked = []

        def params_then_rebuild(*args, **kwargs):
            result = original(*args, **kwargs)
            rebuilder.start()
            rebuilder.join(timeout=0.2)
            blocked.append(rebuilder.is_alive())
            return result

        monkeypatch.setattr(federation, "_params_for_batch", params_then_rebuild)
        federation.update_project_nodes("b", [make_node("b1", "b", small(6))])
        rebuilder.join(timeout=5)

        assert blocked == [True]
        current = federation.get_quant_params().version
        assert current > start_version
        for pid in ("a", "b"):
            assert {v for _, _, v in federation.store.list_keys(pid)} == {current}
            federation.get_index(pid)
        assert federation.degraded_projects == {}

    def test_index_created_once_per_project(self, federation):
        barrier = threading.Barrier(8)
        seen = []

        def grab():
            barrier.wait()
            seen.append(federation._index("new"))

        threads = [threading.Thread(target=grab) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len({id(index) for index in seen}) == 1
