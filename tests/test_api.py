"""Tests for the Workspace facade."""

import pytest

from knotwork.api import Workspace
from knotwork.config import StoreConfig

from conftest import make_node


def records(provider, texts: dict[str, str]) -> list[dict]:
    """Import records with embeddings from the mock provider."""
    return [
        {"id": node_id, "title": node_id, "text": text, "embedding": provider.embed(text)}
        for node_id, text in texts.items()
    ]


@pytest.fixture
def populated(workspace, mock_embedding_provider):
    workspace.import_project("notes", "Notes", records(mock_embedding_provider, {
        "n1": "spatial indexing with morton keys",
        "n2": "quantization of embeddings",
        "n3": "weekly groceries",
    }))
    workspace.import_project("papers", "Papers", records(mock_embedding_provider, {
        "p1": "z-order curves",
        "p2": "spatial indexing with morton keys",
    }), weight=1.5)
    return workspace


class TestImport:

    def test_registers_with_counts(self, populated):
        notes = populated.registry.get_project("notes")
        assert notes.name == "Notes"
        assert notes.node_count == 3
        assert notes.embedding_count == 3
        assert notes.root_node_id == "n1"
        assert populated.registry.get_project("papers").weight == 1.5

    def test_reimport_replaces_nodes_and_keeps_weight(self, populated, mock_embedding_provider):
        populated.import_project("papers", nodes=records(mock_embedding_provider, {"p9": "new"}))
        project = populated.registry.get_project("papers")
        assert project.node_count == 1
        assert project.weight == 1.5
        assert populated.get_node("p1") is None

    def test_accepts_node_objects(self, workspace):
        workspace.import_project("p", nodes=[make_node("a", "p", [1.0, 0.0]), make_node("b", "p", [0.0, 1.0])])
        assert workspace.get_node("a", "p").spatial_key is not None

    def test_add_and_update_require_project(self, workspace):
        with pytest.raises(KeyError):
            workspace.add_nodes("ghost", [])
        with pytest.raises(KeyError):
            workspace.update_nodes("ghost", [])

    def test_add_update_remove_nodes(self, populated, mock_embedding_provider):
        populated.add_nodes("notes", records(mock_embedding_provider, {"n4": "more"}))
        assert populated.registry.get_project("notes").node_count == 4
        populated.update_nodes("notes", [{"id": "n4", "title": "n4", "text": "edited"}])
        assert populated.get_node("n4").text == "edited"
        assert populated.get_node("n4").spatial_key is None
        assert populated.remove_nodes("notes", ["n4"]) == 1
        assert populated.registry.get_project("notes").node_count == 3

    def test_remove_project_drops_links(self, populated):
        populated.create_link("n1", "n2", "supports", 0.7)
        assert populated.remove_project("notes")
        assert populated.linker.query_links(project_id="notes") == []
        assert populated.get_node("n1") is None


class TestEmbedding:

    @pytest.mark.asyncio
    async def test_embed_missing(self, workspace, mock_embedding_provider):
        workspace.import_project("p", nodes=[
            {"id": "a", "title": "Alpha", "text": "first"},
            {"id": "b", "title": "Beta", "text": "second"},
            {"id": "c", "title": "", "text": ""},
        ])
        assert workspace.registry.get_project("p").embedding_count == 0
        assert await workspace.embed_missing("p") == 2
        node = workspace.get_node("a")
        assert node.embedding == mock_embedding_provider.embed("Alpha first")
        assert node.spatial_key is not None
        assert workspace.registry.get_project("p").embedding_count == 2

    def test_reindex_bumps_shared_version(self, populated):
        before = populated.federation.get_quant_params().version
        result = populated.reindex()
        assert result["params_versions"] == {"shared": before + 1}
        assert result["keyed_nodes"] == 5


class TestSearch:

    @pytest.mark.asyncio
    async def test_cross_project(self, populated):
        results = await populated.search("spatial indexing with morton keys", top_k=3)
        assert {(r.project_id, r.node_id) for r in results[:2]} == {("notes", "n1"), ("papers", "p2")}
        assert all(r.raw_similarity == pytest.approx(1.0) for r in results[:2])

    @pytest.mark.asyncio
    async def test_inactive_project_excluded(self, populated):
        populated.set_project_active("papers", False)
        results = await populated.search("spatial indexing with morton keys")
        assert {r.project_id for r in results} == {"notes"}

    @pytest.mark.asyncio
    async def test_record_search_interaction(self, populated):
        await populated.search("quantization of embeddings", record=True)
        recent = populated.memory.get_recent_interactions(action_type="search")
        assert recent[0].meta["query"] == "quantization of embeddings"

    @pytest.mark.asyncio
    async def test_search_project(self, populated):
        results = await populated.search_project("notes", "quantization of embeddings", top_k=2)
        assert results[0].node_id == "n2"
        assert all(r.project_id == "notes" for r in results)

    @pytest.mark.asyncio
    async def test_batch_search(self, populated):
        results = await populated.batch_search(
            ["quantization of embeddings", "  "], top_k=1, project_ids=["notes"],
        )
        assert results["quantization of embeddings"][0].node_id == "n2"
        assert results["  "] == []

    def test_text_search(self, populated):
        results = populated.text_search("morton")
        assert {r.node_id for r in results} == {"n1", "p2"}


class TestLinksAndMemory:

    def test_create_link_infers_project(self, populated):
        result = populated.create_link("n1", "n2", "elaborates", 0.6)
        assert result.link.project_id == "notes"
        with pytest.raises(KeyError):
            populated.create_link("ghost", "n2")

    def test_upsert_link(self, populated):
        first = populated.upsert_link("n1", "n2", "supports", confidence=0.2)
        second = populated.upsert_link("n1", "n2", "supports", confidence=0.9)
        assert first.link.id == second.link.id
        assert second.link.confidence == 0.9

    def test_find_chains(self, populated):
        populated.create_link("n1", "n2", "elaborates", 0.8)
        populated.create_link("n2", "n3", "supports", 0.5)
        chains = populated.find_chains("n1", "n3")
        assert [c.nodes for c in chains] == [["n1", "n2", "n3"]]
        assert chains[0].combined_confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_infer_relations_across_projects(self, populated):
        relations = await populated.infer_relations("n1", depth=1, mode="mock")
        assert ("papers", "p2") in {(r.project_id, r.candidate_node_id) for r in relations}
        assert all(r.candidate_node_id != "n1" for r in relations)

    @pytest.mark.asyncio
    async def test_suggest_and_accept(self, workspace):
        workspace.import_project("p", nodes=[
            make_node("s", "p", [1.0, 0.0, 0.0]),
            make_node("t", "p", [0.95, 0.3, 0.0]),
            make_node("u", "p", [0.0, 0.0, 1.0]),
        ])
        suggestions = await workspace.suggest_links("s")
        assert [s.candidate_node_id for s in suggestions] == ["t"]
        result = workspace.accept_suggestion("s", suggestions[0])
        assert result.link.provenance.method == "suggested"

        batch = await workspace.batch_suggest("p")
        assert set(batch) == {"s", "t", "u"}

    @pytest.mark.asyncio
    async def test_interactions_feed_context(self, populated):
        interaction = populated.record_interaction("view", node_id="n2")
        assert interaction.embedding == populated.get_node("n2").embedding
        suggestions = await populated.get_context_suggestions("quantization of embeddings")
        assert suggestions[0].node_id == "n2"
        assert suggestions[0].title == "n2"
        assert populated.purge_interactions(0) == 1


class TestLifecycle:

    def test_stats(self, populated):
        stats = populated.stats()
        assert stats["projects"]["total"] == 2
        assert stats["index"]["keyed_nodes"] == 5
        assert stats["links"]["total_links"] == 0
        assert stats["providers"]["embedding_live"] is True

    def test_reopen_from_disk(self, tmp_path, gateway):
        config = StoreConfig(path=tmp_path / "s")
        with Workspace(config=config, gateway=gateway) as ws:
            ws.import_project("p", nodes=[make_node("a", "p", [1.0, 0.0]), make_node("b", "p", [0.0, 1.0])])
        with Workspace(config=config, gateway=gateway) as ws:
            assert [p.id for p in ws.list_projects()] == ["p"]
            assert ws.get_node("b").embedding == [0.0, 1.0]

    def test_store_path_creates_config(self, tmp_path, monkeypatch):
        for var in ("OLLAMA_HOST", "OPENAI_API_KEY", "KNOTWORK_OPENAI_API_KEY"):
            monkeypatch.delenv(var, raising=False)
        with Workspace(tmp_path / "fresh") as ws:
            assert ws.config.exists()
            assert (tmp_path / "fresh" / "knotwork-ops.log").exists()
            assert not ws.gateway.embedding_is_live
