"""Tests for cross-project relation inference."""

import pytest

from knotwork.cross_search import CrossProjectSearcher
from knotwork.errors import ValidationError
from knotwork.linker import ChainStep, LinkChain
from knotwork.providers.gateway import ProviderGateway
from knotwork.reasoner import CrossProjectReasoner, chains_transcript, relations_transcript
from knotwork.suggester import ContextSuggester, deterministic_relation

from conftest import MockGenerationProvider, make_node

# s -> t is close, t -> w is close, s -> w is not
S = [1.0, 0.0, 0.0, 0.0]
T = [0.95, 0.31, 0.0, 0.0]
W = [0.7, 0.71, 0.0, 0.0]
U = [0.0, 1.0, 0.0, 0.0]


@pytest.fixture
def projects(registry, federation):
    federation.add_project_index("p1", [
        make_node("s", "p1", S, title="Morton", text="Z-order keys"),
        make_node("w", "p1", W, title="Groceries", text="Milk and eggs"),
        make_node("bare", "p1", None, title="", text=""),
    ])
    federation.add_project_index("p2", [
        make_node("t", "p2", T, title="Quantization", text="Bounded embedding ranges"),
        make_node("u", "p2", U, title="Unrelated", text="Weather report"),
    ])
    registry.register_project("p1")
    registry.register_project("p2")
    return registry


def build_reasoner(registry, federation, linker, gateway):
    cross = CrossProjectSearcher(registry, federation, gateway)
    suggester = ContextSuggester(federation, linker, None, gateway)
    return CrossProjectReasoner(cross, federation.store, linker, suggester)


@pytest.fixture
def reasoner(projects, federation, linker, gateway):
    return build_reasoner(projects, federation, linker, gateway)


class TestInferRelations:

    @pytest.mark.asyncio
    async def test_second_hop_carries_chain(self, reasoner):
        relations = await reasoner.infer_relations("s", depth=2)
        by_id = {(r.project_id, r.candidate_node_id): r for r in relations}
        assert set(by_id) == {("p2", "t"), ("p1", "w")}

        first = by_id[("p2", "t")]
        assert first.depth == 1
        assert first.similarity == pytest.approx(0.9507, abs=1e-3)
        assert [(s.source_node_id, s.target_node_id) for s in first.chain] == [("s", "t")]

        second = by_id[("p1", "w")]
        assert second.depth == 2
        assert [(s.source_node_id, s.target_node_id) for s in second.chain] == [("s", "t"), ("t", "w")]
        assert isinstance(second.chain[0], ChainStep)
        assert second.confidence >= 0.7

    @pytest.mark.asyncio
    async def test_depth_one(self, reasoner):
        relations = await reasoner.infer_relations("s", depth=1)
        assert [(r.project_id, r.candidate_node_id) for r in relations] == [("p2", "t")]

    @pytest.mark.asyncio
    async def test_mock_labels_and_confidence(self, reasoner):
        relations = await reasoner.infer_relations("s", depth=1, mode="mock")
        relation = relations[0]
        assert relation.mode == "mock"
        assert relation.relation_type == deterministic_relation("s", "t")[0]
        assert relation.ai_confidence == relation.similarity
        expected = 0.8 * relation.similarity + 0.1 * relation.lexical_similarity
        assert relation.confidence == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_threshold(self, reasoner):
        assert await reasoner.infer_relations("s", threshold=0.99) == []

    @pytest.mark.asyncio
    async def test_project_filter(self, reasoner):
        assert await reasoner.infer_relations("s", project_ids=["p1"]) == []

    @pytest.mark.asyncio
    async def test_top_k(self, reasoner):
        assert len(await reasoner.infer_relations("s", depth=2, top_k=1)) == 1
        assert await reasoner.infer_relations("s", top_k=0) == []

    @pytest.mark.asyncio
    async def test_projects_not_touched(self, reasoner, projects):
        before = projects.get_project("p2").last_accessed_at
        await reasoner.infer_relations("s")
        assert projects.get_project("p2").last_accessed_at == before

    @pytest.mark.asyncio
    async def test_live_labels(self, projects, federation, linker, mock_embedding_provider):
        gateway = ProviderGateway(mock_embedding_provider, MockGenerationProvider())
        reasoner = build_reasoner(projects, federation, linker, gateway)
        relations = await reasoner.infer_relations("s", depth=1)
        assert relations[0].mode == "live"
        assert relations[0].relation_type == "supports"
        assert relations[0].ai_confidence == 0.9

    @pytest.mark.asyncio
    async def test_unknown_or_empty_start(self, reasoner):
        with pytest.raises(KeyError):
            await reasoner.infer_relations("ghost")
        with pytest.raises(ValidationError):
            await reasoner.infer_relations("bare")
        with pytest.raises(ValidationError):
            await reasoner.infer_relations("")
        with pytest.raises(ValueError):
            await reasoner.infer_relations("s", mode="psychic")


class TestTranscripts:

    @pytest.mark.asyncio
    async def test_relations_transcript(self, reasoner):
        relations = await reasoner.infer_relations("s", depth=2)
        transcript = relations_transcript(relations)
        assert transcript["summary"] == "Found 2 cross-project relations"
        entry = next(e for e in transcript["relations"] if e["candidate"] == "w")
        assert entry["depth"] == 2
        assert entry["chain"][1].startswith("t --[")
        assert set(entry["signals"]) == {"semantic", "ai", "lexical", "contextual"}

    def test_chains_transcript(self):
        step = ChainStep("a", "b", "supports", 0.5)
        transcript = chains_transcript([LinkChain(["a", "b"], [step], 0.5)])
        assert transcript["chains"] == [{
            "chain_id": 1,
            "length": 1,
            "confidence": 0.5,
            "path": "a -> b",
            "steps": ["a --[supports (0.50)]--> b"],
        }]
