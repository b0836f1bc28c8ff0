"""
Cross-project relation inference.

Starting from one node, a breadth-first walk searches the federation for
nodes similar to the current frontier, labels each candidate and keeps it
when the blended confidence reaches the threshold:

    confidence = 0.5*semantic + 0.3*ai + 0.1*lexical + 0.1*contextual

Accepted candidates are expanded in turn until ``depth`` hops, so a
relation found at depth 2 carries the chain of inferred hops that led to it.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from .config import LinkingSettings
from .cross_search import CrossProjectSearcher
from .errors import ValidationError
from .linker import ChainStep, LinkChain, Linker, compute_confidence, lexical_similarity
from .memory import InteractionMemoryScorer
from .node_store import NodeStore
from .suggester import ContextSuggester
from .types import Node, utc_now

logger = logging.getLogger(__name__)


@dataclass
class InferredRelation:
    candidate_node_id: str
    project_id: str
    title: str
    relation_type: str
    confidence: float
    rationale: str
    similarity: float
    ai_confidence: float
    lexical_similarity: float
    contextual_bias: float
    mode: str
    depth: int
    chain: list[ChainStep] = field(default_factory=list)
    inferred_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["chain"] = [dict(step.__dict__) for step in self.chain]
        return data


def relations_transcript(relations: list[InferredRelation]) -> dict:
    """Readable summary of inferred relations, one entry per relation."""
    return {
        "summary": f"Found {len(relations)} cross-project relations",
        "timestamp": utc_now(),
        "relations": [
            {
                "candidate": r.candidate_node_id,
                "project": r.project_id,
                "type": r.relation_type,
                "confidence": round(r.confidence, 3),
                "rationale": r.rationale,
                "depth": r.depth,
                "signals": {
                    "semantic": round(r.similarity, 3),
                    "ai": round(r.ai_confidence, 3),
                    "lexical": round(r.lexical_similarity, 3),
                    "contextual": round(r.contextual_bias, 3),
                },
                "chain": [step.describe() for step in r.chain],
            }
            for r in relations
        ],
    }


def chains_transcript(chains: list[LinkChain]) -> dict:
    return {
        "summary": f"Found {len(chains)} chains",
        "timestamp": utc_now(),
        "chains": [
            {
                "chain_id": i,
                "length": chain.length,
                "confidence": round(chain.combined_confidence, 3),
                "path": " -> ".join(chain.nodes),
                "steps": [step.describe() for step in chain.steps],
            }
            for i, chain in enumerate(chains, start=1)
        ],
    }


class CrossProjectReasoner:
    """Infers typed relations between nodes of different projects."""

    def __init__(
        self,
        cross_searcher: CrossProjectSearcher,
        store: NodeStore,
        linker: Linker,
        suggester: ContextSuggester,
        memory_scorer: Optional[InteractionMemoryScorer] = None,
        settings: Optional[LinkingSettings] = None,
    ):
        self._cross = cross_searcher
        self._store = store
        self._linker = linker
        self._suggester = suggester
        self._memory_scorer = memory_scorer
        self._settings = settings or LinkingSettings()

    async def infer_relations(
        self,
        start_node_id: str,
        project_ids: Optional[list[str]] = None,
        depth: Optional[int] = None,
        top_k: int = 10,
        mode: str = "auto",
        threshold: Optional[float] = None,
        start_project_id: Optional[str] = None,
        include_context_bias: bool = True,
    ) -> list[InferredRelation]:
        """
        Relations from a node to nodes anywhere in the given projects
        (all active projects if None), best first.

        Raises:
            KeyError: unknown start node
            ValidationError: the start node has no embedding and no text
            ValueError: unknown mode
        """
        if not start_node_id:
            raise ValidationError("start_node_id is required")
        mode = self._suggester.resolve_mode(mode)
        depth = self._settings.inference_depth if depth is None else depth
        threshold = self._settings.inference_threshold if threshold is None else threshold
        if depth <= 0 or top_k <= 0:
            return []

        start = (
            self._store.get_node(start_project_id, start_node_id) if start_project_id
            else self._store.find_node(start_node_id)
        )
        if start is None:
            raise KeyError(f"Node not found: {start_node_id}")
        embedding = await self._suggester.source_embedding(start)
        if not embedding:
            raise ValidationError(f"Node {start_node_id} has no embedding or text to infer from")

        weights = self._linker.weights()
        explored = {(start.project_id, start.id)}
        seen: set[tuple[str, str]] = set()
        relations: list[InferredRelation] = []
        queue: deque[tuple[Node, list[float], int, list[ChainStep]]] = deque([(start, embedding, 0, [])])
        expansions = 0

        while queue and expansions < self._settings.max_inference_expansions:
            current, current_embedding, level, chain = queue.popleft()
            if level >= depth:
                continue
            expansions += 1

            hits = await self._cross.search_embedding(
                current_embedding,
                top_k=top_k * 2,
                project_ids=project_ids,
                apply_weights=False,
                apply_freshness=False,
                touch_projects=False,
            )
            fresh = [h for h in hits
                     if (h.project_id, h.node_id) not in explored
                     and (h.project_id, h.node_id) not in seen]
            bias = {}
            if include_context_bias and self._memory_scorer is not None:
                bias = self._memory_scorer.recency_for_nodes([h.node_id for h in fresh])

            for hit in fresh:
                key = (hit.project_id, hit.node_id)
                candidate = self._store.get_node(hit.project_id, hit.node_id)
                if candidate is None:
                    continue
                semantic = hit.raw_similarity
                lexical = lexical_similarity(
                    current.text or current.title or "",
                    candidate.text or candidate.title or "",
                )
                contextual = bias.get(hit.node_id, 0.0)
                relation, rationale, ai_confidence, used_mode = await self._suggester.label_relation(
                    current, candidate, semantic, mode
                )
                confidence = compute_confidence(
                    {"semantic": semantic, "ai": ai_confidence,
                     "lexical": lexical, "contextual": contextual},
                    weights,
                )
                if confidence < threshold:
                    continue

                seen.add(key)
                step = ChainStep(
                    source_node_id=current.id,
                    target_node_id=candidate.id,
                    relation_type=relation,
                    confidence=confidence,
                    project_id=candidate.project_id,
                )
                relations.append(InferredRelation(
                    candidate_node_id=candidate.id,
                    project_id=candidate.project_id,
                    title=candidate.title or "Untitled",
                    relation_type=relation,
                    confidence=confidence,
                    rationale=rationale,
                    similarity=semantic,
                    ai_confidence=ai_confidence,
                    lexical_similarity=lexical,
                    contextual_bias=contextual,
                    mode=used_mode,
                    depth=level + 1,
                    chain=chain + [step],
                ))
                if level + 1 < depth and candidate.has_embedding:
                    explored.add(key)
                    queue.append((candidate, candidate.embedding, level + 1, chain + [step]))

        relations.sort(key=lambda r: (-r.confidence, r.depth, r.project_id, r.candidate_node_id))
        logger.info(
            "Inferred %d relations from %s (%d expansions, returning %d)",
            len(relations), start_node_id, expansions, min(top_k, len(relations)),
        )
        return relations[:top_k]
