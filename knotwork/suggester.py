"""
Link suggestions for a node.

Pipeline:
1. Spatial prefilter: about 3x top_k nearest nodes in the source's project
2. Signals per candidate: semantic (cosine), lexical (tri-gram Jaccard),
   contextual (recency of the candidate's interactions)
3. Preliminary score 0.6*semantic + 0.2*lexical + 0.2*contextual
4. Keep candidates with semantic >= similarity_threshold
5. Take the top 2x top_k by preliminary score
6. Label each with a relation type: generation provider in live mode,
   otherwise a hash of (source id, candidate id) into the taxonomy
7. Final confidence from the linker's weighted formula; return top_k
"""

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from .config import LinkingSettings
from .errors import IndexCorruptionError, ProviderError
from .federation import FederationManager
from .linker import Linker, LinkResult, compute_confidence, lexical_similarity
from .memory import InteractionMemoryScorer
from .providers.gateway import ProviderGateway
from .searcher import SingleProjectSearcher, cosine_similarity, generate_snippet
from .types import RELATION_TYPE_IDS, RELATION_TYPES, Node, Provenance, get_relation_type

logger = logging.getLogger(__name__)

MODES = ("auto", "live", "mock")

RELATION_SYSTEM_PROMPT = """You label the relationship between two text fragments.
Answer with a single JSON object: {"relation": "<id>", "confidence": <0..1>, "rationale": "<one sentence>"}.
Allowed relation ids: """ + ", ".join(r.id for r in RELATION_TYPES) + "."

_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class LinkSuggestion:
    candidate_node_id: str
    title: str
    snippet: str
    relation_type: str
    confidence: float
    rationale: str
    similarity: float
    lexical_similarity: float
    contextual_bias: float
    mode: str
    project_id: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def deterministic_relation(source_id: str, candidate_id: str) -> tuple[str, str]:
    """Relation id and rationale hashed from the node pair."""
    digest = hashlib.sha256(f"{source_id}{candidate_id}".encode("utf-8")).digest()
    relation = RELATION_TYPES[int.from_bytes(digest[:4], "big") % len(RELATION_TYPES)]
    return relation.id, f"{relation.label}: {relation.description}"


def parse_relation_response(text: str) -> Optional[tuple[str, Optional[float], str]]:
    """
    Extract (relation id, confidence, rationale) from a generation response.

    Accepts the requested JSON object, or any text naming a known relation id.
    """
    if not text:
        return None
    match = _JSON_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            relation = str(data.get("relation", "")).strip().lower()
            if relation in RELATION_TYPE_IDS:
                confidence = data.get("confidence")
                try:
                    confidence = min(1.0, max(0.0, float(confidence)))
                except (TypeError, ValueError):
                    confidence = None
                rationale = str(data.get("rationale") or get_relation_type(relation).description)
                return relation, confidence, rationale
    lowered = text.lower()
    for rel in RELATION_TYPES:
        if re.search(rf"\b{re.escape(rel.id)}\b", lowered):
            return rel.id, None, text.strip()[:200]
    return None


class ContextSuggester:
    """Suggests typed links for nodes."""

    def __init__(
        self,
        federation: FederationManager,
        linker: Linker,
        memory_scorer: Optional[InteractionMemoryScorer],
        gateway: ProviderGateway,
        settings: Optional[LinkingSettings] = None,
        searcher: Optional[SingleProjectSearcher] = None,
    ):
        self._federation = federation
        self._store = federation.store
        self._linker = linker
        self._memory_scorer = memory_scorer
        self._gateway = gateway
        self._settings = settings or LinkingSettings()
        self._searcher = searcher or SingleProjectSearcher(federation)

    def resolve_mode(self, mode: str) -> str:
        if mode not in MODES:
            raise ValueError(f"Unknown suggestion mode {mode!r}. Use one of {MODES}")
        if mode == "auto":
            return "live" if self._gateway.generation_is_live else "mock"
        return mode

    async def label_relation(self, source: Node, candidate: Node, similarity: float, mode: str):
        """
        Label source -> candidate.

        Returns (relation_type, rationale, ai_confidence, mode actually used).
        Live labels that fail or cannot be parsed fall back to the hashed label.
        """
        if mode == "live":
            prompt = (
                f"Source ({source.title or source.id}):\n{generate_snippet(source.text, 1000)}\n\n"
                f"Candidate ({candidate.title or candidate.id}):\n{generate_snippet(candidate.text, 1000)}\n\n"
                "How does the candidate relate to the source?"
            )
            try:
                response = await self._gateway.generate(
                    prompt, system=RELATION_SYSTEM_PROMPT, strict=True,
                )
            except ProviderError as e:
                logger.warning("Relation labelling failed for %s -> %s: %s",
                               source.id, candidate.id, e)
                response = None
            parsed = parse_relation_response(response) if response else None
            if parsed is not None:
                relation, ai_confidence, rationale = parsed
                return relation, rationale, (similarity if ai_confidence is None else ai_confidence), "live"
            logger.debug("Unusable relation label for %s -> %s, hashing", source.id, candidate.id)
        relation, rationale = deterministic_relation(source.id, candidate.id)
        return relation, rationale, similarity, "mock"

    async def source_embedding(self, node: Node) -> Optional[list[float]]:
        if node.has_embedding:
            return node.embedding
        text = " ".join(part for part in (node.title, node.text) if part)
        if not text:
            return None
        return await self._gateway.embed(text)

    async def suggest_links(
        self,
        node_id: str,
        top_k: Optional[int] = None,
        project_id: Optional[str] = None,
        mode: str = "auto",
        include_context_bias: bool = True,
    ) -> list[LinkSuggestion]:
        """
        Suggested links from ``node_id`` to other nodes of its project.

        Raises:
            KeyError: unknown node
            ValueError: unknown mode
        """
        if top_k is None:
            top_k = self._settings.suggest_top_k
        mode = self.resolve_mode(mode)
        source = (
            self._store.get_node(project_id, node_id) if project_id
            else self._store.find_node(node_id)
        )
        if source is None:
            raise KeyError(f"Node not found: {node_id}")
        project_id = source.project_id

        embedding = await self.source_embedding(source)
        if not embedding:
            logger.info("Node %s has no text or embedding; no suggestions", node_id)
            return []

        try:
            hits = await asyncio.to_thread(
                self._searcher.search, project_id, embedding, top_k * 3 + 1,
            )
        except IndexCorruptionError as e:
            logger.warning("Index for %s unusable (%s), scanning linearly", project_id, e.reason)
            hits = await asyncio.to_thread(
                self._searcher.linear_scan, project_id, embedding, top_k * 3 + 1,
            )
        candidate_ids = [h.node_id for h in hits if h.node_id != node_id][: top_k * 3]
        candidates = self._store.get_nodes(project_id, candidate_ids)

        bias = {}
        if include_context_bias and self._memory_scorer is not None:
            bias = self._memory_scorer.recency_for_nodes(candidate_ids)

        threshold = self._settings.similarity_threshold
        scored = []
        for cid in candidate_ids:
            candidate = candidates.get(cid)
            if candidate is None or not candidate.has_embedding:
                continue
            semantic = cosine_similarity(embedding, candidate.embedding)
            if semantic < threshold:
                continue
            lexical = lexical_similarity(source.text or "", candidate.text or "")
            contextual = bias.get(cid, 0.0)
            preliminary = 0.6 * semantic + 0.2 * lexical + 0.2 * contextual
            scored.append((preliminary, candidate, semantic, lexical, contextual))

        scored.sort(key=lambda s: (-s[0], s[1].id))
        shortlist = scored[: top_k * 2]

        weights = self._linker.weights()
        suggestions = []
        for _, candidate, semantic, lexical, contextual in shortlist:
            relation, rationale, ai_confidence, used_mode = await self.label_relation(
                source, candidate, semantic, mode
            )
            confidence = compute_confidence(
                {"semantic": semantic, "ai": ai_confidence,
                 "lexical": lexical, "contextual": contextual},
                weights,
            )
            suggestions.append(LinkSuggestion(
                candidate_node_id=candidate.id,
                title=candidate.title or "Untitled",
                snippet=generate_snippet(candidate.text),
                relation_type=relation,
                confidence=confidence,
                rationale=rationale,
                similarity=semantic,
                lexical_similarity=lexical,
                contextual_bias=contextual,
                mode=used_mode,
                project_id=project_id,
            ))

        suggestions.sort(key=lambda s: (-s.confidence, s.candidate_node_id))
        logger.info("Suggested %d links for %s (%d candidates, mode %s)",
                    min(top_k, len(suggestions)), node_id, len(candidate_ids), mode)
        return suggestions[:top_k]

    async def batch_suggest(
        self,
        project_id: str,
        top_k: Optional[int] = None,
        limit: Optional[int] = None,
        mode: str = "auto",
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> dict[str, list[LinkSuggestion]]:
        """Suggestions for up to ``limit`` nodes of a project, keyed by node id."""
        limit = limit or self._settings.batch_limit
        nodes = self._store.list_nodes(project_id, limit=limit)
        results: dict[str, list[LinkSuggestion]] = {}
        for position, node in enumerate(nodes, start=1):
            results[node.id] = await self.suggest_links(
                node.id, top_k=top_k, project_id=project_id, mode=mode,
            )
            if progress_callback is not None:
                progress_callback(position, len(nodes))
        return results

    def accept_suggestion(
        self,
        source_node_id: str,
        suggestion: LinkSuggestion,
        force: bool = False,
    ) -> LinkResult:
        """Persist a suggestion as a link with provenance 'suggested'."""
        project_id = suggestion.project_id
        if project_id is None:
            source = self._store.find_node(source_node_id)
            project_id = source.project_id if source else None
        return self._linker.create_link(
            project_id,
            source_node_id,
            suggestion.candidate_node_id,
            relation_type=suggestion.relation_type,
            confidence=suggestion.confidence,
            provenance=Provenance(method="suggested", note=suggestion.rationale),
            metadata={
                "similarity": suggestion.similarity,
                "lexical_similarity": suggestion.lexical_similarity,
                "contextual_bias": suggestion.contextual_bias,
                "mode": suggestion.mode,
            },
            force=force,
        )
