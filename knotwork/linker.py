"""
Typed semantic links between nodes.

The Linker validates and writes links, keeps each link's change history
(every mutation appends an event; history is capped with oldest-first
eviction) and guards against cycles.

Confidence is a weighted sum of four signals, each in [0, 1]:

    confidence = 0.5*semantic + 0.3*ai + 0.1*lexical + 0.1*contextual

A missing signal counts as 0 and keeps its weight.
"""

import logging
import math
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .config import LinkingSettings
from .errors import CycleDetectedError, ValidationError
from .link_store import LinkStore
from .types import (
    DEFAULT_RELATION_TYPE,
    RELATION_TYPE_IDS,
    Link,
    LinkEvent,
    Provenance,
    decay,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_WEIGHTS = {
    "semantic": 0.5,
    "ai": 0.3,
    "lexical": 0.1,
    "contextual": 0.1,
}

# Fields update_link may change
_MUTABLE_FIELDS = ("relation_type", "confidence", "active", "weight", "metadata", "provenance")


def _signal(value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v):
        return 0.0
    return min(1.0, max(0.0, v))


def compute_confidence(
    signals: Mapping[str, Any],
    weights: Optional[Mapping[str, float]] = None,
) -> float:
    """
    Weighted sum of semantic/ai/lexical/contextual signals, clamped to [0, 1].

    Custom weights are normalized to sum to 1.
    """
    w = dict(weights or DEFAULT_CONFIDENCE_WEIGHTS)
    total = sum(max(0.0, v) for v in w.values())
    if total <= 0:
        return 0.0
    confidence = sum(
        (max(0.0, weight) / total) * _signal(signals.get(name))
        for name, weight in w.items()
    )
    return min(1.0, max(0.0, confidence))


def _trigrams(text: str) -> set[str]:
    normalized = " ".join(text.lower().split())
    return {normalized[i:i + 3] for i in range(len(normalized) - 2)}


def lexical_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard index over character tri-grams of lowercased, whitespace-collapsed text."""
    if not a or not b:
        return 0.0
    set_a = _trigrams(a)
    set_b = _trigrams(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def contextual_bias(hours_since: float, half_life_hours: float = 72.0) -> float:
    return decay(max(0.0, hours_since), half_life_hours)


def validate_confidence(value: Any) -> float:
    """
    Clamp a confidence to [0, 1].

    Raises:
        ValidationError: not a real number
    """
    if isinstance(value, bool):
        raise ValidationError(f"Confidence must be a number, got {value!r}")
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Confidence must be a number, got {value!r}")
    if math.isnan(v):
        raise ValidationError("Confidence must be a number, got NaN")
    return min(1.0, max(0.0, v))


def normalize_relation_type(relation_type: Optional[str]) -> str:
    """Map to the closed taxonomy; anything unknown becomes 'related'."""
    rel = (relation_type or DEFAULT_RELATION_TYPE).strip().lower()
    if rel not in RELATION_TYPE_IDS:
        logger.warning("Unknown relation type %r, using %r", relation_type, DEFAULT_RELATION_TYPE)
        return DEFAULT_RELATION_TYPE
    return rel


@dataclass
class LinkResult:
    """Outcome of a create/upsert: the stored link and an optional cycle warning."""
    link: Optional[Link]
    warning: Optional[CycleDetectedError] = None
    created: bool = False

    @property
    def ok(self) -> bool:
        return self.link is not None


@dataclass
class ChainStep:
    """One hop of a chain: a stored link or an inferred relation."""
    source_node_id: str
    target_node_id: str
    relation_type: str
    confidence: float
    project_id: Optional[str] = None
    link_id: Optional[str] = None

    def describe(self) -> str:
        return f"{self.source_node_id} --[{self.relation_type} ({self.confidence:.2f})]--> {self.target_node_id}"


@dataclass
class LinkChain:
    """A path of active links; its confidence is the product of the hops'."""
    nodes: list[str]
    steps: list[ChainStep]
    combined_confidence: float

    @property
    def length(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict:
        return {
            "nodes": list(self.nodes),
            "steps": [dict(step.__dict__) for step in self.steps],
            "combined_confidence": self.combined_confidence,
            "length": self.length,
        }


class Linker:
    """Validated link creation, history-tracked updates and cycle checks."""

    def __init__(self, store: LinkStore, settings: Optional[LinkingSettings] = None):
        self._store = store
        self._settings = settings or LinkingSettings()

    @property
    def store(self) -> LinkStore:
        return self._store

    def weights(self) -> dict[str, float]:
        return self._settings.weights()

    def _append_history(self, link: Link, event: LinkEvent) -> None:
        link.history.append(event)
        overflow = len(link.history) - self._settings.max_history
        if overflow > 0:
            del link.history[:overflow]

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_link(
        self,
        project_id: str,
        source_node_id: str,
        target_node_id: str,
        relation_type: str = DEFAULT_RELATION_TYPE,
        confidence: Any = 0.5,
        provenance: Optional[Provenance] = None,
        weight: float = 1.0,
        metadata: Optional[dict] = None,
        check_cycles: bool = True,
        force: bool = False,
        link_id: Optional[str] = None,
    ) -> LinkResult:
        """
        Create a link.

        When the link would close a cycle the result carries a
        CycleDetectedError warning and nothing is written, unless
        ``force`` is set.

        Raises:
            ValidationError: self-link, missing ids, non-numeric confidence
        """
        if source_node_id == target_node_id:
            raise ValidationError(f"Cannot link node {source_node_id!r} to itself")
        if not source_node_id or not target_node_id:
            raise ValidationError("source_node_id and target_node_id are required")
        if not project_id:
            raise ValidationError("project_id is required")
        confidence = validate_confidence(confidence)
        relation_type = normalize_relation_type(relation_type)

        warning = None
        if check_cycles and self.would_create_cycle(source_node_id, target_node_id, project_id):
            warning = CycleDetectedError(source_node_id, target_node_id)
            if not force:
                logger.info("Link %s -> %s not created: would close a cycle",
                            source_node_id, target_node_id)
                return LinkResult(link=None, warning=warning, created=False)

        now = utc_now()
        provenance = provenance or Provenance(method="manual", timestamp=now)
        note = provenance.note or "Link created"
        if warning is not None:
            note += " (cycle confirmed)"
        link = Link(
            id=link_id or f"link_{uuid.uuid4().hex}",
            project_id=project_id,
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            relation_type=relation_type,
            confidence=confidence,
            active=True,
            provenance=provenance,
            history=[LinkEvent(timestamp=now, action="created", note=note)],
            weight=float(weight),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._store.save(link)
        logger.info(
            "Created link %s: %s --[%s]--> %s (confidence %.2f)",
            link.id, source_node_id, relation_type, target_node_id, confidence,
        )
        return LinkResult(link=link, warning=warning, created=True)

    def upsert_link(
        self,
        project_id: str,
        source_node_id: str,
        target_node_id: str,
        relation_type: str = DEFAULT_RELATION_TYPE,
        link_id: Optional[str] = None,
        note: Optional[str] = None,
        **fields,
    ) -> LinkResult:
        """
        Update the link with ``link_id`` or the same (source, target, type),
        or create it.

        Updates go through update_link and append history.
        """
        existing = self._store.get(link_id) if link_id else None
        if existing is None and source_node_id and target_node_id:
            matches = self._store.query(
                source_node_id=source_node_id,
                target_node_id=target_node_id,
                relation_type=normalize_relation_type(relation_type),
                limit=1,
            )
            existing = matches[0] if matches else None

        if existing is not None:
            changes = {k: v for k, v in fields.items() if k in _MUTABLE_FIELDS}
            updated = self.update_link(existing.id, note=note or "Link updated", **changes)
            return LinkResult(link=updated, created=False)

        create_args = {k: v for k, v in fields.items()
                       if k in ("confidence", "provenance", "weight", "metadata",
                                "check_cycles", "force")}
        return self.create_link(
            project_id, source_node_id, target_node_id, relation_type,
            link_id=link_id, **create_args,
        )

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def update_link(self, link_id: str, note: Optional[str] = None, **changes) -> Link:
        """
        Change link fields and append a history event recording them.

        Raises:
            KeyError: no such link
            ValidationError: unknown field or invalid value
        """
        unknown = set(changes) - set(_MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update link fields: {sorted(unknown)}")

        link = self._store.get(link_id)
        if link is None:
            raise KeyError(f"Link not found: {link_id}")

        if "confidence" in changes:
            changes["confidence"] = validate_confidence(changes["confidence"])
        if "relation_type" in changes:
            changes["relation_type"] = normalize_relation_type(changes["relation_type"])
        if "active" in changes:
            changes["active"] = bool(changes["active"])
        if "weight" in changes:
            changes["weight"] = float(changes["weight"])

        recorded = {}
        for field_name, value in changes.items():
            old = getattr(link, field_name)
            if old == value:
                continue
            setattr(link, field_name, value)
            if field_name == "provenance":
                recorded[field_name] = {"from": old.to_dict(), "to": value.to_dict()}
            else:
                recorded[field_name] = {"from": old, "to": value}

        if not recorded:
            return link

        now = utc_now()
        link.updated_at = now
        self._append_history(link, LinkEvent(
            timestamp=now,
            action="updated",
            note=note or "Link updated",
            changes=recorded,
        ))
        self._store.save(link)
        logger.debug("Updated link %s: %s", link_id, sorted(recorded))
        return link

    def deactivate_link(self, link_id: str, note: str = "Link deactivated") -> Link:
        return self.update_link(link_id, note=note, active=False)

    def remove_link(self, link_id: str) -> bool:
        logger.info("Removing link %s", link_id)
        return self._store.delete(link_id)

    def batch_update_confidences(self, updates) -> int:
        """
        Set new confidences on many links.

        Args:
            updates: Iterable of (link_id, confidence) pairs or dicts with
                link_id and confidence

        Returns:
            Number of links updated
        """
        count = 0
        total = 0
        for item in updates:
            total += 1
            if isinstance(item, Mapping):
                link_id, confidence = item["link_id"], item["confidence"]
            else:
                link_id, confidence = item
            try:
                self.update_link(link_id, note="Confidence recomputed", confidence=confidence)
                count += 1
            except (KeyError, ValidationError) as e:
                logger.warning("Failed to update link %s: %s", link_id, e)
        logger.info("Updated %d/%d link confidences", count, total)
        return count

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_link(self, link_id: str) -> Optional[Link]:
        return self._store.get(link_id)

    def query_links(self, **filters) -> list[Link]:
        """Filter by source_node_id, target_node_id, project_id, relation_type, active."""
        return self._store.query(**filters)

    def get_node_links(
        self,
        node_id: str,
        project_id: Optional[str] = None,
        active: Optional[bool] = None,
        limit: int = 100,
    ) -> dict[str, list[Link]]:
        """A node's links split by direction, highest confidence first."""
        return {
            "outgoing": self._store.query(
                source_node_id=node_id, project_id=project_id,
                active=active, limit=limit, sort_by="confidence",
            ),
            "incoming": self._store.query(
                target_node_id=node_id, project_id=project_id,
                active=active, limit=limit, sort_by="confidence",
            ),
        }

    def would_create_cycle(
        self,
        source_node_id: str,
        target_node_id: str,
        project_id: Optional[str] = None,
    ) -> bool:
        """
        True if source is reachable from target over active links, i.e.
        adding source -> target would close a cycle.

        The breadth-first walk examines at most ``max_cycle_traversal``
        links; an exhausted budget reports no cycle.
        """
        if source_node_id == target_node_id:
            return True
        budget = self._settings.max_cycle_traversal
        visited = {target_node_id}
        queue = deque([target_node_id])
        examined = 0
        while queue:
            current = queue.popleft()
            remaining = budget - examined
            if remaining <= 0:
                logger.debug("Cycle check %s -> %s stopped after %d links",
                             source_node_id, target_node_id, examined)
                return False
            for nxt in self._store.targets_of(current, project_id, limit=remaining):
                examined += 1
                if nxt == source_node_id:
                    return True
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)
        return False

    def find_chains(
        self,
        source_node_id: str,
        target_node_id: str,
        max_depth: Optional[int] = None,
        max_chains: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
    ) -> list[LinkChain]:
        """
        Paths of active links from source to target, best first.

        Breadth-first, so shorter chains are found first; a path never
        revisits a node. The walk ends once ``max_chains`` chains are found
        or ``max_chain_traversal`` links have been examined. Chains are
        ranked by the product of their links' confidences.

        Raises:
            ValidationError: missing source or target id
        """
        if not source_node_id or not target_node_id:
            raise ValidationError("source_node_id and target_node_id are required")
        if source_node_id == target_node_id:
            return []
        max_depth = self._settings.max_chain_depth if max_depth is None else max_depth
        max_chains = self._settings.max_chains if max_chains is None else max_chains
        if max_depth <= 0 or max_chains <= 0:
            return []
        allowed = set(project_ids) if project_ids is not None else None

        budget = self._settings.max_chain_traversal
        examined = 0
        chains: list[LinkChain] = []
        queue = deque([([source_node_id], [], 1.0)])
        while queue and len(chains) < max_chains and examined < budget:
            path, steps, combined = queue.popleft()
            if len(steps) >= max_depth:
                continue
            outgoing = self._store.query(
                source_node_id=path[-1], active=True,
                limit=budget - examined, sort_by="confidence",
            )
            for link in outgoing:
                examined += 1
                if link.target_node_id in path:
                    continue
                if allowed is not None and link.project_id not in allowed:
                    continue
                step = ChainStep(
                    source_node_id=link.source_node_id,
                    target_node_id=link.target_node_id,
                    relation_type=link.relation_type,
                    confidence=link.confidence,
                    project_id=link.project_id,
                    link_id=link.id,
                )
                state = (path + [link.target_node_id], steps + [step], combined * link.confidence)
                if link.target_node_id == target_node_id:
                    chains.append(LinkChain(*state))
                    if len(chains) >= max_chains:
                        break
                else:
                    queue.append(state)

        chains.sort(key=lambda c: (-c.combined_confidence, c.length, c.nodes))
        logger.debug("Found %d chains %s -> %s after %d links",
                     len(chains), source_node_id, target_node_id, examined)
        return chains

    def link_statistics(self, project_id: Optional[str] = None) -> dict:
        links = self._store.query(project_id=project_id, active=True, limit=None)
        by_type: dict[str, int] = {}
        for link in links:
            by_type[link.relation_type] = by_type.get(link.relation_type, 0) + 1
        return {
            "total_links": len(links),
            "by_relation_type": by_type,
            "avg_confidence": (
                sum(link.confidence for link in links) / len(links) if links else 0.0
            ),
        }
