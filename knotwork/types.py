"""
Data types for the semantic index.

Nodes and projects are owned by external collaborators (import pipeline,
editor); this package only derives spatial keys for them. Links and
interactions are owned here.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffff.

    All timestamps are UTC, stored without timezone suffix. Microseconds are
    kept so that interactions recorded in the same second still order.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as 'Z' and '+00:00'
    suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def hours_since(ts: str, now: Optional[datetime] = None) -> float:
    """Hours elapsed since a stored timestamp (never negative)."""
    now = now or datetime.now(timezone.utc)
    delta = (now - parse_utc_timestamp(ts)).total_seconds() / 3600.0
    return max(0.0, delta)


def days_since(ts: str, now: Optional[datetime] = None) -> float:
    """Days elapsed since a stored timestamp (never negative)."""
    return hours_since(ts, now) / 24.0


def decay(elapsed: float, half_life: float) -> float:
    """Exponential half-life decay: exp(-ln2 * elapsed / half_life)."""
    if half_life <= 0:
        return 0.0
    return math.exp(-math.log(2) * elapsed / half_life)


# ---------------------------------------------------------------------------
# Nodes and projects
# ---------------------------------------------------------------------------

@dataclass
class Node:
    """
    A text fragment in a project's tree.

    Attributes:
        id: Unique node identifier
        project_id: Owning project
        title: Short display title
        text: Full node text
        embedding: Fixed-length float vector, None until computed
        spatial_key: Morton key (hex) derived from the embedding
        parent_id: Parent node in the tree (None for roots)
        child_ids: Ordered child node IDs
        created_at: Creation timestamp (UTC)
        meta: Free-form metadata from the import pipeline
    """
    id: str
    project_id: str
    title: str = ""
    text: str = ""
    embedding: Optional[list[float]] = None
    spatial_key: Optional[str] = None
    parent_id: Optional[str] = None
    child_ids: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def with_embedding(self, embedding: Optional[list[float]]) -> "Node":
        """Return a copy with a new embedding; the stale spatial key is dropped."""
        return replace(self, embedding=embedding, spatial_key=None)

    @classmethod
    def from_dict(cls, data: dict, project_id: Optional[str] = None) -> "Node":
        """Build a node from an import record (camelCase or snake_case keys)."""
        def pick(*keys, default=None):
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return default

        pid = project_id or pick("project_id", "projectId")
        if not pid:
            raise ValueError(f"Node {data.get('id')!r} has no project_id")
        return cls(
            id=str(data["id"]),
            project_id=pid,
            title=pick("title", default=""),
            text=pick("text", default=""),
            embedding=pick("embedding"),
            spatial_key=None,
            parent_id=pick("parent_id", "parentId", "parent"),
            child_ids=list(pick("child_ids", "childIds", "children", default=[])),
            created_at=pick("created_at", "createdAt", default=None) or utc_now(),
            meta=dict(pick("meta", default={})),
        )


MIN_PROJECT_WEIGHT = 0.1
MAX_PROJECT_WEIGHT = 2.0
DEFAULT_PROJECT_WEIGHT = 1.0


@dataclass
class Project:
    """Project metadata tracked by the registry."""
    id: str
    name: str
    active: bool = True
    weight: float = DEFAULT_PROJECT_WEIGHT
    last_accessed_at: str = field(default_factory=utc_now)
    node_count: int = 0
    embedding_count: int = 0
    root_node_id: Optional[str] = None
    imported_at: str = field(default_factory=utc_now)
    meta: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RelationType:
    id: str
    label: str
    description: str


# Closed taxonomy. Order matters: deterministic labelling hashes into it.
RELATION_TYPES: tuple[RelationType, ...] = (
    RelationType("related", "Related", "Shares a topic without a stronger relation"),
    RelationType("clarifies", "Clarifies", "Explains or disambiguates the source"),
    RelationType("elaborates", "Elaborates", "Adds detail to the source"),
    RelationType("contradicts", "Contradicts", "Makes a conflicting claim"),
    RelationType("supports", "Supports", "Provides evidence for the source"),
    RelationType("example-of", "Example of", "Is a concrete instance of the source"),
    RelationType("depends-on", "Depends on", "Requires the source to be understood first"),
    RelationType("summarizes", "Summarizes", "Condenses the source"),
)

RELATION_TYPE_IDS = frozenset(r.id for r in RELATION_TYPES)
DEFAULT_RELATION_TYPE = "related"


def get_relation_type(relation_id: str) -> RelationType:
    for rel in RELATION_TYPES:
        if rel.id == relation_id:
            return rel
    raise KeyError(relation_id)


@dataclass
class Provenance:
    """How a link came to exist."""
    method: str = "manual"
    note: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {"method": self.method, "note": self.note, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Provenance":
        if not data:
            return cls()
        return cls(
            method=data.get("method", "manual"),
            note=data.get("note"),
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass
class LinkEvent:
    """One entry in a link's append-only change history."""
    timestamp: str
    action: str
    note: str = ""
    changes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "note": self.note,
            "changes": self.changes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LinkEvent":
        return cls(
            timestamp=data["timestamp"],
            action=data["action"],
            note=data.get("note", ""),
            changes=data.get("changes", {}),
        )


@dataclass
class Link:
    """A typed directed relationship between two nodes."""
    id: str
    project_id: str
    source_node_id: str
    target_node_id: str
    relation_type: str = DEFAULT_RELATION_TYPE
    confidence: float = 0.5
    active: bool = True
    provenance: Provenance = field(default_factory=Provenance)
    history: list[LinkEvent] = field(default_factory=list)
    weight: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------

class ActionType(str, Enum):
    VIEW = "view"
    SEARCH = "search"
    EXPAND = "expand"
    REWRITE = "rewrite"
    EDIT = "edit"
    EXPORT = "export"
    IMPORT = "import"


ACTION_TYPES = frozenset(a.value for a in ActionType)


@dataclass
class Interaction:
    """A recorded user interaction. Append-only."""
    id: str
    action_type: str
    at: str
    node_id: Optional[str] = None
    embedding: Optional[list[float]] = None
    meta: dict[str, Any] = field(default_factory=dict)
