"""
Interaction memory.

Records what the user did with which node (view, search, expand, ...)
and scores past interactions against a query:

    score = alpha * cosine(query, interaction.embedding)
            + beta * exp(-ln2 * hours_since / half_life_hours)

Interactions without an embedding score on recency alone.
"""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import MemorySettings
from .errors import ValidationError
from .searcher import cosine_similarity
from .types import (
    ACTION_TYPES,
    Interaction,
    Node,
    decay,
    hours_since,
    parse_utc_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def _canonical(ts: str) -> str:
    return parse_utc_timestamp(ts).astimezone(timezone.utc).strftime(_TS_FORMAT)


class InteractionStore:
    """SQLite-backed append-only interaction log."""

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS interactions (
                id TEXT PRIMARY KEY,
                action_type TEXT NOT NULL,
                at TEXT NOT NULL,
                node_id TEXT,
                embedding_json TEXT,
                meta_json TEXT NOT NULL DEFAULT '{}'
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_interactions_at ON interactions(at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_interactions_node ON interactions(node_id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_interactions_action ON interactions(action_type)")
        self._conn.commit()

    @staticmethod
    def _row_to_interaction(row: sqlite3.Row) -> Interaction:
        embedding = row["embedding_json"]
        return Interaction(
            id=row["id"],
            action_type=row["action_type"],
            at=row["at"],
            node_id=row["node_id"],
            embedding=json.loads(embedding) if embedding else None,
            meta=json.loads(row["meta_json"]),
        )

    def add(self, interaction: Interaction) -> None:
        with self._lock:
            self._conn.execute("""
                INSERT INTO interactions (id, action_type, at, node_id, embedding_json, meta_json)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                interaction.id,
                interaction.action_type,
                interaction.at,
                interaction.node_id,
                json.dumps(interaction.embedding) if interaction.embedding else None,
                json.dumps(interaction.meta, ensure_ascii=False),
            ))
            self._conn.commit()

    def recent(
        self,
        limit: int = 100,
        action_type: Optional[str] = None,
        node_id: Optional[str] = None,
        node_ids: Optional[Sequence[str]] = None,
    ) -> list[Interaction]:
        """Newest first."""
        clauses = []
        params: list = []
        if action_type is not None:
            clauses.append("action_type = ?")
            params.append(action_type)
        if node_id is not None:
            clauses.append("node_id = ?")
            params.append(node_id)
        if node_ids is not None:
            if not node_ids:
                return []
            clauses.append(f"node_id IN ({','.join('?' * len(node_ids))})")
            params.extend(node_ids)
        sql = "SELECT * FROM interactions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_interaction(row) for row in rows]

    def delete_before(self, cutoff: str) -> int:
        """Delete interactions at or before ``cutoff``."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM interactions WHERE at <= ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def stats(self) -> dict:
        with self._lock:
            total, oldest, newest = self._conn.execute(
                "SELECT COUNT(*), MIN(at), MAX(at) FROM interactions"
            ).fetchone()
            rows = self._conn.execute("""
                SELECT action_type, COUNT(*) AS n FROM interactions
                GROUP BY action_type ORDER BY action_type
            """).fetchall()
        return {
            "total_records": total,
            "oldest_record": oldest,
            "newest_record": newest,
            "by_action_type": {row["action_type"]: row["n"] for row in rows},
        }

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM interactions")
            self._conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()


class InteractionMemory:
    """Validated access to the interaction log."""

    def __init__(self, store: InteractionStore):
        self._store = store

    def record_interaction(
        self,
        action_type: str,
        node_id: Optional[str] = None,
        embedding: Optional[list[float]] = None,
        meta: Optional[dict] = None,
        at: Optional[str] = None,
    ) -> Interaction:
        """
        Append an interaction.

        Raises:
            ValidationError: unknown action type or unparseable timestamp
        """
        action = getattr(action_type, "value", action_type)
        if action not in ACTION_TYPES:
            raise ValidationError(
                f"Unknown action type {action_type!r}. Use one of {sorted(ACTION_TYPES)}"
            )
        try:
            timestamp = _canonical(at) if at else utc_now()
        except ValueError as e:
            raise ValidationError(f"Invalid interaction timestamp {at!r}") from e

        interaction = Interaction(
            id=f"int_{uuid.uuid4().hex}",
            action_type=action,
            at=timestamp,
            node_id=node_id,
            embedding=list(embedding) if embedding else None,
            meta=dict(meta or {}),
        )
        self._store.add(interaction)
        logger.debug("Recorded %s interaction for %s", action, node_id)
        return interaction

    def get_recent_interactions(
        self,
        limit: int = 100,
        action_type: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> list[Interaction]:
        return self._store.recent(limit=limit, action_type=action_type, node_id=node_id)

    def interactions_for_node(self, node_id: str, limit: int = 50) -> list[Interaction]:
        return self._store.recent(limit=limit, node_id=node_id)

    def interactions_for_nodes(self, node_ids: Sequence[str], limit: int = 1000) -> list[Interaction]:
        return self._store.recent(limit=limit, node_ids=list(node_ids))

    def purge(self, older_than_ms: float) -> int:
        """
        Delete interactions recorded at or before now - older_than_ms.

        Returns:
            Number of interactions deleted
        """
        if older_than_ms < 0:
            raise ValidationError("older_than_ms must be >= 0")
        cutoff = datetime.now(timezone.utc) - timedelta(milliseconds=older_than_ms)
        removed = self._store.delete_before(cutoff.strftime(_TS_FORMAT))
        logger.info("Purged %d interactions older than %dms", removed, older_than_ms)
        return removed

    def stats(self) -> dict:
        return self._store.stats()

    def clear(self) -> None:
        self._store.clear()


def _describe(action: str, hours: float, avg_similarity: float, count: int) -> str:
    if hours < 1:
        reason = f"Recent {action} (<1h ago)"
    elif hours < 24:
        reason = f"{action} {round(hours)}h ago"
    else:
        reason = f"{action} {round(hours / 24)}d ago"
    if avg_similarity > 0.5:
        reason += f" • sim {avg_similarity:.2f}"
    if count > 1:
        reason += f" • {count} interactions"
    return reason


@dataclass
class ContextSuggestion:
    """A node surfaced from interaction memory."""
    node_id: str
    score: float
    reason: str
    title: Optional[str] = None
    interaction_count: int = 0
    avg_similarity: float = 0.0
    recent_action: Optional[str] = None


class InteractionMemoryScorer:
    """Scores interactions by semantic similarity and recency."""

    def __init__(
        self,
        memory: InteractionMemory,
        alpha: float = 0.7,
        beta: float = 0.3,
        half_life_hours: float = 72.0,
        max_interactions: int = 1000,
        node_lookup: Optional[Callable[[str], Optional[Node]]] = None,
    ):
        self.memory = memory
        self.alpha = alpha
        self.beta = beta
        self.half_life_hours = half_life_hours
        self.max_interactions = max_interactions
        self._node_lookup = node_lookup

    @classmethod
    def from_settings(
        cls,
        memory: InteractionMemory,
        settings: MemorySettings,
        node_lookup: Optional[Callable[[str], Optional[Node]]] = None,
    ) -> "InteractionMemoryScorer":
        return cls(
            memory,
            alpha=settings.alpha,
            beta=settings.beta,
            half_life_hours=settings.half_life_hours,
            max_interactions=settings.max_interactions,
            node_lookup=node_lookup,
        )

    def recency(self, interaction: Interaction, now: Optional[datetime] = None) -> float:
        return decay(hours_since(interaction.at, now), self.half_life_hours)

    def score(
        self,
        interaction: Interaction,
        query_embedding: Optional[Sequence[float]],
        now: Optional[datetime] = None,
    ) -> float:
        semantic = 0.0
        if query_embedding and interaction.embedding:
            semantic = cosine_similarity(query_embedding, interaction.embedding)
        return self.alpha * semantic + self.beta * self.recency(interaction, now)

    def get_context_suggestions(
        self,
        query_embedding: Sequence[float],
        top_n: int = 5,
        now: Optional[datetime] = None,
    ) -> list[ContextSuggestion]:
        """
        Nodes from recent interactions, scored by their best interaction.

        Raises:
            ValidationError: no query embedding
        """
        if not query_embedding:
            raise ValidationError("query_embedding is required")
        now = now or datetime.now(timezone.utc)
        interactions = self.memory.get_recent_interactions(limit=self.max_interactions)

        per_node: dict[str, dict] = {}
        for interaction in interactions:
            if not interaction.node_id:
                continue
            semantic = 0.0
            if interaction.embedding:
                semantic = cosine_similarity(query_embedding, interaction.embedding)
            combined = self.alpha * semantic + self.beta * self.recency(interaction, now)
            data = per_node.setdefault(interaction.node_id, {
                "score": combined,
                "similarities": [],
                "hours": [],
                # Newest first, so the first seen is the most recent action
                "recent_action": interaction.action_type,
            })
            data["score"] = max(data["score"], combined)
            data["similarities"].append(semantic)
            data["hours"].append(hours_since(interaction.at, now))

        ranked = sorted(per_node.items(), key=lambda item: (-item[1]["score"], item[0]))[:top_n]

        suggestions = []
        for node_id, data in ranked:
            avg_sim = sum(data["similarities"]) / len(data["similarities"])
            count = len(data["similarities"])
            title = None
            if self._node_lookup is not None:
                node = self._node_lookup(node_id)
                title = (node.title or "Untitled") if node else "Unknown"
            suggestions.append(ContextSuggestion(
                node_id=node_id,
                score=data["score"],
                reason=_describe(data["recent_action"], min(data["hours"]), avg_sim, count),
                title=title,
                interaction_count=count,
                avg_similarity=avg_sim,
                recent_action=data["recent_action"],
            ))
        return suggestions

    def get_recent_context(self, limit: int = 50) -> list[Interaction]:
        """Most recent interactions that reference a node, one per node."""
        seen = set()
        result = []
        for interaction in self.memory.get_recent_interactions(limit=self.max_interactions):
            if not interaction.node_id or interaction.node_id in seen:
                continue
            seen.add(interaction.node_id)
            result.append(interaction)
            if len(result) >= limit:
                break
        return result

    def recency_for_nodes(
        self,
        node_ids: Sequence[str],
        now: Optional[datetime] = None,
    ) -> dict[str, float]:
        """
        Best recency decay per node over its recent interactions.

        Nodes without interactions are omitted (bias 0).
        """
        now = now or datetime.now(timezone.utc)
        result: dict[str, float] = {}
        for interaction in self.memory.interactions_for_nodes(node_ids, limit=self.max_interactions):
            value = self.recency(interaction, now)
            if value > result.get(interaction.node_id, 0.0):
                result[interaction.node_id] = value
        return result

    def recency_for_node(self, node_id: str, now: Optional[datetime] = None) -> float:
        return self.recency_for_nodes([node_id], now).get(node_id, 0.0)
