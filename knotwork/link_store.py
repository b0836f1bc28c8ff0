"""
Link store using SQLite.

Persists typed links between nodes with their provenance and change
history. The Linker is the only writer; it owns validation and history.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from .types import Link, LinkEvent, Provenance

_SORT_COLUMNS = {
    "updated_at": "updated_at DESC",
    "created_at": "created_at DESC",
    "confidence": "confidence DESC",
}


class LinkStore:
    """SQLite-backed store for links."""

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
            CREATE TABLE IF NOT EXISTS links (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                source_node_id TEXT NOT NULL,
                target_node_id TEXT NOT NULL,
                relation_type TEXT NOT NULL,
                confidence REAL NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                provenance_json TEXT NOT NULL DEFAULT '{}',
                history_json TEXT NOT NULL DEFAULT '[]',
                weight REAL NOT NULL DEFAULT 1.0,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        for name, columns in (
            ("idx_links_source", "source_node_id, relation_type"),
            ("idx_links_target", "target_node_id, relation_type"),
            ("idx_links_project", "project_id"),
            ("idx_links_type", "relation_type"),
        ):
            self._conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON links({columns})")

        self._conn.commit()

    @staticmethod
    def _row_to_link(row: sqlite3.Row) -> Link:
        return Link(
            id=row["id"],
            project_id=row["project_id"],
            source_node_id=row["source_node_id"],
            target_node_id=row["target_node_id"],
            relation_type=row["relation_type"],
            confidence=row["confidence"],
            active=bool(row["active"]),
            provenance=Provenance.from_dict(json.loads(row["provenance_json"])),
            history=[LinkEvent.from_dict(e) for e in json.loads(row["history_json"])],
            weight=row["weight"],
            metadata=json.loads(row["metadata_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def save(self, link: Link) -> Link:
        """Insert or replace a link record."""
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO links
                (id, project_id, source_node_id, target_node_id, relation_type,
                 confidence, active, provenance_json, history_json, weight,
                 metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                link.id, link.project_id, link.source_node_id, link.target_node_id,
                link.relation_type, link.confidence, int(link.active),
                json.dumps(link.provenance.to_dict()),
                json.dumps([e.to_dict() for e in link.history], ensure_ascii=False),
                link.weight,
                json.dumps(link.metadata, ensure_ascii=False),
                link.created_at, link.updated_at,
            ))
            self._conn.commit()
        return link

    def delete(self, link_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM links WHERE id = ?", (link_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def delete_project(self, project_id: str) -> int:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM links WHERE project_id = ?", (project_id,))
            self._conn.commit()
        return cursor.rowcount

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM links")
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, link_id: str) -> Optional[Link]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM links WHERE id = ?", (link_id,)).fetchone()
        return self._row_to_link(row) if row else None

    def query(
        self,
        source_node_id: Optional[str] = None,
        target_node_id: Optional[str] = None,
        project_id: Optional[str] = None,
        relation_type: Optional[str] = None,
        active: Optional[bool] = None,
        limit: Optional[int] = 100,
        sort_by: str = "updated_at",
    ) -> list[Link]:
        """
        Links matching every given filter.

        Args:
            sort_by: updated_at, created_at or confidence (descending; ties by id)
            limit: Maximum results (None for all)
        """
        clauses = []
        params: list = []
        for column, value in (
            ("source_node_id", source_node_id),
            ("target_node_id", target_node_id),
            ("project_id", project_id),
            ("relation_type", relation_type),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if active is not None:
            clauses.append("active = ?")
            params.append(int(active))

        sql = "SELECT * FROM links"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {_SORT_COLUMNS.get(sort_by, _SORT_COLUMNS['updated_at'])}, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_link(row) for row in rows]

    def targets_of(self, node_id: str, project_id: Optional[str] = None, limit: int = 50) -> list[str]:
        """Target ids of a node's active outgoing links."""
        sql = "SELECT target_node_id FROM links WHERE source_node_id = ? AND active = 1"
        params: list = [node_id]
        if project_id is not None:
            sql += " AND project_id = ?"
            params.append(project_id)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [row["target_node_id"] for row in rows]

    def count(self, project_id: Optional[str] = None) -> int:
        with self._lock:
            if project_id is None:
                return self._conn.execute("SELECT COUNT(*) FROM links").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM links WHERE project_id = ?", (project_id,)
            ).fetchone()[0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

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
