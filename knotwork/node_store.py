"""
Node and spatial key store using SQLite.

The node store is the persistent, key-ordered backing store for the
semantic index. It holds:
- Node records (text, tree structure, embedding) per project
- Spatial keys, ordered by key within each project
- Quantization params (shared and per-project) as federation metadata

Spatial keys are fixed-width hex strings, so SQLite's text ordering is
the numeric key ordering and range scans are plain BETWEEN queries.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .quantization import QuantizationParams
from .types import Node

# federation_meta scope holding the shared params
GLOBAL_SCOPE = "__global__"


class NodeStore:
    """
    SQLite-backed store for nodes, spatial keys and quantization params.

    One connection is shared between the event loop and worker threads, so
    every statement runs under a store-wide lock.
    """

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
            CREATE TABLE IF NOT EXISTS nodes (
                project_id TEXT NOT NULL,
                id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                text TEXT NOT NULL DEFAULT '',
                embedding_json TEXT,
                spatial_key TEXT,
                parent_id TEXT,
                child_ids_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                meta_json TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (project_id, id)
            )
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_nodes_id
            ON nodes(id)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS spatial_keys (
                project_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                key_hex TEXT NOT NULL,
                params_version INTEGER NOT NULL,
                PRIMARY KEY (project_id, node_id)
            )
        """)

        # Range scans walk this index in key order
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_spatial_keys_key
            ON spatial_keys(project_id, key_hex)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS federation_meta (
                scope TEXT PRIMARY KEY,
                params_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        self._conn.commit()

    def _now(self) -> str:
        """Current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> Node:
        embedding = row["embedding_json"]
        return Node(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            text=row["text"],
            embedding=json.loads(embedding) if embedding else None,
            spatial_key=row["spatial_key"],
            parent_id=row["parent_id"],
            child_ids=json.loads(row["child_ids_json"]),
            created_at=row["created_at"],
            meta=json.loads(row["meta_json"]),
        )

    # -------------------------------------------------------------------------
    # Node Write Operations
    # -------------------------------------------------------------------------

    def upsert_nodes(self, nodes: list[Node]) -> int:
        """
        Insert or replace node records.

        Returns:
            Number of nodes written
        """
        rows = [
            (
                n.project_id,
                n.id,
                n.title or "",
                n.text or "",
                json.dumps(n.embedding) if n.embedding else None,
                n.spatial_key,
                n.parent_id,
                json.dumps(list(n.child_ids)),
                n.created_at,
                json.dumps(n.meta, ensure_ascii=False),
            )
            for n in nodes
        ]
        with self._lock:
            self._conn.executemany("""
                INSERT OR REPLACE INTO nodes
                (project_id, id, title, text, embedding_json, spatial_key,
                 parent_id, child_ids_json, created_at, meta_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
            self._conn.commit()
        return len(rows)

    def upsert_node(self, node: Node) -> Node:
        self.upsert_nodes([node])
        return node

    def delete_nodes(self, project_id: str, node_ids: list[str]) -> int:
        """
        Delete nodes and their spatial keys.

        Returns:
            Number of node records deleted
        """
        if not node_ids:
            return 0
        placeholders = ",".join("?" * len(node_ids))
        with self._lock:
            self._conn.execute(f"""
                DELETE FROM spatial_keys
                WHERE project_id = ? AND node_id IN ({placeholders})
            """, (project_id, *node_ids))
            cursor = self._conn.execute(f"""
                DELETE FROM nodes
                WHERE project_id = ? AND id IN ({placeholders})
            """, (project_id, *node_ids))
            self._conn.commit()
        return cursor.rowcount

    def delete_project(self, project_id: str) -> int:
        """
        Delete every node, key and per-project params of a project.

        Returns:
            Number of node records deleted
        """
        with self._lock:
            self._conn.execute(
                "DELETE FROM spatial_keys WHERE project_id = ?", (project_id,)
            )
            self._conn.execute(
                "DELETE FROM federation_meta WHERE scope = ?", (project_id,)
            )
            cursor = self._conn.execute(
                "DELETE FROM nodes WHERE project_id = ?", (project_id,)
            )
            self._conn.commit()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Node Read Operations
    # -------------------------------------------------------------------------

    def get_node(self, project_id: str, node_id: str) -> Optional[Node]:
        with self._lock:
            row = self._conn.execute("""
                SELECT * FROM nodes WHERE project_id = ? AND id = ?
            """, (project_id, node_id)).fetchone()
        return self._row_to_node(row) if row else None

    def find_node(self, node_id: str) -> Optional[Node]:
        """Look up a node by id in any project (first match by project id)."""
        with self._lock:
            row = self._conn.execute("""
                SELECT * FROM nodes WHERE id = ?
                ORDER BY project_id
                LIMIT 1
            """, (node_id,)).fetchone()
        return self._row_to_node(row) if row else None

    def get_nodes(self, project_id: str, node_ids: list[str]) -> dict[str, Node]:
        """
        Get multiple nodes by ID.

        Returns:
            Dict mapping id -> Node (missing IDs omitted)
        """
        if not node_ids:
            return {}
        placeholders = ",".join("?" * len(node_ids))
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT * FROM nodes
                WHERE project_id = ? AND id IN ({placeholders})
            """, (project_id, *node_ids)).fetchall()
        return {row["id"]: self._row_to_node(row) for row in rows}

    def list_nodes(
        self,
        project_id: str,
        embedded_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Node]:
        """List a project's nodes ordered by id."""
        sql = "SELECT * FROM nodes WHERE project_id = ?"
        if embedded_only:
            sql += " AND embedding_json IS NOT NULL"
        sql += " ORDER BY id"
        params: tuple = (project_id,)
        if limit:
            sql += " LIMIT ?"
            params = (project_id, limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_node(row) for row in rows]

    def iter_embeddings(
        self,
        project_ids: Optional[list[str]] = None,
    ) -> Iterator[tuple[str, str, list[float]]]:
        """Yield (project_id, node_id, embedding) for every embedded node."""
        sql = "SELECT project_id, id, embedding_json FROM nodes WHERE embedding_json IS NOT NULL"
        params: tuple = ()
        if project_ids is not None:
            if not project_ids:
                return
            placeholders = ",".join("?" * len(project_ids))
            sql += f" AND project_id IN ({placeholders})"
            params = tuple(project_ids)
        sql += " ORDER BY project_id, id"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        for row in rows:
            yield row["project_id"], row["id"], json.loads(row["embedding_json"])

    def search_text(
        self,
        query: str,
        project_ids: Optional[list[str]] = None,
        limit: int = 20,
    ) -> list[Node]:
        """Case-insensitive substring match on title and text."""
        pattern = f"%{query.lower()}%"
        sql = """
            SELECT * FROM nodes
            WHERE (LOWER(title) LIKE ? OR LOWER(text) LIKE ?)
        """
        params: list = [pattern, pattern]
        if project_ids is not None:
            if not project_ids:
                return []
            placeholders = ",".join("?" * len(project_ids))
            sql += f" AND project_id IN ({placeholders})"
            params.extend(project_ids)
        sql += " ORDER BY project_id, id LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_node(row) for row in rows]

    def count(self, project_id: Optional[str] = None) -> int:
        """Count nodes in a project, or across all projects."""
        with self._lock:
            if project_id is None:
                return self._conn.execute("SELECT COUNT(*) FROM nodes").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM nodes WHERE project_id = ?", (project_id,)
            ).fetchone()[0]

    def count_embedded(self, project_id: Optional[str] = None) -> int:
        """Count nodes that carry an embedding."""
        with self._lock:
            if project_id is None:
                return self._conn.execute(
                    "SELECT COUNT(*) FROM nodes WHERE embedding_json IS NOT NULL"
                ).fetchone()[0]
            return self._conn.execute("""
                SELECT COUNT(*) FROM nodes
                WHERE project_id = ? AND embedding_json IS NOT NULL
            """, (project_id,)).fetchone()[0]

    def list_project_ids(self) -> list[str]:
        """Projects that have at least one node."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT project_id FROM nodes ORDER BY project_id"
            ).fetchall()
        return [row["project_id"] for row in rows]

    # -------------------------------------------------------------------------
    # Spatial Keys
    # -------------------------------------------------------------------------

    def put_keys(
        self,
        project_id: str,
        entries: list[tuple[str, str]],
        params_version: int,
    ) -> None:
        """
        Write (node_id, key_hex) pairs and mirror each key onto its node row.
        """
        if not entries:
            return
        with self._lock:
            self._conn.executemany("""
                INSERT OR REPLACE INTO spatial_keys
                (project_id, node_id, key_hex, params_version)
                VALUES (?, ?, ?, ?)
            """, [(project_id, node_id, key, params_version) for node_id, key in entries])
            self._conn.executemany("""
                UPDATE nodes SET spatial_key = ?
                WHERE project_id = ? AND id = ?
            """, [(key, project_id, node_id) for node_id, key in entries])
            self._conn.commit()

    def delete_key(self, project_id: str, node_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("""
                DELETE FROM spatial_keys WHERE project_id = ? AND node_id = ?
            """, (project_id, node_id))
            self._conn.execute("""
                UPDATE nodes SET spatial_key = NULL
                WHERE project_id = ? AND id = ?
            """, (project_id, node_id))
            self._conn.commit()
        return cursor.rowcount > 0

    def delete_project_keys(self, project_id: str) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM spatial_keys WHERE project_id = ?", (project_id,)
            )
            self._conn.execute(
                "UPDATE nodes SET spatial_key = NULL WHERE project_id = ?", (project_id,)
            )
            self._conn.commit()
        return cursor.rowcount

    def get_key(self, project_id: str, node_id: str) -> Optional[tuple[str, int]]:
        """Return (key_hex, params_version) for a node, or None if unkeyed."""
        with self._lock:
            row = self._conn.execute("""
                SELECT key_hex, params_version FROM spatial_keys
                WHERE project_id = ? AND node_id = ?
            """, (project_id, node_id)).fetchone()
        return (row["key_hex"], row["params_version"]) if row else None

    def scan_keys(
        self,
        project_id: str,
        low: str,
        high: str,
        limit: int,
        descending: bool = False,
    ) -> list[tuple[str, str]]:
        """
        Range scan (node_id, key_hex) pairs with low <= key <= high.

        Ascending by key unless ``descending`` is set.
        """
        order = "DESC" if descending else "ASC"
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT node_id, key_hex FROM spatial_keys
                WHERE project_id = ? AND key_hex BETWEEN ? AND ?
                ORDER BY key_hex {order}, node_id
                LIMIT ?
            """, (project_id, low, high, limit)).fetchall()
        return [(row["node_id"], row["key_hex"]) for row in rows]

    def list_keys(self, project_id: str) -> list[tuple[str, str, int]]:
        """All (node_id, key_hex, params_version) of a project in key order."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT node_id, key_hex, params_version FROM spatial_keys
                WHERE project_id = ?
                ORDER BY key_hex, node_id
            """, (project_id,)).fetchall()
        return [(row["node_id"], row["key_hex"], row["params_version"]) for row in rows]

    def count_keys(self, project_id: Optional[str] = None) -> int:
        with self._lock:
            if project_id is None:
                return self._conn.execute("SELECT COUNT(*) FROM spatial_keys").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM spatial_keys WHERE project_id = ?", (project_id,)
            ).fetchone()[0]

    # -------------------------------------------------------------------------
    # Quantization Params
    # -------------------------------------------------------------------------

    def save_params(self, scope: str, params: QuantizationParams) -> None:
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO federation_meta (scope, params_json, updated_at)
                VALUES (?, ?, ?)
            """, (scope, json.dumps(params.to_dict()), self._now()))
            self._conn.commit()

    def load_params(self, scope: str) -> Optional[QuantizationParams]:
        with self._lock:
            row = self._conn.execute(
                "SELECT params_json FROM federation_meta WHERE scope = ?", (scope,)
            ).fetchone()
        if row is None:
            return None
        return QuantizationParams.from_dict(json.loads(row["params_json"]))

    def delete_params(self, scope: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM federation_meta WHERE scope = ?", (scope,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def list_param_scopes(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT scope FROM federation_meta ORDER BY scope"
            ).fetchall()
        return [row["scope"] for row in rows]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        """Delete everything. Used for resets and tests."""
        with self._lock:
            self._conn.execute("DELETE FROM spatial_keys")
            self._conn.execute("DELETE FROM nodes")
            self._conn.execute("DELETE FROM federation_meta")
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
