"""
Project registry using SQLite.

Tracks project metadata (activation, ranking weight, last access) for
cross-project search. Node content lives in the NodeStore.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from .errors import ValidationError
from .types import (
    DEFAULT_PROJECT_WEIGHT,
    MAX_PROJECT_WEIGHT,
    MIN_PROJECT_WEIGHT,
    Project,
    utc_now,
)

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset({
    "name", "active", "weight", "last_accessed_at", "node_count",
    "embedding_count", "root_node_id", "meta",
})


def validate_weight(weight: Any) -> float:
    """
    Raises:
        ValidationError: weight is not a number in [0.1, 2.0]
    """
    try:
        w = float(weight)
    except (TypeError, ValueError):
        raise ValidationError(f"Project weight must be a number, got {weight!r}")
    if not (MIN_PROJECT_WEIGHT <= w <= MAX_PROJECT_WEIGHT):
        raise ValidationError(
            f"Project weight {w} outside [{MIN_PROJECT_WEIGHT}, {MAX_PROJECT_WEIGHT}]"
        )
    return w


class ProjectRegistry:
    """SQLite-backed store for project metadata."""

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
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                weight REAL NOT NULL DEFAULT 1.0,
                last_accessed_at TEXT NOT NULL,
                node_count INTEGER NOT NULL DEFAULT 0,
                embedding_count INTEGER NOT NULL DEFAULT 0,
                root_node_id TEXT,
                imported_at TEXT NOT NULL,
                meta_json TEXT NOT NULL DEFAULT '{}'
            )
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_projects_accessed
            ON projects(last_accessed_at)
        """)

        self._conn.commit()

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            active=bool(row["active"]),
            weight=row["weight"],
            last_accessed_at=row["last_accessed_at"],
            node_count=row["node_count"],
            embedding_count=row["embedding_count"],
            root_node_id=row["root_node_id"],
            imported_at=row["imported_at"],
            meta=json.loads(row["meta_json"]),
        )

    def _write(self, project: Project) -> None:
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO projects
                (id, name, active, weight, last_accessed_at, node_count,
                 embedding_count, root_node_id, imported_at, meta_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                project.id, project.name, int(project.active), project.weight,
                project.last_accessed_at, project.node_count, project.embedding_count,
                project.root_node_id, project.imported_at,
                json.dumps(project.meta, ensure_ascii=False),
            ))
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def register_project(
        self,
        project_id: str,
        name: Optional[str] = None,
        weight: float = DEFAULT_PROJECT_WEIGHT,
        active: bool = True,
        node_count: int = 0,
        embedding_count: int = 0,
        root_node_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Project:
        """
        Register a project, or refresh an existing registration.

        Re-registering keeps the original imported_at and the user's
        weight/active settings; counts and root are replaced.
        """
        if not project_id:
            raise ValidationError("Project id is required")
        weight = validate_weight(weight)

        existing = self.get_project(project_id)
        now = utc_now()
        if existing:
            project = Project(
                id=project_id,
                name=name or existing.name,
                active=existing.active,
                weight=existing.weight,
                last_accessed_at=now,
                node_count=node_count,
                embedding_count=embedding_count,
                root_node_id=root_node_id or existing.root_node_id,
                imported_at=existing.imported_at,
                meta={**existing.meta, **(meta or {})},
            )
        else:
            project = Project(
                id=project_id,
                name=name or project_id,
                active=active,
                weight=weight,
                last_accessed_at=now,
                node_count=node_count,
                embedding_count=embedding_count,
                root_node_id=root_node_id,
                imported_at=now,
                meta=dict(meta or {}),
            )
        self._write(project)
        logger.info("Registered project %s (%d nodes)", project_id, node_count)
        return project

    def update_project(self, project_id: str, **updates) -> Project:
        """
        Update fields of a registered project.

        Raises:
            KeyError: project not registered
            ValidationError: unknown field or invalid weight
        """
        unknown = set(updates) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update project fields: {sorted(unknown)}")
        if "weight" in updates:
            updates["weight"] = validate_weight(updates["weight"])

        with self._lock:
            project = self.get_project(project_id)
            if project is None:
                raise KeyError(f"Project not found: {project_id}")
            for key, value in updates.items():
                setattr(project, key, value)
            self._write(project)
        return project

    def set_active(self, project_id: str, active: bool) -> Project:
        return self.update_project(project_id, active=bool(active))

    def set_weight(self, project_id: str, weight: float) -> Project:
        return self.update_project(project_id, weight=weight)

    def touch_project(self, project_id: str) -> bool:
        """Set last_accessed_at to now. Returns False for unknown projects."""
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE projects SET last_accessed_at = ? WHERE id = ?
            """, (utc_now(), project_id))
            self._conn.commit()
        return cursor.rowcount > 0

    def delete_project(self, project_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM projects")
            self._conn.commit()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def list_projects(self, active_only: bool = False) -> list[Project]:
        """Projects, most recently accessed first (ties by id)."""
        sql = "SELECT * FROM projects"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY last_accessed_at DESC, id"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        return [self._row_to_project(row) for row in rows]

    def stats(self) -> dict:
        projects = self.list_projects()
        if not projects:
            return {
                "total": 0,
                "active": 0,
                "total_nodes": 0,
                "total_embeddings": 0,
                "average_weight": 0.0,
                "oldest_import": None,
                "newest_import": None,
            }
        imports = sorted(p.imported_at for p in projects)
        return {
            "total": len(projects),
            "active": sum(1 for p in projects if p.active),
            "total_nodes": sum(p.node_count for p in projects),
            "total_embeddings": sum(p.embedding_count for p in projects),
            "average_weight": sum(p.weight for p in projects) / len(projects),
            "oldest_import": imports[0],
            "newest_import": imports[-1],
        }

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
