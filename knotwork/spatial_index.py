"""
Per-project spatial index over Morton keys.

A SpatialIndex is a view of one project's rows in the NodeStore
``spatial_keys`` table. Mutations and scans on the same project are
serialized by a project-scoped lock so a scan never observes a
half-rewritten key set.
"""

import logging
import re
import threading
from typing import Iterable, Optional

from .errors import IndexCorruptionError
from .node_store import NodeStore
from .quantization import QuantizationParams
from .spatial_key import encode_embedding, key_range, key_to_int, key_width
from .types import Node

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class SpatialIndex:
    """Key-ordered index for a single project."""

    def __init__(self, project_id: str, store: NodeStore):
        self.project_id = project_id
        self._store = store
        self.lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def insert(self, node_id: str, key: str, params_version: int) -> None:
        with self.lock:
            self._store.put_keys(self.project_id, [(node_id, key)], params_version)

    def insert_many(self, entries: list[tuple[str, str]], params_version: int) -> None:
        with self.lock:
            self._store.put_keys(self.project_id, entries, params_version)

    def remove(self, node_id: str) -> bool:
        with self.lock:
            return self._store.delete_key(self.project_id, node_id)

    def clear(self) -> int:
        with self.lock:
            return self._store.delete_project_keys(self.project_id)

    def rekey(self, nodes: Iterable[Node], params: QuantizationParams) -> int:
        """
        Drop every key of the project and re-derive them under ``params``.

        Holds the project lock for the whole rewrite.

        Returns:
            Number of nodes keyed
        """
        with self.lock:
            self._store.delete_project_keys(self.project_id)
            entries = [
                (n.id, encode_embedding(n.embedding, params))
                for n in nodes
                if n.has_embedding
            ]
            self._store.put_keys(self.project_id, entries, params.version)
        logger.info(
            "Re-keyed project %s: %d nodes under params v%d",
            self.project_id, len(entries), params.version,
        )
        return len(entries)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def range_scan(
        self,
        center_key: str,
        radius: int,
        limit: int,
        params: QuantizationParams,
    ) -> list[str]:
        """
        Node ids whose keys lie within [center - radius, center + radius].

        The window is walked outward from the center in both directions and
        the ``limit`` keys closest to the center are kept, ordered by
        distance (ties by node id).
        """
        if limit <= 0:
            return []
        low, high = key_range(center_key, radius, params)
        center = key_to_int(center_key)
        with self.lock:
            above = self._store.scan_keys(self.project_id, center_key, high, limit)
            below = self._store.scan_keys(
                self.project_id, low, center_key, limit, descending=True
            )
        seen: dict[str, int] = {}
        for node_id, key in above + below:
            seen[node_id] = abs(key_to_int(key) - center)
        ordered = sorted(seen.items(), key=lambda item: (item[1], item[0]))
        return [node_id for node_id, _ in ordered[:limit]]

    def size(self) -> int:
        return self._store.count_keys(self.project_id)

    def verify(self, params: Optional[QuantizationParams]) -> None:
        """
        Check that every key is well formed and was written under ``params``.

        Raises:
            IndexCorruptionError: keys exist without params, a key is
                malformed, or a key carries a different params version
        """
        with self.lock:
            keys = self._store.list_keys(self.project_id)
        if not keys:
            return
        if params is None:
            raise IndexCorruptionError(self.project_id, "keys present but no quantization params")
        width = key_width(params)
        for node_id, key, version in keys:
            if len(key) != width or not _HEX_RE.match(key):
                raise IndexCorruptionError(
                    self.project_id, f"malformed key {key!r} for node {node_id}"
                )
            if version != params.version:
                raise IndexCorruptionError(
                    self.project_id,
                    f"node {node_id} keyed under params v{version}, current is v{params.version}",
                )
