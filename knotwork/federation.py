"""
Federation of per-project spatial indices.

The FederationManager owns quantization params (one shared set, or one
per project) and keeps every project's keys consistent with them.

Recompute policy:
- The first batch that brings a scope to ``quantization.min_sample``
  embeddings builds params.
- ``recompute_quant=True`` always rebuilds.
- With ``quantization.auto_recompute`` on, a batch where more than
  ``quantization.recompute_threshold`` of the embeddings fall outside the
  current bounds triggers a rebuild from all stored embeddings.
- A rebuild bumps the params version and re-keys every project in the
  scope while holding their index locks.
- Writers hold the federation write lock from loading params until their
  keys are stored, so a rebuild cannot interleave with a batch.
"""

import dataclasses
import logging
import threading
from contextlib import ExitStack
from typing import Optional

from .config import StoreConfig
from .errors import IndexCorruptionError, ValidationError
from .node_store import GLOBAL_SCOPE, NodeStore
from .quantization import (
    QuantizationParams,
    compute_quantization_params,
    coverage_ratio,
)
from .spatial_index import SpatialIndex
from .spatial_key import encode_embedding
from .types import Node

logger = logging.getLogger(__name__)


class FederationManager:
    """Owns the spatial indices of all projects and their quantization params."""

    def __init__(self, store: NodeStore, config: Optional[StoreConfig] = None):
        self._store = store
        self._config = config
        self._quant = config.quantization if config else None
        self._indices: dict[str, SpatialIndex] = {}
        self._indices_lock = threading.Lock()
        # Taken before any index lock by every writer and by rebuilds
        self._write_lock = threading.RLock()
        # project_id -> params version the index was last verified against
        self._verified: dict[str, int] = {}
        self.degraded_projects: dict[str, str] = {}

    @property
    def store(self) -> NodeStore:
        return self._store

    @property
    def shared(self) -> bool:
        return self._quant is None or self._quant.scope != "project"

    def _setting(self, name: str, default):
        return getattr(self._quant, name, default) if self._quant else default

    def _scope(self, project_id: Optional[str]) -> str:
        if self.shared or project_id is None:
            return GLOBAL_SCOPE
        return project_id

    def _scope_projects(self, scope: str) -> list[str]:
        """Projects whose keys depend on the params of ``scope``."""
        if scope == GLOBAL_SCOPE:
            return self._store.list_project_ids()
        return [scope]

    def _index(self, project_id: str) -> SpatialIndex:
        with self._indices_lock:
            index = self._indices.get(project_id)
            if index is None:
                index = SpatialIndex(project_id, self._store)
                self._indices[project_id] = index
            return index

    # -------------------------------------------------------------------------
    # Params
    # -------------------------------------------------------------------------

    def get_quant_params(self, project_id: Optional[str] = None) -> Optional[QuantizationParams]:
        """Current params for a project (the shared set in shared mode)."""
        return self._store.load_params(self._scope(project_id))

    def _next_version(self, scope: str) -> int:
        current = self._store.load_params(scope)
        return current.version + 1 if current else 1

    def _rebuild(self, scope: str, project_ids: Optional[list[str]] = None) -> Optional[QuantizationParams]:
        """
        Compute params for ``scope`` from stored embeddings and re-key.

        Returns None (and leaves everything unkeyed) when fewer than
        ``min_sample`` embeddings are available.
        """
        with self._write_lock:
            return self._rebuild_locked(scope, project_ids)

    def _rebuild_locked(self, scope: str, project_ids: Optional[list[str]]) -> Optional[QuantizationParams]:
        sources = project_ids if project_ids is not None else self._scope_projects(scope)
        embeddings = [emb for _, _, emb in self._store.iter_embeddings(sources)]
        min_sample = self._setting("min_sample", 2)
        if len(embeddings) < min_sample:
            logger.debug(
                "Not enough embeddings for params in scope %s (%d < %d)",
                scope, len(embeddings), min_sample,
            )
            return None

        params = compute_quantization_params(
            embeddings,
            reduced_dims=self._setting("reduced_dims", 8),
            bits=self._setting("bits", 16),
            reduction=self._setting("reduction", "blockavg"),
            version=self._next_version(scope),
        )

        affected = self._scope_projects(scope)
        with ExitStack() as stack:
            for pid in sorted(affected):
                stack.enter_context(self._index(pid).lock)
            self._store.save_params(scope, params)
            for pid in affected:
                nodes = self._store.list_nodes(pid, embedded_only=True)
                self._index(pid).rekey(nodes, params)
                self._verified[pid] = params.version
                self.degraded_projects.pop(pid, None)

        logger.info(
            "Computed quantization params v%d for scope %s from %d embeddings (%d projects re-keyed)",
            params.version, scope, len(embeddings), len(affected),
        )
        return params

    def compute_global_quant_params(
        self,
        project_ids: Optional[list[str]] = None,
    ) -> Optional[QuantizationParams]:
        """
        Rebuild the shared params from the given projects (all if None) and
        re-key every project.

        Raises:
            ValidationError: params are per project (``scope = "project"``)
        """
        if not self.shared:
            raise ValidationError(
                "Shared quantization params are not used with scope 'project'; "
                "recompute per project instead"
            )
        return self._rebuild(GLOBAL_SCOPE, project_ids)

    def compute_project_quant_params(self, project_id: str) -> Optional[QuantizationParams]:
        """Rebuild params for one project's scope."""
        return self._rebuild(self._scope(project_id))

    def _params_for_batch(
        self,
        project_id: str,
        batch: list[list[float]],
        recompute_quant: bool,
    ) -> tuple[Optional[QuantizationParams], bool]:
        """Apply the recompute policy. Returns (params, rebuilt)."""
        scope = self._scope(project_id)
        params = self._store.load_params(scope)

        if params is None or recompute_quant:
            rebuilt = self._rebuild(scope)
            return rebuilt, rebuilt is not None

        if batch:
            out_of_bounds = 1.0 - coverage_ratio(params, batch)
            threshold = self._setting("recompute_threshold", 0.2)
            if out_of_bounds > threshold:
                if self._setting("auto_recompute", True):
                    logger.info(
                        "%.0f%% of new embeddings for %s fall outside params v%d; recomputing",
                        out_of_bounds * 100, project_id, params.version,
                    )
                    rebuilt = self._rebuild(scope)
                    return (rebuilt or params), rebuilt is not None
                logger.warning(
                    "%.0f%% of new embeddings for %s fall outside params v%d; "
                    "auto_recompute is off, run reindex",
                    out_of_bounds * 100, project_id, params.version,
                )
            elif out_of_bounds > 0:
                logger.debug(
                    "%.0f%% of new embeddings for %s clamp at params v%d bounds",
                    out_of_bounds * 100, project_id, params.version,
                )
        return params, False

    # -------------------------------------------------------------------------
    # Project indices
    # -------------------------------------------------------------------------

    def add_project_index(
        self,
        project_id: str,
        nodes: list[Node],
        recompute_quant: bool = False,
        replace: bool = False,
    ) -> dict:
        """
        Store a project's nodes and key every node that has an embedding.

        Args:
            project_id: Target project
            nodes: Nodes to store (their project_id is forced to project_id)
            recompute_quant: Rebuild params from all stored embeddings first
            replace: Drop the project's existing nodes before storing

        Returns:
            Dict with nodes, keyed, params_version and recomputed
        """
        if replace:
            with self._write_lock, self._index(project_id).lock:
                self._store.delete_project(project_id)
                self._verified.pop(project_id, None)
        return self._index_nodes(project_id, nodes, recompute_quant)

    def update_project_nodes(self, project_id: str, nodes: list[Node]) -> dict:
        """Upsert changed nodes and re-key only those nodes."""
        return self._index_nodes(project_id, nodes, recompute_quant=False)

    def _index_nodes(self, project_id: str, nodes: list[Node], recompute_quant: bool) -> dict:
        stored = []
        for node in nodes:
            if node.project_id != project_id:
                node = dataclasses.replace(node, project_id=project_id)
            stored.append(node.with_embedding(node.embedding))

        index = self._index(project_id)
        batch = [n.embedding for n in stored if n.has_embedding]
        keyed = 0
        with self._write_lock:
            with index.lock:
                self._store.upsert_nodes(stored)
                # Nodes that lost their embedding leave the index
                for node in stored:
                    if not node.has_embedding:
                        index.remove(node.id)

            params, rebuilt = self._params_for_batch(project_id, batch, recompute_quant)

            if params is not None and not rebuilt:
                entries = [(n.id, encode_embedding(n.embedding, params)) for n in stored if n.has_embedding]
                with index.lock:
                    index.insert_many(entries, params.version)
                    self._verified[project_id] = params.version
                keyed = len(entries)
            elif rebuilt:
                keyed = len(batch)

        logger.info(
            "Indexed %d nodes for project %s (%d keyed, params %s)",
            len(stored), project_id, keyed,
            f"v{params.version}" if params else "none",
        )
        return {
            "nodes": len(stored),
            "keyed": keyed,
            "params_version": params.version if params else None,
            "recomputed": rebuilt,
        }

    def remove_project_nodes(self, project_id: str, node_ids: list[str]) -> int:
        with self._write_lock, self._index(project_id).lock:
            return self._store.delete_nodes(project_id, node_ids)

    def remove_project_index(self, project_id: str) -> int:
        """Drop a project's nodes, keys and per-project params."""
        index = self._index(project_id)
        with self._write_lock, index.lock:
            removed = self._store.delete_project(project_id)
        with self._indices_lock:
            self._indices.pop(project_id, None)
        self._verified.pop(project_id, None)
        self.degraded_projects.pop(project_id, None)
        logger.info("Removed project index %s (%d nodes)", project_id, removed)
        return removed

    def get_index(self, project_id: str) -> SpatialIndex:
        """
        Return a project's index after checking it against current params.

        Raises:
            IndexCorruptionError: the index cannot be read consistently
        """
        index = self._index(project_id)
        params = self.get_quant_params(project_id)
        version = params.version if params else 0
        if self._verified.get(project_id) != version:
            try:
                index.verify(params)
            except IndexCorruptionError as e:
                self.mark_degraded(project_id, e.reason)
                raise
            self._verified[project_id] = version
        return index

    def mark_degraded(self, project_id: str, reason: str) -> None:
        self.degraded_projects[project_id] = reason
        logger.warning("Project %s degraded: %s", project_id, reason)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def stats(self) -> dict:
        shared = self._store.load_params(GLOBAL_SCOPE)
        return {
            "projects": len(self._store.list_project_ids()),
            "total_nodes": self._store.count(),
            "embedded_nodes": self._store.count_embedded(),
            "keyed_nodes": self._store.count_keys(),
            "scope": "shared" if self.shared else "project",
            "params_version": shared.version if shared else None,
            "params_sample_size": shared.sample_size if shared else 0,
            "degraded": dict(self.degraded_projects),
        }

    def clear_all(self) -> None:
        with self._write_lock:
            self._store.clear()
        with self._indices_lock:
            self._indices.clear()
        self._verified.clear()
        self.degraded_projects.clear()
