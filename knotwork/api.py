"""
Workspace: the entry point that wires a store directory together.

Example:
    with Workspace("~/.knotwork") as ws:
        ws.import_project("notes", "Notes", nodes)
        results = asyncio.run(ws.search("spatial indexing"))
"""

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from .config import StoreConfig, get_store_path, load_or_create_config
from .cross_search import CrossProjectSearcher, FederatedResult
from .federation import FederationManager
from .link_store import LinkStore
from .linker import LinkChain, Linker, LinkResult
from .memory import ContextSuggestion, InteractionMemory, InteractionMemoryScorer, InteractionStore
from .node_store import NodeStore
from .reasoner import CrossProjectReasoner, InferredRelation
from .providers.gateway import ProviderGateway
from .registry import ProjectRegistry
from .suggester import ContextSuggester, LinkSuggestion
from .types import Interaction, Node, Project

logger = logging.getLogger(__name__)

NODES_DB = "nodes.db"
PROJECTS_DB = "projects.db"
LINKS_DB = "links.db"
INTERACTIONS_DB = "interactions.db"


def _as_nodes(nodes: Iterable[Any], project_id: str) -> list[Node]:
    """Accept Node objects or import records (dicts)."""
    result = []
    for item in nodes:
        if isinstance(item, Node):
            result.append(item)
        else:
            result.append(Node.from_dict(item, project_id=project_id))
    return result


class Workspace:
    """
    Federated semantic index over a set of projects.

    Synchronous for storage operations; search, suggestion and anything
    else that may call a provider is async.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        gateway: Optional[ProviderGateway] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory; KNOTWORK_STORE_PATH or ~/.knotwork if omitted
            config: Pre-loaded config (skips knotwork.toml)
            gateway: Pre-built provider gateway (skips provider construction)
        """
        if config is not None:
            self._config = config
            self._store_path = Path(config.path)
        else:
            self._store_path = get_store_path(Path(store_path) if store_path else None).resolve()
            self._config = load_or_create_config(self._store_path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._nodes = NodeStore(self._store_path / NODES_DB)
        self._registry = ProjectRegistry(self._store_path / PROJECTS_DB)
        self._links = LinkStore(self._store_path / LINKS_DB)
        self._interactions = InteractionStore(self._store_path / INTERACTIONS_DB)

        self._gateway = gateway or ProviderGateway.from_config(self._config)
        self._federation = FederationManager(self._nodes, self._config)
        self._cross = CrossProjectSearcher(
            self._registry, self._federation, self._gateway, self._config
        )
        self._linker = Linker(self._links, self._config.linking)
        self._memory = InteractionMemory(self._interactions)
        self._scorer = InteractionMemoryScorer.from_settings(
            self._memory, self._config.memory, node_lookup=self._nodes.find_node,
        )
        self._suggester = ContextSuggester(
            self._federation, self._linker, self._scorer, self._gateway,
            self._config.linking,
        )
        self._reasoner = CrossProjectReasoner(
            self._cross, self._nodes, self._linker, self._suggester, self._scorer,
            self._config.linking,
        )
        logger.debug("Opened workspace at %s", self._store_path)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def registry(self) -> ProjectRegistry:
        return self._registry

    @property
    def federation(self) -> FederationManager:
        return self._federation

    @property
    def linker(self) -> Linker:
        return self._linker

    @property
    def memory(self) -> InteractionMemory:
        return self._memory

    @property
    def gateway(self) -> ProviderGateway:
        return self._gateway

    # -------------------------------------------------------------------------
    # Projects and nodes
    # -------------------------------------------------------------------------

    def _refresh_counts(self, project_id: str, **extra) -> Project:
        return self._registry.register_project(
            project_id,
            node_count=self._nodes.count(project_id),
            embedding_count=self._nodes.count_embedded(project_id),
            **extra,
        )

    def import_project(
        self,
        project_id: str,
        name: Optional[str] = None,
        nodes: Iterable[Any] = (),
        weight: Optional[float] = None,
        recompute_quant: bool = False,
        replace: bool = True,
    ) -> Project:
        """
        Register a project and index its nodes.

        Nodes arrive with their embeddings; nodes without one are stored
        but not keyed until embed_missing() or an update provides one.
        Re-importing replaces the project's nodes and keeps its weight and
        active flag.
        """
        node_list = _as_nodes(nodes, project_id)
        self._federation.add_project_index(
            project_id, node_list, recompute_quant=recompute_quant, replace=replace,
        )
        roots = [n.id for n in node_list if not n.parent_id]
        project = self._refresh_counts(
            project_id,
            name=name,
            root_node_id=roots[0] if roots else None,
        )
        if weight is not None:
            project = self._registry.set_weight(project_id, weight)
        return project

    def add_nodes(self, project_id: str, nodes: Iterable[Any]) -> dict:
        """Add nodes to an existing project."""
        if self._registry.get_project(project_id) is None:
            raise KeyError(f"Project not found: {project_id}")
        result = self._federation.add_project_index(project_id, _as_nodes(nodes, project_id))
        self._refresh_counts(project_id)
        return result

    def update_nodes(self, project_id: str, nodes: Iterable[Any]) -> dict:
        """Upsert edited nodes; only their keys are recomputed."""
        if self._registry.get_project(project_id) is None:
            raise KeyError(f"Project not found: {project_id}")
        result = self._federation.update_project_nodes(project_id, _as_nodes(nodes, project_id))
        self._refresh_counts(project_id)
        return result

    def remove_nodes(self, project_id: str, node_ids: Sequence[str]) -> int:
        removed = self._federation.remove_project_nodes(project_id, list(node_ids))
        if self._registry.get_project(project_id) is not None:
            self._refresh_counts(project_id)
        return removed

    def remove_project(self, project_id: str) -> bool:
        """Drop a project with its nodes, keys and links."""
        self._federation.remove_project_index(project_id)
        self._links.delete_project(project_id)
        return self._registry.delete_project(project_id)

    def get_node(self, node_id: str, project_id: Optional[str] = None) -> Optional[Node]:
        if project_id is not None:
            return self._nodes.get_node(project_id, node_id)
        return self._nodes.find_node(node_id)

    def list_projects(self, active_only: bool = False) -> list[Project]:
        return self._registry.list_projects(active_only=active_only)

    def set_project_weight(self, project_id: str, weight: float) -> Project:
        return self._registry.set_weight(project_id, weight)

    def set_project_active(self, project_id: str, active: bool) -> Project:
        return self._registry.set_active(project_id, active)

    async def embed_missing(self, project_id: str, batch_size: int = 32) -> int:
        """
        Embed nodes of a project that have no embedding yet.

        Uses the configured provider with fallback; returns the number of
        nodes embedded.
        """
        pending = [n for n in self._nodes.list_nodes(project_id) if not n.has_embedding]
        pending = [n for n in pending if (n.title or n.text)]
        embedded = 0
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            texts = [" ".join(p for p in (n.title, n.text) if p) for n in batch]
            vectors = await self._gateway.embed_batch(texts)
            updated = [n.with_embedding(v) for n, v in zip(batch, vectors)]
            self._federation.update_project_nodes(project_id, updated)
            embedded += len(updated)
        if embedded:
            self._refresh_counts(project_id)
            logger.info("Embedded %d nodes in %s", embedded, project_id)
        return embedded

    def reindex(self, project_id: Optional[str] = None) -> dict:
        """
        Recompute quantization params and re-key.

        With shared params every project is re-keyed regardless of
        ``project_id``.
        """
        if self._federation.shared:
            params = self._federation.compute_global_quant_params()
            versions = {"shared": params.version if params else None}
        else:
            targets = [project_id] if project_id else self._nodes.list_project_ids()
            versions = {}
            for pid in targets:
                params = self._federation.compute_project_quant_params(pid)
                versions[pid] = params.version if params else None
        return {
            "params_versions": versions,
            "keyed_nodes": self._nodes.count_keys(),
        }

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
        apply_weights: bool = True,
        apply_freshness: bool = True,
        cancel_event=None,
        on_progress: Optional[Callable[[str, int, int], None]] = None,
        record: bool = False,
    ) -> list[FederatedResult]:
        """Cross-project search over active projects."""
        results = await self._cross.search(
            query,
            top_k=top_k,
            project_ids=project_ids,
            apply_weights=apply_weights,
            apply_freshness=apply_freshness,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )
        if record:
            self._memory.record_interaction(
                "search", meta={"query": query, "results": len(results)},
            )
        return results

    async def batch_search(
        self,
        queries: Sequence[str],
        top_k: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
        cancel_event=None,
    ) -> dict[str, list[FederatedResult]]:
        """Search each query independently; a failing query maps to []."""
        return await self._cross.batch_search(
            queries, top_k=top_k, project_ids=project_ids, cancel_event=cancel_event,
        )

    async def search_project(self, project_id: str, query: str, top_k: int = 20) -> list[FederatedResult]:
        return await self._cross.search_within_project(project_id, query, top_k)

    def text_search(
        self,
        query: str,
        top_k: int = 20,
        project_ids: Optional[list[str]] = None,
    ) -> list[FederatedResult]:
        return self._cross.text_search(query, top_k, project_ids)

    # -------------------------------------------------------------------------
    # Links
    # -------------------------------------------------------------------------

    async def suggest_links(
        self,
        node_id: str,
        top_k: Optional[int] = None,
        project_id: Optional[str] = None,
        mode: str = "auto",
        include_context_bias: bool = True,
    ) -> list[LinkSuggestion]:
        return await self._suggester.suggest_links(
            node_id, top_k=top_k, project_id=project_id, mode=mode,
            include_context_bias=include_context_bias,
        )

    async def batch_suggest(
        self,
        project_id: str,
        top_k: Optional[int] = None,
        limit: Optional[int] = None,
        mode: str = "auto",
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> dict[str, list[LinkSuggestion]]:
        return await self._suggester.batch_suggest(
            project_id, top_k=top_k, limit=limit, mode=mode,
            progress_callback=progress_callback,
        )

    def accept_suggestion(self, node_id: str, suggestion: LinkSuggestion, force: bool = False) -> LinkResult:
        return self._suggester.accept_suggestion(node_id, suggestion, force=force)

    def find_chains(
        self,
        source_node_id: str,
        target_node_id: str,
        max_depth: Optional[int] = None,
        max_chains: Optional[int] = None,
        project_ids: Optional[list[str]] = None,
    ) -> list[LinkChain]:
        return self._linker.find_chains(
            source_node_id, target_node_id,
            max_depth=max_depth, max_chains=max_chains, project_ids=project_ids,
        )

    async def infer_relations(
        self,
        node_id: str,
        project_ids: Optional[list[str]] = None,
        depth: Optional[int] = None,
        top_k: int = 10,
        mode: str = "auto",
        threshold: Optional[float] = None,
    ) -> list[InferredRelation]:
        """Relations from a node to nodes of other projects, with the hops that led there."""
        return await self._reasoner.infer_relations(
            node_id, project_ids=project_ids, depth=depth, top_k=top_k,
            mode=mode, threshold=threshold,
        )

    def _project_of(self, node_id: str, project_id: Optional[str]) -> str:
        if project_id:
            return project_id
        node = self._nodes.find_node(node_id)
        if node is None:
            raise KeyError(f"Node not found: {node_id}")
        return node.project_id

    def create_link(
        self,
        source_node_id: str,
        target_node_id: str,
        relation_type: str = "related",
        confidence: Any = 0.5,
        project_id: Optional[str] = None,
        **kwargs,
    ) -> LinkResult:
        """Create a link; the project defaults to the source node's."""
        return self._linker.create_link(
            self._project_of(source_node_id, project_id),
            source_node_id,
            target_node_id,
            relation_type=relation_type,
            confidence=confidence,
            **kwargs,
        )

    def upsert_link(
        self,
        source_node_id: str,
        target_node_id: str,
        relation_type: str = "related",
        project_id: Optional[str] = None,
        **fields,
    ) -> LinkResult:
        return self._linker.upsert_link(
            self._project_of(source_node_id, project_id),
            source_node_id,
            target_node_id,
            relation_type,
            **fields,
        )

    # -------------------------------------------------------------------------
    # Interaction memory
    # -------------------------------------------------------------------------

    def record_interaction(
        self,
        action_type: str,
        node_id: Optional[str] = None,
        embedding: Optional[list[float]] = None,
        meta: Optional[dict] = None,
    ) -> Interaction:
        """Record an interaction; the node's own embedding is used if none is given."""
        if embedding is None and node_id is not None:
            node = self._nodes.find_node(node_id)
            if node is not None and node.has_embedding:
                embedding = node.embedding
        return self._memory.record_interaction(action_type, node_id, embedding, meta)

    async def get_context_suggestions(
        self,
        query: str | Sequence[float],
        top_n: int = 5,
    ) -> list[ContextSuggestion]:
        """Nodes from interaction memory relevant to a query (text or vector)."""
        if isinstance(query, str):
            embedding = await self._gateway.embed(query)
        else:
            embedding = list(query)
        return self._scorer.get_context_suggestions(embedding, top_n=top_n)

    def purge_interactions(self, older_than_ms: float) -> int:
        return self._memory.purge(older_than_ms)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def stats(self) -> dict:
        return {
            "store_path": str(self._store_path),
            "projects": self._registry.stats(),
            "index": self._federation.stats(),
            "links": self._linker.link_statistics(),
            "interactions": self._memory.stats(),
            "providers": {
                "embedding": self._config.embedding.name,
                "generation": self._config.generation.name,
                "embedding_live": self._gateway.embedding_is_live,
                "generation_live": self._gateway.generation_is_live,
                "fallbacks": self._gateway.fallback_count,
            },
        }

    def close(self) -> None:
        """Close stores and detach the operations log."""
        for name in ("_nodes", "_registry", "_links", "_interactions"):
            store = getattr(self, name, None)
            if store is not None:
                store.close()

        if getattr(self, "_ops_log_handler", None):
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
