"""
CLI interface for knotwork.

Usage:
    knotwork import notes.json --project notes
    knotwork search "spatial indexing"
    knotwork links suggest node-42
"""

import asyncio
import json
import os
import re
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Workspace
from .errors import KnotworkError, SearchFailedError
from .logging_config import configure_quiet_mode, enable_debug_mode

# Durations for memory purge: 90m, 12h, 7d, 2w
_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)$")
_DURATION_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 604_800_000}


# Quiet by default; KNOTWORK_VERBOSE=1 enables debug mode via environment
if os.environ.get("KNOTWORK_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"knotwork {version('knotwork')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="knotwork",
    help="Federated semantic index with typed links.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

projects_app = typer.Typer(name="projects", help="Manage registered projects.", no_args_is_help=True)
links_app = typer.Typer(name="links", help="Suggest, create and list links.", no_args_is_help=True)
memory_app = typer.Typer(name="memory", help="Interaction memory.", no_args_is_help=True)
app.add_typer(projects_app)
app.add_typer(links_app)
app.add_typer(memory_app)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="KNOTWORK_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Federated semantic index with typed links."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="KNOTWORK_STORE_PATH",
        help="Path to the store directory (default: ~/.knotwork/)"
    )
]

LimitOption = Annotated[
    Optional[int],
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]


def _get_workspace(store: Optional[Path]) -> Workspace:
    """Open the workspace, handling errors gracefully."""
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        ws = Workspace(actual_store)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(ws.close)
    return ws


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _parse_duration_ms(value: str) -> float:
    """Parse '7d', '12h', '90m' or a bare millisecond count."""
    value = value.strip().lower()
    if value.isdigit():
        return float(value)
    match = _DURATION_PATTERN.match(value)
    if not match:
        typer.echo(f"Error: Invalid duration '{value}'. Use e.g. 7d, 12h, 90m or milliseconds", err=True)
        raise typer.Exit(1)
    return float(match.group(1)) * _DURATION_MS[match.group(2)]


def _load_import_file(path: Path) -> tuple[Optional[str], Optional[str], list[dict]]:
    """
    Read a JSON import file.

    Either a list of node records, or an object with optional id/name and
    a "nodes" list.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        typer.echo(f"Error: Cannot read {path}: {e}", err=True)
        raise typer.Exit(1)
    if isinstance(data, list):
        return None, None, data
    if isinstance(data, dict) and isinstance(data.get("nodes"), list):
        return data.get("id") or data.get("project_id"), data.get("name"), data["nodes"]
    typer.echo(f"Error: {path} must hold a list of nodes or an object with 'nodes'", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    project: Annotated[Optional[list[str]], typer.Option(
        "--project", "-p",
        help="Limit to these projects (repeatable)"
    )] = None,
    limit: LimitOption = None,
    no_weights: Annotated[bool, typer.Option(
        "--no-weights", help="Ignore project weights"
    )] = False,
    no_freshness: Annotated[bool, typer.Option(
        "--no-freshness", help="Ignore project recency"
    )] = False,
    text: Annotated[bool, typer.Option(
        "--text", help="Substring search instead of semantic search"
    )] = False,
    store: StoreOption = None,
):
    """Search across active projects."""
    ws = _get_workspace(store)
    if text:
        results = ws.text_search(query, top_k=limit or 20, project_ids=project)
    else:
        try:
            results = asyncio.run(ws.search(
                query,
                top_k=limit,
                project_ids=project,
                apply_weights=not no_weights,
                apply_freshness=not no_freshness,
                record=True,
            ))
        except SearchFailedError as e:
            typer.echo(f"Error: {e}", err=True)
            typer.echo("Hint: use --text for substring search", err=True)
            raise typer.Exit(1)

    if _get_json_output():
        _echo_json([r.to_dict() for r in results])
        return
    if not results:
        typer.echo("No results.")
        return
    for r in results:
        typer.echo(f"{r.final_score:.3f}  {r.project_id}/{r.node_id}  {r.title}")
        if r.snippet:
            typer.echo(f"       {r.snippet}")


@app.command("import")
def import_(
    file: Annotated[Path, typer.Argument(help="JSON file of nodes", exists=True, dir_okay=False)],
    project_id: Annotated[Optional[str], typer.Option(
        "--project", "-p", help="Project id (default: from file, else file name)"
    )] = None,
    name: Annotated[Optional[str], typer.Option("--name", help="Project display name")] = None,
    weight: Annotated[Optional[float], typer.Option(
        "--weight", "-w", help="Project weight (0.1 - 2.0)"
    )] = None,
    merge: Annotated[bool, typer.Option(
        "--merge", help="Add to existing nodes instead of replacing them"
    )] = False,
    embed: Annotated[bool, typer.Option(
        "--embed", help="Embed nodes that arrive without an embedding"
    )] = False,
    recompute: Annotated[bool, typer.Option(
        "--recompute", help="Recompute quantization bounds from all embeddings"
    )] = False,
    store: StoreOption = None,
):
    """Import a project from a JSON node file."""
    file_project, file_name, records = _load_import_file(file)
    pid = project_id or file_project or file.stem
    ws = _get_workspace(store)
    try:
        project = ws.import_project(
            pid,
            name=name or file_name,
            nodes=records,
            weight=weight,
            recompute_quant=recompute,
            replace=not merge,
        )
        if embed:
            asyncio.run(ws.embed_missing(pid))
            project = ws.registry.get_project(pid)
    except (KnotworkError, ValueError, KeyError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        _echo_json(asdict(project))
    else:
        typer.echo(
            f"Imported {project.id}: {project.node_count} nodes, "
            f"{project.embedding_count} embedded"
        )


@app.command()
def reindex(
    project: Annotated[Optional[str], typer.Option(
        "--project", "-p", help="Only this project (per-project quantization scope)"
    )] = None,
    store: StoreOption = None,
):
    """Recompute quantization bounds and re-key nodes."""
    ws = _get_workspace(store)
    result = ws.reindex(project)
    if _get_json_output():
        _echo_json(result)
    else:
        for scope, version in result["params_versions"].items():
            typer.echo(f"{scope}: " + (f"params v{version}" if version else "not enough embeddings"))
        typer.echo(f"{result['keyed_nodes']} nodes keyed")


@app.command()
def stats(store: StoreOption = None):
    """Show store statistics."""
    ws = _get_workspace(store)
    data = ws.stats()
    if _get_json_output():
        _echo_json(data)
        return
    projects = data["projects"]
    index = data["index"]
    typer.echo(f"Store: {data['store_path']}")
    typer.echo(f"Projects: {projects['total']} ({projects['active']} active)")
    typer.echo(
        f"Nodes: {index['total_nodes']} ({index['embedded_nodes']} embedded, "
        f"{index['keyed_nodes']} keyed)"
    )
    version = index["params_version"]
    typer.echo(f"Quantization: {index['scope']}" + (f", v{version}" if version else ""))
    if index["degraded"]:
        typer.echo(f"Degraded: {', '.join(sorted(index['degraded']))}")
    typer.echo(f"Links: {data['links']['total_links']}")
    typer.echo(f"Interactions: {data['interactions']['total_records']}")
    providers = data["providers"]
    typer.echo(f"Providers: {providers['embedding']} / {providers['generation']}")


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------

@projects_app.command("list")
def projects_list(
    active: Annotated[bool, typer.Option("--active", help="Only active projects")] = False,
    store: StoreOption = None,
):
    """List projects, most recently accessed first."""
    ws = _get_workspace(store)
    projects = ws.list_projects(active_only=active)
    if _get_json_output():
        _echo_json([asdict(p) for p in projects])
        return
    if not projects:
        typer.echo("No projects.")
        return
    for p in projects:
        flag = " " if p.active else "x"
        typer.echo(
            f"[{flag}] {p.id}  {p.name}  weight={p.weight:.2f}  "
            f"nodes={p.node_count}  accessed={p.last_accessed_at[:10]}"
        )


def _update_project(store: Optional[Path], project_id: str, **changes):
    ws = _get_workspace(store)
    try:
        if "weight" in changes:
            project = ws.set_project_weight(project_id, changes["weight"])
        else:
            project = ws.set_project_active(project_id, changes["active"])
    except KeyError:
        typer.echo(f"Error: Project not found: {project_id}", err=True)
        raise typer.Exit(1)
    except KnotworkError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        _echo_json(asdict(project))
    else:
        typer.echo(f"{project.id}: weight={project.weight:.2f} active={project.active}")


@projects_app.command("weight")
def projects_weight(
    project_id: Annotated[str, typer.Argument(help="Project id")],
    weight: Annotated[float, typer.Argument(help="New weight (0.1 - 2.0)")],
    store: StoreOption = None,
):
    """Set a project's ranking weight."""
    _update_project(store, project_id, weight=weight)


@projects_app.command("activate")
def projects_activate(
    project_id: Annotated[str, typer.Argument(help="Project id")],
    store: StoreOption = None,
):
    """Include a project in federated search."""
    _update_project(store, project_id, active=True)


@projects_app.command("deactivate")
def projects_deactivate(
    project_id: Annotated[str, typer.Argument(help="Project id")],
    store: StoreOption = None,
):
    """Exclude a project from federated search."""
    _update_project(store, project_id, active=False)


@projects_app.command("remove")
def projects_remove(
    project_id: Annotated[str, typer.Argument(help="Project id")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Don't ask for confirmation")] = False,
    store: StoreOption = None,
):
    """Remove a project with its nodes and links."""
    if not yes:
        typer.confirm(f"Remove project {project_id} and its links?", abort=True)
    ws = _get_workspace(store)
    if not ws.remove_project(project_id):
        typer.echo(f"Error: Project not found: {project_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed {project_id}")


# -----------------------------------------------------------------------------
# Links
# -----------------------------------------------------------------------------

@links_app.command("suggest")
def links_suggest(
    node_id: Annotated[str, typer.Argument(help="Source node id")],
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Project of the node")] = None,
    limit: LimitOption = None,
    mode: Annotated[str, typer.Option(
        "--mode", help="auto, live (generation provider) or mock (deterministic)"
    )] = "auto",
    accept: Annotated[bool, typer.Option(
        "--accept", help="Create links for all suggestions"
    )] = False,
    store: StoreOption = None,
):
    """Suggest typed links from a node."""
    ws = _get_workspace(store)
    try:
        suggestions = asyncio.run(ws.suggest_links(node_id, top_k=limit, project_id=project, mode=mode))
    except KeyError:
        typer.echo(f"Error: Node not found: {node_id}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    created = []
    if accept:
        for s in suggestions:
            result = ws.accept_suggestion(node_id, s)
            if result.ok:
                created.append(result.link.id)
            elif result.warning is not None:
                typer.echo(f"Skipped {s.candidate_node_id}: {result.warning}", err=True)

    if _get_json_output():
        _echo_json({"suggestions": [s.to_dict() for s in suggestions], "created": created})
        return
    if not suggestions:
        typer.echo("No suggestions.")
        return
    for s in suggestions:
        typer.echo(f"{s.confidence:.2f}  --[{s.relation_type}]-->  {s.candidate_node_id}  {s.title}")
        typer.echo(f"      {s.rationale}")
    if created:
        typer.echo(f"Created {len(created)} links")


@links_app.command("create")
def links_create(
    source: Annotated[str, typer.Argument(help="Source node id")],
    target: Annotated[str, typer.Argument(help="Target node id")],
    relation_type: Annotated[str, typer.Option("--type", "-t", help="Relation type")] = "related",
    confidence: Annotated[float, typer.Option("--confidence", "-c", help="Confidence 0-1")] = 0.5,
    note: Annotated[Optional[str], typer.Option("--note", help="Provenance note")] = None,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Project id")] = None,
    force: Annotated[bool, typer.Option("--force", help="Create even if it closes a cycle")] = False,
    store: StoreOption = None,
):
    """Create a link between two nodes."""
    from .types import Provenance

    ws = _get_workspace(store)
    try:
        result = ws.create_link(
            source, target,
            relation_type=relation_type,
            confidence=confidence,
            project_id=project,
            provenance=Provenance(method="manual", note=note),
            force=force,
        )
    except (KnotworkError, KeyError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not result.ok:
        typer.echo(f"Not created: {result.warning}", err=True)
        typer.echo("Use --force to create it anyway", err=True)
        raise typer.Exit(1)
    if result.warning is not None:
        typer.echo(f"Warning: {result.warning}", err=True)
    if _get_json_output():
        _echo_json(asdict(result.link))
    else:
        typer.echo(result.link.id)


@links_app.command("list")
def links_list(
    node: Annotated[Optional[str], typer.Option("--node", help="Links from or to this node")] = None,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Project id")] = None,
    relation_type: Annotated[Optional[str], typer.Option("--type", "-t", help="Relation type")] = None,
    show_all: Annotated[bool, typer.Option("--all", "-a", help="Include inactive links")] = False,
    limit: LimitOption = None,
    store: StoreOption = None,
):
    """List links."""
    ws = _get_workspace(store)
    active = None if show_all else True
    if node:
        both = ws.linker.get_node_links(node, active=active)
        links = both["outgoing"] + both["incoming"]
        if relation_type:
            links = [link for link in links if link.relation_type == relation_type]
        if project:
            links = [link for link in links if link.project_id == project]
        links = links[:limit] if limit else links
    else:
        links = ws.linker.query_links(
            project_id=project, relation_type=relation_type, active=active, limit=limit or 100,
        )

    if _get_json_output():
        _echo_json([asdict(link) for link in links])
        return
    if not links:
        typer.echo("No links.")
        return
    for link in links:
        state = "" if link.active else "  (inactive)"
        typer.echo(
            f"{link.id}  {link.source_node_id} --[{link.relation_type}]--> "
            f"{link.target_node_id}  {link.confidence:.2f}{state}"
        )


@links_app.command("chains")
def links_chains(
    source: Annotated[str, typer.Argument(help="Source node id")],
    target: Annotated[str, typer.Argument(help="Target node id")],
    max_depth: Annotated[Optional[int], typer.Option("--depth", "-d", help="Most links per chain")] = None,
    limit: LimitOption = None,
    project: Annotated[Optional[list[str]], typer.Option(
        "--project", "-p", help="Only follow links of these projects (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """Find chains of links from one node to another."""
    ws = _get_workspace(store)
    chains = ws.find_chains(source, target, max_depth=max_depth, max_chains=limit, project_ids=project)

    if _get_json_output():
        _echo_json([chain.to_dict() for chain in chains])
        return
    if not chains:
        typer.echo("No chains.")
        return
    for chain in chains:
        typer.echo(f"{chain.combined_confidence:.3f}  {' -> '.join(chain.nodes)}")
        for step in chain.steps:
            typer.echo(f"       {step.describe()}")


@links_app.command("infer")
def links_infer(
    node_id: Annotated[str, typer.Argument(help="Start node id")],
    project: Annotated[Optional[list[str]], typer.Option(
        "--project", "-p", help="Search these projects (repeatable)"
    )] = None,
    depth: Annotated[Optional[int], typer.Option("--depth", "-d", help="Hops to explore")] = None,
    threshold: Annotated[Optional[float], typer.Option(
        "--threshold", help="Minimum confidence 0-1"
    )] = None,
    limit: LimitOption = None,
    mode: Annotated[str, typer.Option(
        "--mode", help="auto, live (generation provider) or mock (deterministic)"
    )] = "auto",
    store: StoreOption = None,
):
    """Infer relations from a node to nodes of other projects."""
    ws = _get_workspace(store)
    try:
        relations = asyncio.run(ws.infer_relations(
            node_id, project_ids=project, depth=depth, top_k=limit or 10,
            mode=mode, threshold=threshold,
        ))
    except KeyError:
        typer.echo(f"Error: Node not found: {node_id}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        _echo_json([r.to_dict() for r in relations])
        return
    if not relations:
        typer.echo("No relations.")
        return
    for r in relations:
        typer.echo(f"{r.confidence:.2f}  --[{r.relation_type}]-->  {r.project_id}/{r.candidate_node_id}  {r.title}")
        if r.depth > 1:
            typer.echo(f"      via {' ; '.join(step.describe() for step in r.chain[:-1])}")


# -----------------------------------------------------------------------------
# Memory
# -----------------------------------------------------------------------------

@memory_app.command("stats")
def memory_stats(store: StoreOption = None):
    """Show interaction memory statistics."""
    ws = _get_workspace(store)
    data = ws.memory.stats()
    if _get_json_output():
        _echo_json(data)
        return
    typer.echo(f"Interactions: {data['total_records']}")
    if data["oldest_record"]:
        typer.echo(f"Range: {data['oldest_record'][:19]} .. {data['newest_record'][:19]}")
    for action, count in data["by_action_type"].items():
        typer.echo(f"  {action}: {count}")


@memory_app.command("purge")
def memory_purge(
    older_than: Annotated[str, typer.Option(
        "--older-than", help="Age cutoff: 7d, 12h, 90m or milliseconds"
    )],
    store: StoreOption = None,
):
    """Delete interactions older than a cutoff."""
    older_than_ms = _parse_duration_ms(older_than)
    ws = _get_workspace(store)
    removed = ws.purge_interactions(older_than_ms)
    if _get_json_output():
        _echo_json({"removed": removed})
    else:
        typer.echo(f"Purged {removed} interactions")


@memory_app.command("context")
def memory_context(
    query: Annotated[str, typer.Argument(help="Query text")],
    limit: LimitOption = None,
    store: StoreOption = None,
):
    """Nodes from recent interactions relevant to a query."""
    ws = _get_workspace(store)
    suggestions = asyncio.run(ws.get_context_suggestions(query, top_n=limit or 5))
    if _get_json_output():
        _echo_json([asdict(s) for s in suggestions])
        return
    if not suggestions:
        typer.echo("No recent context.")
        return
    for s in suggestions:
        typer.echo(f"{s.score:.3f}  {s.node_id}  {s.title or ''}  ({s.reason})")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="knotwork CLI", store_path=_get_store_override())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
