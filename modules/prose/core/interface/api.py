"""
Prose Public API: entry points for external callers.

Every function takes a project key, loads that project's memory, runs the
engine operation and saves the result, so callers never handle ProjectMemory
or persistence themselves.

Usage:
    from core.interface.api import run_evolution, search, add_fragment

    summary = run_evolution("my-app")
    hits = search("why sqlite over postgres", project="my-app")
    add_fragment("my-app", "decision", "Use WAL mode", why="Concurrent readers")
"""

from typing import Any, Dict, List, Optional, Sequence

from core.evolution import horizontal as _horizontal
from core.evolution import vertical as _vertical
from core.evolution.runner import RunSummary, run_all as _run_all, run_evolution as _run_evolution
from core.retrieval import code_index as _code_index
from core.retrieval import search as _search
from datastore.fragmentdb import store as _store
from datastore.fragmentdb.schemas import FragmentSet
from datastore.fragmentdb.store import Snapshot
from ingest import design_sessions as _design
from ingest.log_parser import Event, IngestBatch, ingest_project


def ingest(project: str, per_session_offsets: Optional[Dict[str, int]] = None) -> IngestBatch:
    """Parse every session of a project from the given byte offsets.

    Args:
        project: Project key (path or name) matched against log directories.
        per_session_offsets: session_id -> byte offset already consumed.
            Sessions not listed are parsed from the start.

    Returns:
        IngestBatch with one ParseResult per discovered session.
    """
    return ingest_project(project, per_session_offsets)


def evolve_vertical(project: str, session_id: str, events: Sequence[Event]) -> Snapshot:
    """Fold events into a session's Snapshot and persist it."""
    memory = _store.get_or_create(project)
    result = _vertical.evolve_vertical(memory, session_id, events)
    state = memory.state_for(session_id)
    _store.record_session(
        memory,
        session_id,
        result.snapshot.fragments,
        event_count=(state.event_count if state else 0) + len(events),
        byte_offset=state.byte_offset if state else 0,
        timestamp=result.snapshot.timestamp,
        correction=result.snapshot.correction,
    )
    _store.save(memory)
    return result.snapshot


def evolve_horizontal(project: str, window_size: Optional[int] = None,
                      linked: Optional[Dict[str, FragmentSet]] = None) -> FragmentSet:
    """Consolidate recent snapshots into the current baseline and persist it."""
    memory = _store.get_or_create(project)
    result = _horizontal.evolve_horizontal(memory, window_size=window_size, linked=linked)
    _store.set_current(memory, result.current)
    _store.save(memory)
    return result.current


def search(
    query: str,
    corpora: Sequence[str] = ("snapshots", "current"),
    limit: int = 10,
    project: Optional[str] = None,
) -> _search.SearchResponse:
    """Hybrid search over fragment entries (and optionally indexed code).

    Args:
        query: Free text. Queries with fewer than three terms longer than two
            characters are matched by keyword only.
        corpora: Any of "snapshots", "current", "code".
        limit: Maximum results (capped by retrieval.maxLimit).
        project: Restrict to one project; None searches every stored project.

    Returns:
        SearchResponse: iterable of ScoredEntry, plus ``warnings`` when the
        query embedding failed and keyword scoring was used instead.
    """
    unknown = [c for c in corpora if c not in ("snapshots", "current", "code")]
    if unknown:
        raise ValueError(f"Unknown corpora: {unknown}")
    return _search.search(query, corpora=tuple(corpora), limit=limit, project=project)


def run_evolution(project: str, force: bool = False,
                  sessions: Optional[Sequence[str]] = None) -> RunSummary:
    return _run_evolution(project, force=force, sessions=sessions)


def run_all(projects: Optional[Sequence[str]] = None, force: bool = False) -> List[RunSummary]:
    return _run_all(projects, force=force)


def add_fragment(
    project: str,
    kind: str,
    content: str,
    why: Optional[str] = None,
    solution: Optional[str] = None,
    context: Optional[str] = None,
) -> Dict[str, Any]:
    """Add a decision, insight, gotcha or focus directly to the current baseline.

    Returns:
        The project's stats after the write.

    Raises:
        ValueError: Unknown kind or empty content.
    """
    memory = _store.get_or_create(project)
    _store.add_fragment(memory, kind, content, why=why, solution=solution, context=context)
    _store.save(memory)
    return _store.memory_stats(memory)


def link_project(project: str, other: str) -> List[str]:
    memory = _store.get_or_create(project)
    _store.link_project(memory, other)
    _store.save(memory)
    return list(memory.linked_projects)


def unlink_project(project: str, other: str) -> List[str]:
    memory = _store.get_or_create(project)
    _store.unlink_project(memory, other)
    _store.save(memory)
    return list(memory.linked_projects)


def record_design_session(project: str, messages: List[Dict[str, Any]]) -> str:
    """Save a design (human-correction) session; it is evolved on the next run."""
    return str(_design.record_design_session(project, messages))


def index_source(project: str, root: str) -> Dict[str, Any]:
    return _code_index.index_source(project, root).to_dict()


def memory_stats(project: Optional[str] = None) -> Dict[str, Any]:
    """Stats for one project, or a roll-up over every stored project."""
    if project:
        memory = _store.load(project)
        if memory is None:
            return {"project": project, "exists": False}
        return dict(_store.memory_stats(memory), exists=True)

    per_project = []
    for name in _store.list_projects():
        memory = _store.load(name)
        if memory is not None:
            per_project.append(_store.memory_stats(memory))
    return {
        "projects": len(per_project),
        "snapshots": sum(p["snapshots"] for p in per_project),
        "sessions": sum(p["sessions"] for p in per_project),
        "decisions": sum(p["decisions"] for p in per_project),
        "insights": sum(p["insights"] for p in per_project),
        "last_updated": max((p["last_updated"] for p in per_project if p["last_updated"]), default=None),
        "by_project": per_project,
    }
