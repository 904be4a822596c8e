"""Per-project fragment state: snapshots, current baseline, processing state.

One JSON document per project under the projects store directory. The
document is read, mutated in memory and written back as one unit per pass;
engines receive the ProjectMemory explicitly and never persist it themselves.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from datastore.fragmentdb.schemas import (
    FragmentCounts,
    FragmentSet,
    get_kind,
)
from lib.config import get_project_memory_path, get_projects_store_dir, sanitize_project_key
from lib.errors import PersistenceError

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 2


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Snapshot:
    session_id: str
    timestamp: str
    fragments: FragmentSet
    correction: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "fragments": self.fragments.to_dict(),
        }
        if self.correction:
            out["correction"] = True
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            session_id=str(_pick(data, "session_id", "sessionId", default="")),
            timestamp=str(_pick(data, "timestamp", default="")),
            fragments=FragmentSet.from_dict(_pick(data, "fragments", default={})),
            correction=bool(_pick(data, "correction", "isDesignSession", default=False)),
        )


@dataclass
class ProcessingState:
    session_id: str
    event_count: int = 0
    byte_offset: int = 0
    modified_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "event_count": self.event_count,
            "byte_offset": self.byte_offset,
            "modified_time": self.modified_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingState":
        # Legacy records counted messages and had no byte offset; they re-parse from 0.
        mtime = _pick(data, "modified_time", "modifiedTime", "lastModified")
        return cls(
            session_id=str(_pick(data, "session_id", "sessionId", "id", default="")),
            event_count=_as_int(_pick(data, "event_count", "eventCount", "messageCount", default=0)),
            byte_offset=_as_int(_pick(data, "byte_offset", "byteOffset", default=0)),
            modified_time=float(mtime) if isinstance(mtime, (int, float)) else None,
        )


@dataclass
class ProjectMemory:
    project: str
    current: FragmentSet = field(default_factory=FragmentSet)
    snapshots: List[Snapshot] = field(default_factory=list)
    processing: List[ProcessingState] = field(default_factory=list)
    linked_projects: List[str] = field(default_factory=list)
    last_updated: Optional[str] = None

    def snapshot_for(self, session_id: str) -> Optional[Snapshot]:
        for snap in self.snapshots:
            if snap.session_id == session_id:
                return snap
        return None

    def state_for(self, session_id: str) -> Optional[ProcessingState]:
        for state in self.processing:
            if state.session_id == session_id:
                return state
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": DOCUMENT_VERSION,
            "project": self.project,
            "current": self.current.to_dict(),
            "snapshots": [s.to_dict() for s in self.snapshots],
            "processing": [p.to_dict() for p in self.processing],
            "linked_projects": list(self.linked_projects),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], project: str = "") -> "ProjectMemory":
        snapshots_raw = _pick(data, "snapshots", "history", default=[]) or []
        processing_raw = _pick(data, "processing", "processedSessions", "processed_sessions", default=[]) or []
        if isinstance(processing_raw, dict):
            # Oldest documents keyed processing records by session id.
            processing_raw = [dict(v, session_id=k) if isinstance(v, dict) else {"session_id": k}
                              for k, v in processing_raw.items()]
        return cls(
            project=str(_pick(data, "project", "projectName", default=project) or project),
            current=FragmentSet.from_dict(_pick(data, "current", default={})),
            snapshots=[Snapshot.from_dict(s) for s in snapshots_raw if isinstance(s, dict)],
            processing=[ProcessingState.from_dict(p) for p in processing_raw if isinstance(p, dict)],
            linked_projects=[str(p) for p in _pick(data, "linked_projects", "linkedProjects", default=[]) or []],
            last_updated=_pick(data, "last_updated", "lastUpdated"),
        )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def load(project: str) -> Optional[ProjectMemory]:
    """Load a project's document, or None when it has never been saved."""
    path = get_project_memory_path(project)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"Failed reading project memory {path}: {exc}", path=str(path)) from exc
    if not isinstance(data, dict):
        raise PersistenceError(f"Project memory {path} is not a JSON object", path=str(path))
    return ProjectMemory.from_dict(data, project=project)


def get_or_create(project: str) -> ProjectMemory:
    return load(project) or ProjectMemory(project=project)


def save(memory: ProjectMemory) -> Path:
    """Write the document atomically (temp file + os.replace)."""
    path = get_project_memory_path(memory.project)
    memory.last_updated = _utcnow_iso()
    tmp_path: Optional[Path] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False,
                                         dir=str(path.parent), suffix=".tmp") as tmp:
            tmp.write(json.dumps(memory.to_dict(), indent=2, ensure_ascii=False))
            tmp.flush()
            tmp_path = Path(tmp.name)
        os.replace(tmp_path, path)
    except OSError as exc:
        logger.error("[store] Failed writing project memory %s: %s", path, exc)
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
        raise PersistenceError(f"Failed writing project memory {path}: {exc}", path=str(path)) from exc
    return path


def list_projects() -> List[str]:
    """Project keys with a stored document, sorted."""
    store_dir = get_projects_store_dir()
    if not store_dir.is_dir():
        return []
    projects = []
    for path in sorted(store_dir.glob("*.json")):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[store] Skipping unreadable project document %s: %s", path, exc)
            continue
        projects.append(str(data.get("project") or path.stem) if isinstance(data, dict) else path.stem)
    return projects


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def needs_work(memory: ProjectMemory, session_id: str, current_file_size: int, force: bool = False) -> bool:
    if force:
        return True
    state = memory.state_for(session_id)
    if state is None:
        return True
    return current_file_size > state.byte_offset


def record_session(
    memory: ProjectMemory,
    session_id: str,
    fragments: FragmentSet,
    event_count: int,
    byte_offset: int,
    timestamp: Optional[str] = None,
    modified_time: Optional[float] = None,
    *,
    correction: bool = False,
) -> ProjectMemory:
    """Upsert the session's Snapshot and ProcessingState."""
    snapshot = Snapshot(
        session_id=session_id,
        timestamp=timestamp or _utcnow_iso(),
        fragments=fragments,
        correction=correction,
    )
    memory.snapshots = [s for s in memory.snapshots if s.session_id != session_id]
    memory.snapshots.append(snapshot)
    return record_progress(memory, session_id, event_count, byte_offset, modified_time)


def record_progress(
    memory: ProjectMemory,
    session_id: str,
    event_count: int,
    byte_offset: int,
    modified_time: Optional[float] = None,
) -> ProjectMemory:
    """Upsert only the ProcessingState (a pass that produced no new events)."""
    state = memory.state_for(session_id)
    if state is None:
        memory.processing.append(ProcessingState(
            session_id=session_id,
            event_count=event_count,
            byte_offset=max(0, byte_offset),
            modified_time=modified_time,
        ))
    else:
        state.event_count = event_count
        state.byte_offset = max(state.byte_offset, byte_offset)
        if modified_time is not None:
            state.modified_time = modified_time
    return memory


def set_current(memory: ProjectMemory, fragments: FragmentSet) -> ProjectMemory:
    memory.current = fragments
    return memory


def link_project(memory: ProjectMemory, other: str) -> ProjectMemory:
    other = str(other or "").strip()
    if not other:
        raise ValueError("linked project name is required")
    if sanitize_project_key(other) == sanitize_project_key(memory.project):
        raise ValueError("a project cannot be linked to itself")
    if other not in memory.linked_projects:
        memory.linked_projects.append(other)
    return memory


def unlink_project(memory: ProjectMemory, other: str) -> ProjectMemory:
    memory.linked_projects = [p for p in memory.linked_projects if p != other]
    return memory


ADDABLE_KINDS = ("decision", "insight", "gotcha", "focus")


def add_fragment(
    memory: ProjectMemory,
    kind: str,
    content: str,
    *,
    why: Optional[str] = None,
    solution: Optional[str] = None,
    context: Optional[str] = None,
) -> ProjectMemory:
    """Add one entry straight into the current baseline.

    The only write to ``current`` outside horizontal evolution.
    """
    content = str(content or "").strip()
    if not content:
        raise ValueError("content is required")
    if kind not in ADDABLE_KINDS:
        raise ValueError(f"Unknown fragment kind {kind!r} (expected one of {', '.join(ADDABLE_KINDS)})")

    current = memory.current.copy()
    if kind == "decision":
        kind_obj = get_kind("decisions")
        value = kind_obj.coerce(current.decisions)
        value["decisions"].append({
            "what": content,
            "why": why or "Added manually",
            "when": _utcnow_iso(),
            "confidence": "certain",
        })
        current = current.with_value("decisions", kind_obj.validate(value))
    elif kind in ("insight", "gotcha"):
        kind_obj = get_kind("insights")
        value = kind_obj.coerce(current.insights)
        value.setdefault("gotchas", [])
        if kind == "insight":
            value["insights"].append({"learning": content, "context": context or "Added manually"})
        else:
            entry = {"issue": content}
            if solution:
                entry["solution"] = solution
            value["gotchas"].append(entry)
        current = current.with_value("insights", kind_obj.validate(value))
    else:
        kind_obj = get_kind("focus")
        value = kind_obj.coerce(current.focus)
        value["current_goal"] = content
        current = current.with_value("focus", kind_obj.validate(value))

    memory.current = current
    return memory


def memory_stats(memory: ProjectMemory) -> Dict[str, Any]:
    counts = FragmentCounts.of(memory.current)
    return {
        "project": memory.project,
        "snapshots": len(memory.snapshots),
        "sessions": len(memory.processing),
        "decisions": counts.decisions,
        "insights": counts.insights,
        "gotchas": counts.gotchas,
        "story_beats": counts.story_beats,
        "terms": counts.terms,
        "linked_projects": list(memory.linked_projects),
        "last_updated": memory.last_updated,
    }
