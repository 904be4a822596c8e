"""Horizontal evolution: consolidate recent Snapshots into the current baseline.

Only the newest ``window_size`` snapshots are considered, so older sessions
age out of ``current`` without any explicit pruning.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from config import get_config
from core.evolution.collaborator import evolve_fragment
from core.evolution.vocabulary import merge_vocabulary
from datastore.fragmentdb import store
from datastore.fragmentdb.schemas import REASONING_TYPES, FragmentSet
from datastore.fragmentdb.store import ProjectMemory, Snapshot
from ingest.log_parser import parse_timestamp
from lib.errors import CollaboratorError, PersistenceError
from lib.worker_pool import run_callables
from prompt_sets import get_prompt

logger = logging.getLogger(__name__)


@dataclass
class HorizontalResult:
    current: FragmentSet
    errors: List[CollaboratorError] = field(default_factory=list)
    sessions_included: int = 0
    bootstrapped: bool = False


def select_window(snapshots: Sequence[Snapshot], window_size: int) -> List[Snapshot]:
    """Newest-first, truncated to ``window_size``."""
    ordered = sorted(snapshots, key=lambda s: parse_timestamp(s.timestamp), reverse=True)
    return ordered[:max(0, int(window_size))]


def _age_label(index: int) -> str:
    return "(most recent)" if index == 0 else f"({index} sessions ago)"


def format_snapshots(window: Sequence[Snapshot], fragment_type: str) -> str:
    ground_truth = get_prompt("evolve.ground_truth_label")
    blocks = []
    for i, snap in enumerate(window):
        title = f"## Session {snap.session_id[:8]} {_age_label(i)}"
        if snap.correction:
            title = f"## {ground_truth}: {snap.session_id} {_age_label(i)}"
        blocks.append(
            f"{title}\n\n### {fragment_type.capitalize()}\n"
            + json.dumps(snap.fragments.get(fragment_type), indent=2, ensure_ascii=False)
        )
    return "\n\n---\n\n".join(blocks)


def format_linked(linked: Dict[str, FragmentSet], fragment_type: str) -> str:
    blocks = []
    for project, fragments in linked.items():
        value = fragments.get(fragment_type)
        if value:
            blocks.append(f"## Linked project {project} (read-only context)\n"
                          + json.dumps(value, indent=2, ensure_ascii=False))
    return "\n\n".join(blocks)


def load_linked(memory: ProjectMemory) -> Dict[str, FragmentSet]:
    out: Dict[str, FragmentSet] = {}
    for project in memory.linked_projects:
        try:
            other = store.load(project)
        except PersistenceError as exc:
            logger.warning("[horizontal] Linked project %s unreadable: %s", project, exc)
            continue
        if other is None:
            logger.warning("[horizontal] Linked project %s has no stored memory", project)
            continue
        out[project] = other.current
    return out


def _carry_vocabulary(baseline: FragmentSet, window: Sequence[Snapshot]) -> Optional[dict]:
    # Vocabulary is not consolidated horizontally: an existing baseline value is
    # kept as is, and the window only seeds it when the baseline has none.
    if baseline.vocabulary is not None:
        return baseline.vocabulary
    merged = None
    for snap in reversed(window):
        if snap.fragments.vocabulary is not None:
            merged = merge_vocabulary(merged, snap.fragments.vocabulary)
    return merged


def evolve_horizontal(
    memory: ProjectMemory,
    *,
    window_size: Optional[int] = None,
    linked: Optional[Dict[str, FragmentSet]] = None,
) -> HorizontalResult:
    cfg = get_config().evolution
    size = cfg.horizontal_window if window_size is None else window_size
    baseline = memory.current
    window = select_window(memory.snapshots, size)

    if not window:
        return HorizontalResult(current=baseline)

    if len(window) == 1 and baseline.is_empty():
        logger.info("[horizontal] Bootstrapping baseline from session %s", window[0].session_id)
        return HorizontalResult(current=window[0].fragments.copy(), sessions_included=1, bootstrapped=True)

    linked_sets = load_linked(memory) if linked is None else linked
    siblings = baseline.to_dict()

    def _task(fragment_type: str):
        text = format_snapshots(window, fragment_type)
        context = format_linked(linked_sets, fragment_type)
        if context:
            text = f"{text}\n\n# LINKED PROJECTS\n\n{context}"
        others = {k: v for k, v in siblings.items() if k != fragment_type}
        return lambda: evolve_fragment(f"horizontal.{fragment_type}", baseline.get(fragment_type), others, text)

    results = run_callables(
        [_task(t) for t in REASONING_TYPES],
        max_workers=cfg.max_workers,
        pool_name="evolve",
        timeout_seconds=cfg.collaborator_timeout_seconds,
        return_exceptions=True,
    )

    current = baseline.copy()
    errors: List[CollaboratorError] = []
    for fragment_type, result in zip(REASONING_TYPES, results):
        if isinstance(result, BaseException):
            err = result if isinstance(result, CollaboratorError) else CollaboratorError(
                f"{type(result).__name__}: {result}", fragment_type=fragment_type, cause=result)
            logger.warning("[horizontal] Keeping baseline value after failure in %s", err.describe())
            errors.append(err)
            continue
        current = current.with_value(fragment_type, result)

    current = current.with_value("vocabulary", _carry_vocabulary(baseline, window))
    return HorizontalResult(current=current, errors=errors, sessions_included=len(window))
