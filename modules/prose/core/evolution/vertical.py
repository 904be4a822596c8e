"""Vertical evolution: fold a session's new events into its Snapshot.

Events are processed in windows. Per window the four reasoning fragment
types are evolved concurrently against the state as it stood at the start of
the window; vocabulary is extracted locally. A failed type keeps its prior
value and the pass moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from config import get_config
from core.evolution.collaborator import evolve_fragment
from core.evolution.vocabulary import extract_vocabulary, merge_vocabulary
from datastore.fragmentdb.schemas import REASONING_TYPES, FragmentSet
from datastore.fragmentdb.store import ProjectMemory, Snapshot
from ingest.log_parser import Event
from lib.errors import CollaboratorError
from lib.worker_pool import run_callables

logger = logging.getLogger(__name__)

EVENT_SEPARATOR = "\n\n---\n\n"


@dataclass
class VerticalResult:
    snapshot: Snapshot
    errors: List[CollaboratorError] = field(default_factory=list)
    windows: int = 0


def speaker_label(event: Event) -> str:
    if event.actor_role == "user":
        return "Designer (authoritative correction)" if event.correction else "Human"
    return "Claude"


def render_events(events: Sequence[Event]) -> str:
    return EVENT_SEPARATOR.join(
        f"[{e.timestamp.strftime('%H:%M')}] {speaker_label(e)}: {e.text}" for e in events
    )


def split_windows(events: Sequence[Event], window_size: int) -> List[List[Event]]:
    size = max(1, int(window_size))
    return [list(events[i:i + size]) for i in range(0, len(events), size)]


def _as_collaborator_error(exc: BaseException, fragment_type: str, window_index: int) -> CollaboratorError:
    if isinstance(exc, CollaboratorError):
        return exc
    return CollaboratorError(
        f"{type(exc).__name__}: {exc}",
        fragment_type=fragment_type,
        window_index=window_index,
        cause=exc,
    )


def evolve_window(
    state: FragmentSet,
    window: Sequence[Event],
    window_index: int,
    *,
    pass_name: str = "vertical",
) -> tuple:
    """One fork/join round; returns (new_state, errors)."""
    cfg = get_config().evolution
    event_text = render_events(window)
    siblings = state.to_dict()

    def _task(fragment_type: str):
        others = {k: v for k, v in siblings.items() if k != fragment_type}
        return lambda: evolve_fragment(
            f"{pass_name}.{fragment_type}",
            state.get(fragment_type),
            others,
            event_text,
            window_index=window_index,
        )

    results = run_callables(
        [_task(t) for t in REASONING_TYPES],
        max_workers=cfg.max_workers,
        pool_name="evolve",
        timeout_seconds=cfg.collaborator_timeout_seconds,
        return_exceptions=True,
    )

    new_state = state
    errors: List[CollaboratorError] = []
    for fragment_type, result in zip(REASONING_TYPES, results):
        if isinstance(result, BaseException):
            err = _as_collaborator_error(result, fragment_type, window_index)
            logger.warning("[vertical] Keeping prior value after failure in %s", err.describe())
            errors.append(err)
            continue
        new_state = new_state.with_value(fragment_type, result)

    new_state = new_state.with_value(
        "vocabulary",
        merge_vocabulary(state.vocabulary, extract_vocabulary(e.text for e in window)),
    )
    return new_state, errors


def evolve_vertical(
    memory: ProjectMemory,
    session_id: str,
    events: Sequence[Event],
    *,
    window_size: Optional[int] = None,
) -> VerticalResult:
    existing = memory.snapshot_for(session_id)
    state = existing.fragments.copy() if existing else FragmentSet()
    ordered = sorted(events, key=lambda e: e.timestamp)
    correction = bool(existing and existing.correction) or any(e.correction for e in ordered)

    size = window_size or get_config().evolution.window_messages
    windows = split_windows(ordered, size)
    errors: List[CollaboratorError] = []
    for index, window in enumerate(windows):
        logger.info("[vertical] session=%s window %d/%d (%d events)",
                    session_id, index + 1, len(windows), len(window))
        state, window_errors = evolve_window(state, window, index)
        errors.extend(window_errors)

    if ordered:
        timestamp = ordered[-1].timestamp.isoformat()
    elif existing:
        timestamp = existing.timestamp
    else:
        timestamp = datetime.now(timezone.utc).isoformat()

    snapshot = Snapshot(session_id=session_id, timestamp=timestamp, fragments=state, correction=correction)
    return VerticalResult(snapshot=snapshot, errors=errors, windows=len(windows))
