"""Batch evolution: discover -> parse -> vertical per session -> horizontal -> index -> save.

Failures are contained per session and per project; every one of them is
counted into the RunSummary and its warnings are logged at the end of a run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from core.evolution.horizontal import evolve_horizontal
from core.evolution.vertical import evolve_vertical
from core.retrieval.search import index_embeddings
from datastore.fragmentdb import store
from ingest.log_parser import discover, parse_session
from lib.errors import EmbeddingError
from lib.llm_clients import get_token_usage, reset_token_usage

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    project: str
    sessions_processed: int = 0
    sessions_skipped: int = 0
    events: int = 0
    errors: int = 0
    warnings: List[str] = field(default_factory=list)
    skipped_lines: int = 0
    deferred_records: int = 0
    horizontal_sessions: int = 0
    bootstrapped: bool = False
    embeddings_indexed: int = 0
    token_usage: Dict[str, int] = field(default_factory=dict)

    def warn(self, message: str, *, error: bool = False) -> None:
        self.warnings.append(message)
        if error:
            self.errors += 1

    def to_dict(self) -> Dict[str, object]:
        return dict(self.__dict__, warnings=list(self.warnings))


def run_evolution(project: str, *, force: bool = False,
                  sessions: Optional[Iterable[str]] = None) -> RunSummary:
    summary = RunSummary(project=project)
    reset_token_usage()
    memory = store.get_or_create(project)

    wanted = set(sessions) if sessions is not None else None
    discovered = [s for s in discover(project) if wanted is None or s.session_id in wanted]
    discovered.sort(key=lambda s: s.modified_time)
    processed_any = False

    for session in discovered:
        sid = session.session_id
        if not store.needs_work(memory, sid, session.size_bytes, force=force):
            summary.sessions_skipped += 1
            continue
        state = memory.state_for(sid)
        from_byte = 0 if force or state is None else state.byte_offset
        try:
            parsed = parse_session(session, from_byte)
            summary.skipped_lines += parsed.skipped_lines
            if parsed.skipped_lines:
                summary.warn(f"{sid}: skipped {parsed.skipped_lines} malformed line(s)")
            if parsed.deferred is not None:
                summary.deferred_records += 1
                summary.warn(f"{sid}: incomplete trailing record deferred at byte {parsed.deferred.offset}")

            prior_count = 0 if force or state is None else state.event_count
            if not parsed.events:
                store.record_progress(memory, sid, prior_count, parsed.processed_bytes, session.modified_time)
                summary.sessions_skipped += 1
                continue

            if force:
                # Re-evolve from scratch rather than on top of the old snapshot.
                memory.snapshots = [s for s in memory.snapshots if s.session_id != sid]
            result = evolve_vertical(memory, sid, parsed.events)
            for err in result.errors:
                summary.warn(f"{sid}: {err.describe()}", error=True)
            store.record_session(
                memory,
                sid,
                result.snapshot.fragments,
                event_count=prior_count + len(parsed.events),
                byte_offset=parsed.processed_bytes,
                timestamp=result.snapshot.timestamp,
                modified_time=session.modified_time,
                correction=result.snapshot.correction,
            )
            summary.sessions_processed += 1
            summary.events += len(parsed.events)
            processed_any = True
        except Exception as exc:
            logger.exception("[runner] Session %s failed", sid)
            summary.warn(f"{sid}: {type(exc).__name__}: {exc}", error=True)

    if processed_any or force:
        horizontal = evolve_horizontal(memory)
        store.set_current(memory, horizontal.current)
        summary.horizontal_sessions = horizontal.sessions_included
        summary.bootstrapped = horizontal.bootstrapped
        for err in horizontal.errors:
            summary.warn(f"horizontal: {err.describe()}", error=True)

    try:
        summary.embeddings_indexed = index_embeddings(memory)
    except EmbeddingError as exc:
        summary.warn(f"embedding index not updated: {exc}")

    store.save(memory)
    summary.token_usage = get_token_usage()
    _log_summary(summary)
    return summary


def run_all(projects: Optional[Iterable[str]] = None, *, force: bool = False) -> List[RunSummary]:
    names = list(projects) if projects is not None else store.list_projects()
    out = []
    for project in names:
        try:
            out.append(run_evolution(project, force=force))
        except Exception as exc:
            logger.exception("[runner] Project %s failed", project)
            failed = RunSummary(project=project)
            failed.warn(f"{type(exc).__name__}: {exc}", error=True)
            out.append(failed)
    return out


def _log_summary(summary: RunSummary) -> None:
    logger.info(
        "[runner] project=%s processed=%d skipped=%d events=%d errors=%d",
        summary.project, summary.sessions_processed, summary.sessions_skipped,
        summary.events, summary.errors,
    )
    for warning in summary.warnings:
        logger.warning("[runner] project=%s %s", summary.project, warning)
