"""Incremental parser for append-only session transcripts (JSONL).

Each line of a transcript is one JSON record. ``user``/``assistant`` records
become Events; every other record type is valid but produces nothing.

Offsets are absolute byte positions. A pass reports ``processed_bytes``, the
first byte it did NOT consume, so the next pass resumes there:

  * a malformed interior line is skipped and counted (``skipped_lines``)
  * a malformed *last* line is treated as a write in progress; the pass stops
    before it and reports it in ``deferred``

A permanently corrupt trailing line is therefore retried on every pass and
logged each time, until more data is appended after it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from lib.config import get_log_source_dir
from lib.errors import IncompleteRecordError, ParseError

logger = logging.getLogger(__name__)

EVENT_RECORD_TYPES = ("user", "assistant")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Event:
    actor_role: str
    text: str
    timestamp: datetime
    record_id: str = ""
    session_id: str = ""
    correction: bool = False


@dataclass
class SessionFile:
    session_id: str
    path: Path
    size_bytes: int
    modified_time: float
    kind: str = "transcript"

    @property
    def is_design(self) -> bool:
        return self.kind == "design"


@dataclass
class ParseResult:
    events: List[Event]
    processed_bytes: int
    skipped_lines: int = 0
    deferred: Optional[IncompleteRecordError] = None
    errors: List[ParseError] = field(default_factory=list)


@dataclass
class SessionIngest:
    session: SessionFile
    from_byte: int
    result: ParseResult


@dataclass
class IngestBatch:
    project: str
    sessions: List[SessionIngest] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return sum(len(s.result.events) for s in self.sessions)

    @property
    def skipped_lines(self) -> int:
        return sum(s.result.skipped_lines for s in self.sessions)


def parse_timestamp(raw: Any) -> datetime:
    """ISO-8601 string to an aware datetime; unparseable values sort first."""
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if not raw:
        return _EPOCH
    try:
        ts = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n\n".join(
            block["text"] for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
    return ""


def _record_to_event(record: Dict[str, Any], fallback_session: str) -> Optional[Event]:
    rtype = record.get("type")
    if rtype not in EVENT_RECORD_TYPES:
        return None
    message = record.get("message") or {}
    text = extract_text(message.get("content") if isinstance(message, dict) else None)
    if not text.strip():
        return None
    return Event(
        actor_role=rtype,
        text=text,
        timestamp=parse_timestamp(record.get("timestamp")),
        record_id=str(record.get("uuid") or ""),
        session_id=str(record.get("sessionId") or fallback_session),
    )


def _parse_bytes(data: bytes, base_offset: int, path: str, fallback_session: str) -> ParseResult:
    events: List[Event] = []
    errors: List[ParseError] = []
    pending: Optional[ParseError] = None
    processed = base_offset
    pos = 0

    while pos < len(data):
        newline = data.find(b"\n", pos)
        end = len(data) if newline == -1 else newline
        line_start = base_offset + pos
        next_pos = end + 1 if newline != -1 else len(data)
        line = data[pos:end].strip()
        pos = next_pos

        if not line:
            if pending is None:
                processed = base_offset + next_pos
            continue

        if pending is not None:
            # A later non-empty line exists, so the earlier failure was interior.
            errors.append(pending)
            logger.warning("[ingest] Skipping malformed line in %s at byte %d: %s", path, pending.offset, pending)
            pending = None

        try:
            record = json.loads(line.decode("utf-8"))
            if not isinstance(record, dict):
                raise ValueError(f"record is {type(record).__name__}, not an object")
        except (UnicodeDecodeError, ValueError) as exc:
            pending = ParseError(str(exc), path=path, offset=line_start)
            continue

        event = _record_to_event(record, fallback_session)
        if event is not None:
            events.append(event)
        processed = base_offset + next_pos

    deferred = None
    if pending is not None:
        deferred = IncompleteRecordError(str(pending), path=path, offset=pending.offset)
        processed = pending.offset
        logger.info("[ingest] Deferring incomplete trailing record in %s at byte %d", path, pending.offset)

    events.sort(key=lambda e: e.timestamp)
    return ParseResult(
        events=events,
        processed_bytes=processed,
        skipped_lines=len(errors),
        deferred=deferred,
        errors=errors,
    )


def parse_full(path) -> ParseResult:
    return parse_from_offset(path, 0)


def parse_from_offset(path, from_byte: int) -> ParseResult:
    """Parse the bytes after ``from_byte``; returned offsets are absolute."""
    p = Path(path)
    start = max(0, int(from_byte or 0))
    size = p.stat().st_size
    if start >= size:
        return ParseResult(events=[], processed_bytes=start)
    with p.open("rb") as fh:
        fh.seek(start)
        data = fh.read()
    return _parse_bytes(data, start, str(p), p.stem)


def parse_session(session: SessionFile, from_byte: int = 0) -> ParseResult:
    """Dispatch on session kind: JSONL transcript or design-session document."""
    if session.is_design:
        from ingest.design_sessions import parse_design_session
        return parse_design_session(session.path, from_byte)
    return parse_from_offset(session.path, from_byte)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def sanitize_log_dir_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "-", str(name or ""))


def project_matches(dir_name: str, project_key: str) -> bool:
    """Exact match on the sanitized key, or a ``-<name>`` suffix match."""
    wanted = sanitize_log_dir_name(project_key).lstrip("-")
    if not wanted:
        return False
    candidate = dir_name.lstrip("-")
    return candidate == wanted or candidate.endswith(f"-{wanted}")


def discover(project_key: str, source_dir: Optional[Path] = None) -> List[SessionFile]:
    """Session files for a project, newest-modified first (design sessions included)."""
    root = Path(source_dir) if source_dir is not None else get_log_source_dir()
    sessions: List[SessionFile] = []
    if root.is_dir():
        for project_dir in sorted(root.iterdir()):
            if not project_dir.is_dir() or not project_matches(project_dir.name, project_key):
                continue
            for log_file in project_dir.glob("*.jsonl"):
                if not log_file.is_file():
                    continue
                stat = log_file.stat()
                sessions.append(SessionFile(
                    session_id=log_file.stem,
                    path=log_file,
                    size_bytes=stat.st_size,
                    modified_time=stat.st_mtime,
                ))
    else:
        logger.debug("[ingest] Log source directory %s does not exist", root)

    from ingest.design_sessions import list_design_sessions
    sessions.extend(list_design_sessions(project_key))

    sessions.sort(key=lambda s: s.modified_time, reverse=True)
    return sessions


def ingest_project(project_key: str, per_session_offsets: Optional[Dict[str, int]] = None) -> IngestBatch:
    """Parse every discovered session from its known offset (0 when unknown)."""
    offsets = per_session_offsets or {}
    batch = IngestBatch(project=project_key)
    for session in discover(project_key):
        start = int(offsets.get(session.session_id, 0))
        batch.sessions.append(SessionIngest(session=session, from_byte=start,
                                            result=parse_session(session, start)))
    return batch
