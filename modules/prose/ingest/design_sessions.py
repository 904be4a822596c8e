"""Human-correction ("design") sessions.

A design session is a short conversation in which the project designer
corrects the memory directly. It is stored as one JSON document
``design-<timestamp>.json``:

    {"type": "design-session", "project": ..., "timestamp": ...,
     "messages": [{"role": "user"|"assistant", "content": ...}]}

The ingestor lists these next to the transcripts; their events carry
``correction=True`` and the resulting snapshots outrank ordinary ones in the
horizontal pass.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ingest.log_parser import Event, ParseResult, SessionFile, parse_timestamp
from lib.config import get_design_dir, sanitize_project_key
from lib.errors import IncompleteRecordError, PersistenceError

logger = logging.getLogger(__name__)

DESIGN_TYPE = "design-session"
DESIGN_PREFIX = "design-"


def _project_design_dir(project: str) -> Path:
    return get_design_dir() / sanitize_project_key(project)


def record_design_session(project: str, messages: List[Dict[str, Any]],
                          now: Optional[datetime] = None) -> Path:
    """Persist a design session; returns the written path."""
    cleaned = []
    for msg in messages or []:
        if not isinstance(msg, dict):
            continue
        role = str(msg.get("role") or "").strip().lower()
        content = str(msg.get("content") or "").strip()
        if role in ("user", "assistant") and content:
            cleaned.append({"role": role, "content": content})
    if not any(m["role"] == "user" for m in cleaned):
        raise ValueError("a design session needs at least one designer message")

    ts = now or datetime.now(timezone.utc)
    session_id = DESIGN_PREFIX + ts.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    path = _project_design_dir(project) / f"{session_id}.json"
    doc = {
        "type": DESIGN_TYPE,
        "project": project,
        "timestamp": ts.isoformat(),
        "messages": cleaned,
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Failed writing design session {path}: {exc}", path=str(path)) from exc
    logger.info("[design] Saved design session %s (%d messages)", session_id, len(cleaned))
    return path


def list_design_sessions(project: str) -> List[SessionFile]:
    folder = _project_design_dir(project)
    if not folder.is_dir():
        return []
    out = []
    for path in sorted(folder.glob(f"{DESIGN_PREFIX}*.json")):
        stat = path.stat()
        out.append(SessionFile(
            session_id=path.stem,
            path=path,
            size_bytes=stat.st_size,
            modified_time=stat.st_mtime,
            kind="design",
        ))
    return out


def parse_design_session(path, from_byte: int = 0) -> ParseResult:
    """Parse a whole design document; it is consumed all at once or not at all."""
    p = Path(path)
    size = p.stat().st_size
    if from_byte >= size:
        return ParseResult(events=[], processed_bytes=max(0, int(from_byte)))
    try:
        doc = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        logger.info("[design] Deferring unreadable design session %s: %s", p, exc)
        return ParseResult(
            events=[],
            processed_bytes=max(0, int(from_byte)),
            deferred=IncompleteRecordError(str(exc), path=str(p), offset=0),
        )
    if not isinstance(doc, dict) or doc.get("type") != DESIGN_TYPE:
        logger.warning("[design] %s is not a design session document", p)
        return ParseResult(events=[], processed_bytes=size, skipped_lines=1)

    base_ts = parse_timestamp(doc.get("timestamp"))
    events = []
    for i, msg in enumerate(doc.get("messages") or []):
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        text = str(msg.get("content") or "")
        if role not in ("user", "assistant") or not text.strip():
            continue
        events.append(Event(
            actor_role=role,
            text=text,
            timestamp=base_ts,
            record_id=f"{p.stem}:{i}",
            session_id=p.stem,
            correction=True,
        ))
    return ParseResult(events=events, processed_bytes=size)
