"""Reduce fragments to searchable (type, primary, secondary) index units."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, List, Optional

from datastore.fragmentdb.schemas import FRAGMENT_KINDS, FragmentSet
from datastore.fragmentdb.store import ProjectMemory

SOURCE_SNAPSHOT = "snapshots"
SOURCE_CURRENT = "current"
SOURCE_CODE = "code"
CORPORA = (SOURCE_SNAPSHOT, SOURCE_CURRENT, SOURCE_CODE)

_SEP = "\x1f"


def content_hash(entry_type: str, primary: str, secondary: str) -> str:
    raw = _SEP.join((entry_type or "", primary or "", secondary or ""))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass
class IndexEntry:
    entry_type: str
    primary: str
    secondary: str
    source: str
    session_id: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def content_hash(self) -> str:
        return content_hash(self.entry_type, self.primary, self.secondary)

    @property
    def text(self) -> str:
        return f"{self.primary}\n{self.secondary}" if self.secondary else self.primary


def fragment_entries(fragments: FragmentSet, source: str, *,
                     session_id: Optional[str] = None,
                     timestamp: Optional[str] = None) -> List[IndexEntry]:
    out = []
    for name, value in fragments.items():
        if value is None:
            continue
        for entry_type, primary, secondary in FRAGMENT_KINDS[name].entries(value):
            if not primary:
                continue
            out.append(IndexEntry(entry_type, primary, secondary or "", source,
                                  session_id=session_id, timestamp=timestamp))
    return out


def memory_entries(memory: ProjectMemory, corpora: Iterable[str] = (SOURCE_SNAPSHOT, SOURCE_CURRENT)) -> List[IndexEntry]:
    wanted = set(corpora)
    out: List[IndexEntry] = []
    if SOURCE_SNAPSHOT in wanted:
        for snap in memory.snapshots:
            out.extend(fragment_entries(snap.fragments, SOURCE_SNAPSHOT,
                                        session_id=snap.session_id, timestamp=snap.timestamp))
    if SOURCE_CURRENT in wanted:
        out.extend(fragment_entries(memory.current, SOURCE_CURRENT, timestamp=memory.last_updated))
    return out
