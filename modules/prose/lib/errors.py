"""Error taxonomy for the ingestion, evolution and retrieval pipeline.

Only PersistenceError is expected to escape a project pass. The others are
recorded (counted, logged) at the boundary that owns them:

  ParseError            malformed interior log line, skipped and counted
  IncompleteRecordError malformed trailing log line, deferred to next pass
  CollaboratorError     one fragment type/window failed, prior value kept
  EmbeddingError        embedding call failed, search falls back to keywords
  PersistenceError      project document or embedding store write failed
"""

from __future__ import annotations

from typing import Optional


class ProseError(Exception):
    """Base class for all pipeline errors."""


class ParseError(ProseError):
    def __init__(self, message: str, *, path: str = "", offset: int = -1):
        super().__init__(message)
        self.path = path
        self.offset = offset


class IncompleteRecordError(ParseError):
    """Trailing record that does not parse yet (likely mid-write)."""


class CollaboratorError(ProseError):
    def __init__(
        self,
        message: str,
        *,
        fragment_type: str = "",
        window_index: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.fragment_type = fragment_type
        self.window_index = window_index
        self.cause = cause

    def describe(self) -> str:
        where = self.fragment_type or "unknown"
        if self.window_index is not None:
            where = f"{where}[window={self.window_index}]"
        return f"{where}: {self}"


class EmbeddingError(ProseError):
    """Embedding collaborator failed or returned an unusable payload."""


class PersistenceError(ProseError):
    def __init__(self, message: str, *, path: str = ""):
        super().__init__(message)
        self.path = path
