"""Source-code corpus: chunk, embed and store a project's source files.

Chunks start at top-level ``def``/``class`` (Python) or ``function``/``class``/
arrow-const (JS/TS) signatures. Files with no recognizable signature, and
other languages, are split into fixed line windows. Chunk identity is the
content hash of (``code``, ``file:name``, text), so unchanged chunks are never
re-embedded and chunks of changed or deleted files are pruned.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from config import get_config
from core.retrieval.entries import content_hash
from datastore.fragmentdb.embedding_store import CodeChunk, EmbeddingStore
from lib.embeddings import embed_texts
from lib.errors import EmbeddingError

logger = logging.getLogger(__name__)

_PY_SIGNATURES = [
    ("class", re.compile(r"^class\s+(\w+)")),
    ("function", re.compile(r"^(?:async\s+)?def\s+(\w+)")),
]
_JS_SIGNATURES = [
    ("class", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)")),
    ("function", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)")),
    ("function", re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s*)?\([^)]*\)\s*(?::\s*[^=]+)?=>")),
]
_SIGNATURES = {
    ".py": _PY_SIGNATURES,
    ".ts": _JS_SIGNATURES,
    ".tsx": _JS_SIGNATURES,
    ".js": _JS_SIGNATURES,
    ".jsx": _JS_SIGNATURES,
}


@dataclass
class IndexSourceResult:
    project: str
    files: int = 0
    chunks: int = 0
    embedded: int = 0
    pruned: int = 0
    warnings: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "project": self.project,
            "files": self.files,
            "chunks": self.chunks,
            "embedded": self.embedded,
            "pruned": self.pruned,
            "warnings": list(self.warnings or []),
        }


def _line_windows(rel_path: str, lines: List[str], max_lines: int) -> List[CodeChunk]:
    out = []
    for start in range(0, len(lines), max_lines):
        body = "\n".join(lines[start:start + max_lines])
        if not body.strip():
            continue
        name = f"lines {start + 1}-{min(len(lines), start + max_lines)}"
        out.append(_make_chunk(rel_path, name, "block", start + 1, min(len(lines), start + max_lines), body))
    return out


def _make_chunk(rel_path: str, name: str, chunk_type: str, start: int, end: int, body: str) -> CodeChunk:
    primary = f"{rel_path}:{name}"
    return CodeChunk(
        content_hash=content_hash("code", primary, body),
        file_path=rel_path,
        name=name,
        chunk_type=chunk_type,
        start_line=start,
        end_line=end,
        content=body,
    )


def chunk_source(rel_path: str, text: str, max_lines: Optional[int] = None) -> List[CodeChunk]:
    limit = max(1, int(max_lines or get_config().code_index.max_chunk_lines))
    lines = text.splitlines()
    patterns = _SIGNATURES.get(Path(rel_path).suffix.lower())
    if not patterns:
        return _line_windows(rel_path, lines, limit)

    starts = []
    for idx, line in enumerate(lines):
        for chunk_type, pattern in patterns:
            m = pattern.match(line)
            if m:
                starts.append((idx, chunk_type, m.group(1)))
                break
    if not starts:
        return _line_windows(rel_path, lines, limit)

    chunks = []
    if starts[0][0] > 0:
        header = lines[:starts[0][0]]
        chunks.extend(_line_windows(rel_path, header, limit))
    for pos, (idx, chunk_type, name) in enumerate(starts):
        end = starts[pos + 1][0] if pos + 1 < len(starts) else len(lines)
        body = "\n".join(lines[idx:end]).rstrip()
        # Oversized definitions are truncated; the signature and opening body carry the meaning.
        body_lines = body.splitlines()[:limit]
        chunks.append(_make_chunk(rel_path, name, chunk_type, idx + 1, idx + len(body_lines), "\n".join(body_lines)))
    return chunks


def _excluded(rel_parts, patterns: List[str]) -> bool:
    return any(fnmatch.fnmatch(part, pat) for part in rel_parts for pat in patterns)


def iter_source_files(root: Path) -> List[Path]:
    cfg = get_config().code_index
    exts = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in cfg.extensions}
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root)
        dirnames[:] = sorted(d for d in dirnames if not _excluded([d], cfg.exclude))
        if rel_dir.parts and _excluded(rel_dir.parts, cfg.exclude):
            continue
        for name in sorted(filenames):
            if Path(name).suffix.lower() in exts and not _excluded([name], cfg.exclude):
                found.append(Path(dirpath) / name)
    return found


def embedding_text(chunk: CodeChunk) -> str:
    return f"FILE: {chunk.file_path}\nTYPE: {chunk.chunk_type}\nCODE:\n{chunk.content}"


def index_source(project: str, root) -> IndexSourceResult:
    root_path = Path(root).expanduser().resolve()
    if not root_path.is_dir():
        raise ValueError(f"Source root does not exist: {root_path}")
    result = IndexSourceResult(project=project, warnings=[])
    emb_store = EmbeddingStore(project)
    existing = emb_store.code_hashes_by_file()
    known = set().union(*existing.values()) if existing else set()

    current: Dict[str, CodeChunk] = {}
    for path in iter_source_files(root_path):
        rel = path.relative_to(root_path).as_posix()
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[code_index] Skipping unreadable file %s: %s", path, exc)
            result.warnings.append(f"{rel}: {exc}")
            continue
        result.files += 1
        for chunk in chunk_source(rel, text):
            current.setdefault(chunk.content_hash, chunk)

    result.chunks = len(current)
    fresh = [c for h, c in current.items() if h not in known]
    if fresh:
        try:
            vectors = embed_texts([embedding_text(c) for c in fresh], mode="passage")
        except EmbeddingError as exc:
            logger.warning("[code_index] Embedding %d chunks failed; stored for keyword search only: %s",
                           len(fresh), exc)
            result.warnings.append(f"embedding failed: {exc}")
        else:
            for chunk, vector in zip(fresh, vectors):
                chunk.vector = vector
            result.embedded = len(fresh)

    stale = known - set(current)
    result.pruned = len(stale)
    emb_store.replace_code_chunks(fresh, stale)
    logger.info("[code_index] project=%s files=%d chunks=%d embedded=%d pruned=%d",
                project, result.files, result.chunks, result.embedded, result.pruned)
    return result
