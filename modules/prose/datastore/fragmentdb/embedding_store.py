"""Per-project SQLite store for fragment embeddings and source-code chunks.

Fragment vectors are keyed by content hash so identical entries across
snapshots share one row. Vectors are float32 blobs (lib.embeddings.pack_embedding).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from lib.config import get_embedding_db_path
from lib.database import get_connection
from lib.embeddings import pack_embedding, unpack_embedding
from lib.errors import PersistenceError

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fragment_embeddings (
            content_hash TEXT PRIMARY KEY,
            fragment_type TEXT NOT NULL,
            vector BLOB NOT NULL,
            model TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS code_chunks (
            content_hash TEXT PRIMARY KEY,
            file_path TEXT NOT NULL,
            name TEXT NOT NULL,
            chunk_type TEXT NOT NULL,
            start_line INTEGER NOT NULL,
            end_line INTEGER NOT NULL,
            content TEXT NOT NULL,
            vector BLOB,
            indexed_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_code_chunks_file ON code_chunks(file_path)")


@dataclass
class CodeChunk:
    content_hash: str
    file_path: str
    name: str
    chunk_type: str
    start_line: int
    end_line: int
    content: str
    vector: Optional[List[float]] = None


class EmbeddingStore:
    """Thin wrapper around one project's embedding database."""

    def __init__(self, project: str):
        self.project = project
        self.db_path = get_embedding_db_path(project)

    def _connect(self):
        return get_connection(self.db_path)

    # ---- fragment vectors ----

    def get_vectors(self, hashes: Iterable[str]) -> Dict[str, List[float]]:
        wanted = list(dict.fromkeys(h for h in hashes if h))
        if not wanted or not self.db_path.exists():
            return {}
        out: Dict[str, List[float]] = {}
        with self._connect() as conn:
            ensure_schema(conn)
            # Chunked to stay under SQLite's host-parameter limit.
            for start in range(0, len(wanted), 500):
                batch = wanted[start:start + 500]
                placeholders = ",".join("?" for _ in batch)
                rows = conn.execute(
                    f"SELECT content_hash, vector FROM fragment_embeddings WHERE content_hash IN ({placeholders})",
                    batch,
                ).fetchall()
                for row in rows:
                    out[row["content_hash"]] = unpack_embedding(row["vector"])
        return out

    def missing(self, hashes: Iterable[str]) -> List[str]:
        wanted = list(dict.fromkeys(h for h in hashes if h))
        have = self.get_vectors(wanted)
        return [h for h in wanted if h not in have]

    def put_vectors(self, rows: Sequence[Tuple[str, str, List[float]]], model: str = "") -> int:
        """Store (content_hash, fragment_type, vector) rows; returns the number written."""
        if not rows:
            return 0
        now = _utcnow_iso()
        try:
            with self._connect() as conn:
                ensure_schema(conn)
                conn.executemany(
                    """
                    INSERT INTO fragment_embeddings (content_hash, fragment_type, vector, model, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(content_hash) DO UPDATE SET
                        vector = excluded.vector,
                        model = excluded.model
                    """,
                    [(h, t, pack_embedding(v), model, now) for h, t, v in rows],
                )
        except sqlite3.Error as exc:
            logger.error("[embedding_store] write failed for project=%s: %s", self.project, exc)
            raise PersistenceError(f"Embedding store write failed: {exc}", path=str(self.db_path)) from exc
        return len(rows)

    def count_vectors(self) -> int:
        if not self.db_path.exists():
            return 0
        with self._connect() as conn:
            ensure_schema(conn)
            return int(conn.execute("SELECT COUNT(*) AS n FROM fragment_embeddings").fetchone()["n"])

    # ---- code chunks ----

    def code_hashes_by_file(self) -> Dict[str, set]:
        if not self.db_path.exists():
            return {}
        out: Dict[str, set] = {}
        with self._connect() as conn:
            ensure_schema(conn)
            for row in conn.execute("SELECT file_path, content_hash FROM code_chunks"):
                out.setdefault(row["file_path"], set()).add(row["content_hash"])
        return out

    def replace_code_chunks(self, upserts: Sequence[CodeChunk], delete_hashes: Iterable[str]) -> None:
        now = _utcnow_iso()
        doomed = list(delete_hashes)
        try:
            with self._connect() as conn:
                ensure_schema(conn)
                if doomed:
                    conn.executemany("DELETE FROM code_chunks WHERE content_hash = ?", [(h,) for h in doomed])
                conn.executemany(
                    """
                    INSERT INTO code_chunks (
                        content_hash, file_path, name, chunk_type, start_line, end_line, content, vector, indexed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(content_hash) DO UPDATE SET
                        file_path = excluded.file_path,
                        name = excluded.name,
                        start_line = excluded.start_line,
                        end_line = excluded.end_line,
                        vector = COALESCE(excluded.vector, code_chunks.vector),
                        indexed_at = excluded.indexed_at
                    """,
                    [
                        (
                            c.content_hash, c.file_path, c.name, c.chunk_type, c.start_line, c.end_line,
                            c.content, pack_embedding(c.vector) if c.vector else None, now,
                        )
                        for c in upserts
                    ],
                )
        except sqlite3.Error as exc:
            logger.error("[embedding_store] code chunk write failed for project=%s: %s", self.project, exc)
            raise PersistenceError(f"Code chunk write failed: {exc}", path=str(self.db_path)) from exc

    def load_code_chunks(self) -> List[CodeChunk]:
        if not self.db_path.exists():
            return []
        with self._connect() as conn:
            ensure_schema(conn)
            rows = conn.execute(
                "SELECT * FROM code_chunks ORDER BY file_path, start_line"
            ).fetchall()
        return [
            CodeChunk(
                content_hash=row["content_hash"],
                file_path=row["file_path"],
                name=row["name"],
                chunk_type=row["chunk_type"],
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                content=row["content"],
                vector=unpack_embedding(row["vector"]) if row["vector"] else None,
            )
            for row in rows
        ]
