"""Hybrid retrieval over fragment entries and indexed source code.

Scoring per entry:

  * short queries (fewer than ``vectorMinTerms`` terms) are keyword-only:
    +10 per term found as a substring, +5 more when it also matches on word
    boundaries; every term must match.
  * longer queries use cosine x 100 against the entry's stored embedding,
    falling back to keyword scoring for entries without one. Vector hits
    below ``similarityThreshold`` are dropped.

A recency bonus in [0, recencyMaxBonus] is added on top: snapshot entries by
their position in the observed time range, the current baseline always at
the maximum, code never.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from config import get_config
from core.retrieval.entries import (
    SOURCE_CODE,
    SOURCE_CURRENT,
    SOURCE_SNAPSHOT,
    IndexEntry,
    memory_entries,
)
from datastore.fragmentdb import store
from datastore.fragmentdb.embedding_store import EmbeddingStore
from datastore.fragmentdb.store import ProjectMemory
from ingest.log_parser import parse_timestamp
from lib.embeddings import cosine_similarity, embed_query, embed_texts, get_embeddings_provider
from lib.errors import EmbeddingError

logger = logging.getLogger(__name__)

SUBSTRING_POINTS = 10
WORD_BOUNDARY_POINTS = 5


@dataclass
class ScoredEntry:
    entry_type: str
    primary: str
    secondary: str
    source: str
    score: float
    raw_score: float
    recency_bonus: float
    match: str
    content_hash: str
    project: str = ""
    session_id: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "type": self.entry_type,
            "primary": self.primary,
            "secondary": self.secondary,
            "source": self.source,
            "score": round(self.score, 3),
            "match": self.match,
            "project": self.project,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
        }


@dataclass
class SearchResponse:
    query: str
    results: List[ScoredEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    mode: str = "keyword"

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index):
        return self.results[index]


@dataclass
class _Candidate:
    entry: IndexEntry
    project: str
    vector: Optional[List[float]] = None


def query_terms(query: str) -> List[str]:
    return [t for t in str(query or "").lower().split() if len(t) > 2]


def keyword_score(terms: Sequence[str], text: str) -> Optional[float]:
    """Keyword score, or None when any term is missing."""
    haystack = text.lower()
    score = 0.0
    for term in terms:
        if term not in haystack:
            return None
        score += SUBSTRING_POINTS
        if re.search(rf"\b{re.escape(term)}\b", haystack):
            score += WORD_BOUNDARY_POINTS
    return score


def recency_bonuses(timestamps: Iterable[Optional[str]], max_bonus: float) -> Dict[str, float]:
    """Map each timestamp to its bonus within the observed range."""
    parsed = {ts: parse_timestamp(ts).timestamp() for ts in set(timestamps) if ts}
    if not parsed:
        return {}
    lo, hi = min(parsed.values()), max(parsed.values())
    if hi == lo:
        return {ts: max_bonus for ts in parsed}
    return {ts: max_bonus * (value - lo) / (hi - lo) for ts, value in parsed.items()}


def _project_candidates(memory: ProjectMemory, corpora: Sequence[str]) -> List[_Candidate]:
    entries = memory_entries(memory, corpora)
    vectors = EmbeddingStore(memory.project).get_vectors(e.content_hash for e in entries) if entries else {}
    out = [_Candidate(entry=e, project=memory.project, vector=vectors.get(e.content_hash)) for e in entries]
    if SOURCE_CODE in corpora:
        for chunk in EmbeddingStore(memory.project).load_code_chunks():
            entry = IndexEntry("code", f"{chunk.file_path}:{chunk.name}", chunk.content, SOURCE_CODE)
            out.append(_Candidate(entry=entry, project=memory.project, vector=chunk.vector))
    return out


def _resolve_limit(limit: Optional[int]) -> int:
    cfg = get_config().retrieval
    value = cfg.default_limit if not limit else int(limit)
    return max(1, min(value, cfg.max_limit))


def search_memories(
    query: str,
    memories: Sequence[ProjectMemory],
    corpora: Sequence[str] = (SOURCE_SNAPSHOT, SOURCE_CURRENT),
    limit: Optional[int] = None,
) -> SearchResponse:
    cfg = get_config().retrieval
    response = SearchResponse(query=query)
    terms = query_terms(query)
    if not terms:
        response.warnings.append("query has no terms longer than 2 characters")
        return response

    candidates: List[_Candidate] = []
    for memory in memories:
        candidates.extend(_project_candidates(memory, corpora))

    query_vector = None
    if len(terms) >= cfg.vector_min_terms:
        try:
            query_vector = embed_query(query)
            response.mode = "vector"
        except EmbeddingError as exc:
            logger.warning("[search] Query embedding failed, using keyword scoring: %s", exc)
            response.warnings.append(f"query embedding failed, keyword scoring used: {exc}")

    bonuses = recency_bonuses(
        (c.entry.timestamp for c in candidates if c.entry.source == SOURCE_SNAPSHOT),
        cfg.recency_max_bonus,
    )

    best: Dict[str, ScoredEntry] = {}
    for cand in candidates:
        entry = cand.entry
        if query_vector is not None and cand.vector is not None:
            similarity = cosine_similarity(query_vector, cand.vector)
            if similarity < cfg.similarity_threshold:
                continue
            raw, match = similarity * 100.0, "vector"
        else:
            raw = keyword_score(terms, f"{entry.primary} {entry.secondary}")
            if raw is None or raw < len(terms) * cfg.keyword_per_term_minimum:
                continue
            match = "keyword"

        if entry.source == SOURCE_CURRENT:
            bonus = cfg.recency_max_bonus
        elif entry.source == SOURCE_SNAPSHOT:
            bonus = bonuses.get(entry.timestamp, 0.0)
        else:
            bonus = 0.0

        scored = ScoredEntry(
            entry_type=entry.entry_type,
            primary=entry.primary,
            secondary=entry.secondary,
            source=entry.source,
            score=raw + bonus,
            raw_score=raw,
            recency_bonus=bonus,
            match=match,
            content_hash=entry.content_hash,
            project=cand.project,
            session_id=entry.session_id,
            timestamp=entry.timestamp,
        )
        prior = best.get(scored.content_hash)
        if prior is None or scored.score > prior.score:
            best[scored.content_hash] = scored

    ranked = sorted(best.values(), key=lambda s: s.score, reverse=True)
    response.results = ranked[:_resolve_limit(limit)]
    return response


def search(
    query: str,
    corpora: Sequence[str] = (SOURCE_SNAPSHOT, SOURCE_CURRENT),
    limit: Optional[int] = None,
    project: Optional[str] = None,
) -> SearchResponse:
    """Search one project, or every stored project when ``project`` is None."""
    names = [project] if project else store.list_projects()
    memories = [m for m in (store.load(name) for name in names) if m is not None]
    return search_memories(query, memories, corpora=corpora, limit=limit)


def index_embeddings(memory: ProjectMemory) -> int:
    """Embed every fragment entry lacking a stored vector; returns how many were added."""
    entries = memory_entries(memory, (SOURCE_SNAPSHOT, SOURCE_CURRENT))
    by_hash: Dict[str, IndexEntry] = {}
    for entry in entries:
        by_hash.setdefault(entry.content_hash, entry)
    emb_store = EmbeddingStore(memory.project)
    missing = emb_store.missing(by_hash.keys())
    if not missing:
        return 0
    vectors = embed_texts([by_hash[h].text for h in missing], mode="passage")
    rows = [(h, by_hash[h].entry_type, v) for h, v in zip(missing, vectors)]
    written = emb_store.put_vectors(rows, model=get_embeddings_provider().model_name)
    logger.info("[search] Indexed %d new embeddings for project=%s", written, memory.project)
    return written
