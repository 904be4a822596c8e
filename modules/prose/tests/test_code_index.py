"""Tests for core/retrieval/code_index.py: chunking, incremental indexing, code search."""

import os
import sys

# Ensure plugin root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.retrieval.code_index import chunk_source, embedding_text, index_source, iter_source_files
from core.retrieval.search import search
from datastore.fragmentdb import store
from datastore.fragmentdb.embedding_store import EmbeddingStore
from lib.embeddings import set_embeddings_provider
from lib.providers import MockEmbeddingsProvider


PY_SOURCE = '''"""Module docstring."""
import os


def parse_offsets(path):
    return os.path.getsize(path)


class Ingestor:
    def run(self):
        return 1
'''

TS_SOURCE = '''import fs from "fs";

export function readLog(path: string) {
  return fs.readFileSync(path);
}

export const tailBytes = async (n: number) => {
  return n;
};
'''


class _FailingEmbeddings(MockEmbeddingsProvider):
    def embed(self, texts, mode="passage"):
        raise ConnectionError("embedding service down")


def _tree(root):
    (root / "src").mkdir(parents=True)
    (root / "src" / "ingest.py").write_text(PY_SOURCE, encoding="utf-8")
    (root / "src" / "log.ts").write_text(TS_SOURCE, encoding="utf-8")
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "node_modules" / "dep" / "index.js").write_text("function hidden() {}\n", encoding="utf-8")
    (root / "README.md").write_text("# readme\n", encoding="utf-8")
    return root


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

class TestChunkSource:

    def test_python_definitions(self, test_adapter):
        chunks = chunk_source("src/ingest.py", PY_SOURCE)
        names = [(c.chunk_type, c.name) for c in chunks]
        assert ("function", "parse_offsets") in names
        assert ("class", "Ingestor") in names
        # Methods stay inside their class chunk.
        assert all(name != "run" for _, name in names)
        header = chunks[0]
        assert header.chunk_type == "block"
        assert header.start_line == 1

    def test_typescript_functions_and_arrow_consts(self, test_adapter):
        names = [c.name for c in chunk_source("src/log.ts", TS_SOURCE)]
        assert "readLog" in names
        assert "tailBytes" in names

    def test_unknown_language_uses_line_windows(self, test_adapter):
        text = "\n".join(f"line {i}" for i in range(25))
        chunks = chunk_source("main.rs", text, max_lines=10)
        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 10), (11, 20), (21, 25)]

    def test_hash_depends_on_path_and_content(self, test_adapter):
        a = chunk_source("a.py", "def f():\n    return 1\n")[0]
        b = chunk_source("b.py", "def f():\n    return 1\n")[0]
        c = chunk_source("a.py", "def f():\n    return 2\n")[0]
        assert len({a.content_hash, b.content_hash, c.content_hash}) == 3

    def test_embedding_text_layout(self, test_adapter):
        chunk = chunk_source("a.py", "def f():\n    pass\n")[0]
        assert embedding_text(chunk).startswith("FILE: a.py\nTYPE: function\nCODE:\ndef f():")


class TestIterSourceFiles:

    def test_extensions_and_excludes(self, test_adapter, tmp_path):
        root = _tree(tmp_path / "repo")
        rel = [p.relative_to(root).as_posix() for p in iter_source_files(root)]
        assert rel == ["src/ingest.py", "src/log.ts"]


# ---------------------------------------------------------------------------
# index_source
# ---------------------------------------------------------------------------

class TestIndexSource:

    def test_first_index_embeds_everything(self, test_adapter, tmp_path):
        root = _tree(tmp_path / "repo")
        result = index_source("demo", root)
        assert result.files == 2
        assert result.chunks == result.embedded > 0
        assert result.pruned == 0
        stored = EmbeddingStore("demo").load_code_chunks()
        assert len(stored) == result.chunks
        assert all(c.vector for c in stored)

    def test_unchanged_chunks_are_not_re_embedded(self, test_adapter, tmp_path):
        root = _tree(tmp_path / "repo")
        index_source("demo", root)
        calls = len(test_adapter.embeddings.calls)
        again = index_source("demo", root)
        assert again.embedded == 0
        assert len(test_adapter.embeddings.calls) == calls

    def test_changed_and_deleted_files_are_pruned(self, test_adapter, tmp_path):
        root = _tree(tmp_path / "repo")
        first = index_source("demo", root)
        (root / "src" / "log.ts").unlink()
        (root / "src" / "ingest.py").write_text(PY_SOURCE.replace("return 1", "return 2"), encoding="utf-8")

        second = index_source("demo", root)
        assert second.files == 1
        assert second.embedded == 1
        assert second.pruned >= 1
        stored = EmbeddingStore("demo").load_code_chunks()
        assert {c.file_path for c in stored} == {"src/ingest.py"}
        assert len(stored) == second.chunks
        assert second.chunks < first.chunks

    def test_embedding_failure_stores_chunks_without_vectors(self, test_adapter, tmp_path):
        set_embeddings_provider(_FailingEmbeddings())
        root = _tree(tmp_path / "repo")
        result = index_source("demo", root)
        assert result.embedded == 0
        assert result.warnings
        stored = EmbeddingStore("demo").load_code_chunks()
        assert stored and all(c.vector is None for c in stored)

    def test_missing_root_rejected(self, test_adapter, tmp_path):
        with pytest.raises(ValueError):
            index_source("demo", tmp_path / "nope")

    def test_code_corpus_is_searchable(self, test_adapter, tmp_path):
        store.save(store.ProjectMemory(project="demo"))
        index_source("demo", _tree(tmp_path / "repo"))
        results = search("getsize", corpora=["code"], project="demo")
        assert [r.primary for r in results] == ["src/ingest.py:parse_offsets"]
        assert results[0].recency_bonus == 0.0
        assert len(search("getsize", project="demo")) == 0
