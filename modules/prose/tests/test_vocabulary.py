"""Tests for core/evolution/vocabulary.py: local term extraction and merge."""

import os
import sys

# Ensure plugin root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.evolution.vocabulary import extract_vocabulary, merge_vocabulary


class TestExtractVocabulary:

    def test_terms_counted_and_filtered(self):
        vocab = extract_vocabulary(["The parser parser handles offsets", "an ok parser"])
        assert vocab["terms"]["parser"] == 3
        assert vocab["terms"]["offsets"] == 1
        assert "the" not in vocab["terms"]
        assert "ok" not in vocab["terms"]
        assert "an" not in vocab["terms"]

    def test_punctuation_replaced_but_hyphens_kept(self):
        vocab = extract_vocabulary(["byte-offset (tracking)!"])
        assert "byte-offset" in vocab["terms"]
        assert "tracking" in vocab["terms"]

    def test_long_tokens_dropped(self):
        vocab = extract_vocabulary(["a" * 30 + " " + "b" * 29])
        assert list(vocab["terms"]) == ["b" * 29]

    def test_technologies_and_files(self):
        vocab = extract_vocabulary(["Ported log_parser.py from TypeScript; see README.md and Python docs"])
        assert vocab["technologies"] == ["typescript", "python"]
        assert "log_parser.py" in vocab["files"]
        assert "readme.md" in vocab["files"]

    def test_concepts_are_top_terms(self):
        vocab = extract_vocabulary(["alpha alpha alpha beta beta gamma"])
        assert vocab["concepts"][:3] == ["alpha", "beta", "gamma"]


class TestMergeVocabulary:

    def test_counts_add_and_lists_union(self):
        a = {"terms": {"parser": 2}, "concepts": [], "technologies": ["python"], "files": ["a.py"]}
        b = {"terms": {"parser": 1, "offset": 4}, "concepts": [], "technologies": ["git", "python"],
             "files": ["b.py"]}
        merged = merge_vocabulary(a, b)
        assert merged["terms"] == {"parser": 3, "offset": 4}
        assert merged["technologies"] == ["python", "git"]
        assert merged["files"] == ["a.py", "b.py"]
        assert merged["concepts"][0] == "offset"

    def test_merge_with_none(self):
        b = extract_vocabulary(["docker compose"])
        assert merge_vocabulary(None, b)["terms"] == b["terms"]
