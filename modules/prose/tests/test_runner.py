"""Tests for core/evolution/runner.py: the end-to-end batch evolution run."""

import json
import os
import sys

# Ensure plugin root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from conftest import HORIZONTAL_KEYS, VERTICAL_KEYS, canned_responses, make_record, write_jsonl
from core.evolution import runner
from core.evolution.runner import RunSummary, run_all, run_evolution
from datastore.fragmentdb import store
from ingest.design_sessions import record_design_session
from lib.embeddings import set_embeddings_provider
from lib.providers import MockEmbeddingsProvider


class _FailingEmbeddings(MockEmbeddingsProvider):
    def embed(self, texts, mode="passage"):
        raise ConnectionError("embedding service down")


def _install_all(adapter, **overrides):
    for keys in (VERTICAL_KEYS, HORIZONTAL_KEYS):
        for key, reply in canned_responses(keys, **overrides).items():
            adapter.llm.set_response(key, reply)


def _session(log_dir, sid, n=2, mtime=None, trailing=""):
    records = [make_record("user" if i % 2 == 0 else "assistant", f"{sid} message {i} on sqlite",
                           minute=i, session=sid) for i in range(n)]
    path = write_jsonl(log_dir / f"{sid}.jsonl", records, trailing=trailing)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


# ---------------------------------------------------------------------------
# Happy path and idempotence
# ---------------------------------------------------------------------------

class TestRunEvolution:

    def test_processes_sessions_and_consolidates(self, test_adapter, log_dir):
        _install_all(test_adapter)
        p1 = _session(log_dir, "s1", mtime=1_700_000_000)
        p2 = _session(log_dir, "s2", mtime=1_700_000_100)

        summary = run_evolution("demo")
        assert isinstance(summary, RunSummary)
        assert summary.sessions_processed == 2
        assert summary.events == 4
        assert summary.errors == 0
        assert summary.horizontal_sessions == 2
        assert summary.bootstrapped is False
        assert summary.embeddings_indexed > 0
        assert summary.token_usage["api_calls"] == len(test_adapter.llm_calls) == 12

        memory = store.load("demo")
        assert [s.session_id for s in memory.snapshots] == ["s1", "s2"]
        assert memory.state_for("s1").byte_offset == p1.stat().st_size
        assert memory.state_for("s2").byte_offset == p2.stat().st_size
        assert memory.current.focus["current_goal"] == "Ship the parser"

    def test_second_run_without_new_bytes_is_a_no_op(self, test_adapter, log_dir):
        _install_all(test_adapter)
        _session(log_dir, "s1")
        run_evolution("demo")
        calls = len(test_adapter.llm_calls)
        before = store.load("demo").to_dict()

        summary = run_evolution("demo")
        assert summary.sessions_processed == 0
        assert summary.sessions_skipped == 1
        assert len(test_adapter.llm_calls) == calls
        after = store.load("demo").to_dict()
        before.pop("last_updated", None)
        after.pop("last_updated", None)
        assert after == before

    def test_single_session_bootstraps_without_horizontal_calls(self, test_adapter, log_dir):
        _install_all(test_adapter)
        _session(log_dir, "only")
        summary = run_evolution("demo")
        assert summary.bootstrapped is True
        assert len(test_adapter.llm_calls) == 4
        memory = store.load("demo")
        assert memory.current == memory.snapshots[0].fragments

    def test_sessions_filter(self, test_adapter, log_dir):
        _install_all(test_adapter)
        _session(log_dir, "s1")
        _session(log_dir, "s2")
        summary = run_evolution("demo", sessions=["s2"])
        assert summary.sessions_processed == 1
        assert store.load("demo").state_for("s1") is None

    def test_no_logs_still_saves_empty_memory(self, test_adapter):
        summary = run_evolution("demo")
        assert summary.sessions_processed == 0
        assert store.load("demo") is not None
        assert test_adapter.llm_calls == []


# ---------------------------------------------------------------------------
# Offsets and partial records
# ---------------------------------------------------------------------------

class TestIncrementalOffsets:

    def test_partial_trailing_line_completed_on_next_run(self, test_adapter, log_dir):
        _install_all(test_adapter)
        tail = make_record("user", "third message arrives late", minute=5, session="s1")
        complete = _session(log_dir, "s1", n=2)
        complete_size = complete.stat().st_size
        _session(log_dir, "s1", n=2, trailing=json.dumps(tail)[:25])

        first = run_evolution("demo")
        assert first.events == 2
        assert first.deferred_records == 1
        assert store.load("demo").state_for("s1").byte_offset == complete_size

        with complete.open("ab") as fh:
            fh.write((json.dumps(tail)[25:] + "\n").encode("utf-8"))
        second = run_evolution("demo")
        assert second.events == 1
        assert second.deferred_records == 0
        state = store.load("demo").state_for("s1")
        assert state.byte_offset == complete.stat().st_size
        assert state.event_count == 3

    def test_interior_malformed_line_is_counted(self, test_adapter, log_dir):
        _install_all(test_adapter)
        good = [make_record("user", "first", 0), make_record("assistant", "second", 1)]
        path = log_dir / "s1.jsonl"
        path.write_text(json.dumps(good[0]) + "\n{oops\n" + json.dumps(good[1]) + "\n", encoding="utf-8")

        summary = run_evolution("demo")
        assert summary.skipped_lines == 1
        assert summary.events == 2
        assert any("malformed" in w for w in summary.warnings)

    def test_offsets_never_move_backwards(self, test_adapter, log_dir):
        _install_all(test_adapter)
        path = _session(log_dir, "s1", n=4)
        run_evolution("demo")
        memory = store.load("demo")
        store.record_progress(memory, "s1", 4, 10)
        assert memory.state_for("s1").byte_offset == path.stat().st_size

    def test_force_reprocesses_from_start(self, test_adapter, log_dir):
        _install_all(test_adapter)
        _session(log_dir, "s1")
        run_evolution("demo")
        calls = len(test_adapter.llm_calls)

        summary = run_evolution("demo", force=True)
        assert summary.sessions_processed == 1
        assert summary.events == 2
        assert len(test_adapter.llm_calls) > calls
        assert store.load("demo").state_for("s1").event_count == 2


# ---------------------------------------------------------------------------
# Design sessions
# ---------------------------------------------------------------------------

class TestDesignSessions:

    def test_design_session_becomes_correction_snapshot(self, test_adapter, log_dir):
        _install_all(test_adapter)
        _session(log_dir, "s1", mtime=1_700_000_000)
        path = record_design_session("demo", [{"role": "user", "content": "The focus is retrieval now"}])

        summary = run_evolution("demo")
        assert summary.sessions_processed == 2
        snapshot = store.load("demo").snapshot_for(path.stem)
        assert snapshot is not None
        assert snapshot.correction is True
        vertical_user_msgs = [c["messages"][1]["content"] for c in test_adapter.llm_calls]
        assert any("Designer (authoritative correction)" in m for m in vertical_user_msgs)


# ---------------------------------------------------------------------------
# Bulkheads
# ---------------------------------------------------------------------------

class TestFailureIsolation:

    def test_failing_session_does_not_stop_others(self, test_adapter, log_dir, monkeypatch):
        _install_all(test_adapter)
        _session(log_dir, "bad", mtime=1_700_000_000)
        _session(log_dir, "good", mtime=1_700_000_100)
        original = runner.parse_session

        def _parse(session, from_byte=0):
            if session.session_id == "bad":
                raise OSError("disk went away")
            return original(session, from_byte)

        monkeypatch.setattr(runner, "parse_session", _parse)
        summary = run_evolution("demo")
        assert summary.sessions_processed == 1
        assert summary.errors == 1
        assert any("bad" in w and "OSError" in w for w in summary.warnings)
        memory = store.load("demo")
        assert memory.state_for("bad") is None
        assert memory.snapshot_for("good") is not None

    def test_collaborator_failure_counts_as_error(self, test_adapter, log_dir):
        _install_all(test_adapter, narrative=RuntimeError("provider exploded"))
        _session(log_dir, "s1")
        summary = run_evolution("demo")
        assert summary.sessions_processed == 1
        assert summary.errors >= 1
        assert any("narrative" in w for w in summary.warnings)

    def test_embedding_failure_is_a_warning(self, test_adapter, log_dir):
        _install_all(test_adapter)
        set_embeddings_provider(_FailingEmbeddings())
        _session(log_dir, "s1")
        summary = run_evolution("demo")
        assert summary.embeddings_indexed == 0
        assert summary.errors == 0
        assert any("embedding index not updated" in w for w in summary.warnings)
        assert store.load("demo").snapshot_for("s1") is not None

    def test_run_all_isolates_projects(self, test_adapter, monkeypatch):
        original = runner.run_evolution

        def _run(project, *, force=False):
            if project == "broken":
                raise RuntimeError("store corrupted")
            return original(project, force=force)

        monkeypatch.setattr(runner, "run_evolution", _run)
        results = run_all(["broken", "demo"])
        assert [r.project for r in results] == ["broken", "demo"]
        assert results[0].errors == 1
        assert results[1].errors == 0

    def test_run_all_defaults_to_stored_projects(self, test_adapter):
        store.save(store.ProjectMemory(project="alpha"))
        store.save(store.ProjectMemory(project="beta"))
        assert sorted(r.project for r in run_all()) == ["alpha", "beta"]
