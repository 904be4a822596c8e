"""Tests for core/evolution/vertical.py: windows, fork/join, bulkheads."""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Ensure plugin root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from conftest import (
    DECISIONS_REPLY,
    FOCUS_REPLY,
    INSIGHTS_REPLY,
    NARRATIVE_REPLY,
    VERTICAL_KEYS,
    canned_responses,
    delayed,
    write_memory_config,
)
from core.evolution.collaborator import evolve_fragment, split_schema_id
from core.evolution.vertical import evolve_vertical, render_events, split_windows
from datastore.fragmentdb import store
from datastore.fragmentdb.schemas import FragmentSet
from ingest.log_parser import Event
from lib.errors import CollaboratorError


def _events(n, correction=False):
    return [
        Event(
            actor_role="user" if i % 2 == 0 else "assistant",
            text=f"message {i} about the sqlite parser",
            timestamp=datetime(2025, 1, 1, 9, i % 60, tzinfo=timezone.utc),
            record_id=f"r{i}",
            session_id="s1",
            correction=correction,
        )
        for i in range(n)
    ]


def _install(adapter, **overrides):
    for key, reply in canned_responses(VERTICAL_KEYS, **overrides).items():
        adapter.llm.set_response(key, reply)


# ---------------------------------------------------------------------------
# Rendering and windowing
# ---------------------------------------------------------------------------

class TestRenderEvents:

    def test_format_and_separator(self):
        text = render_events(_events(2))
        assert text == (
            "[09:00] Human: message 0 about the sqlite parser"
            "\n\n---\n\n"
            "[09:01] Claude: message 1 about the sqlite parser"
        )

    def test_correction_events_are_labelled_designer(self):
        text = render_events(_events(1, correction=True))
        assert text.startswith("[09:00] Designer (authoritative correction): ")

    def test_split_windows(self):
        windows = split_windows(_events(5), 2)
        assert [len(w) for w in windows] == [2, 2, 1]


# ---------------------------------------------------------------------------
# Collaborator
# ---------------------------------------------------------------------------

class TestCollaborator:

    def test_schema_ids(self):
        assert split_schema_id("vertical.focus") == ("vertical", "focus")
        with pytest.raises(ValueError):
            split_schema_id("vertical.vocabulary")

    def test_valid_reply_is_validated(self, test_adapter):
        _install(test_adapter)
        value = evolve_fragment("vertical.decisions", None, {}, "[09:00] Human: hi")
        assert value["decisions"][0]["what"] == "Use SQLite"
        call = test_adapter.llm_calls[0]
        assert call["temperature"] == 0.3
        assert "NEW MESSAGES:" in call["messages"][1]["content"]

    def test_narrative_uses_higher_temperature(self, test_adapter):
        _install(test_adapter)
        evolve_fragment("vertical.narrative", None, {}, "text")
        assert test_adapter.llm_calls[0]["temperature"] == 0.5

    def test_non_json_reply_raises_collaborator_error(self, test_adapter):
        _install(test_adapter, decisions="I refuse")
        with pytest.raises(CollaboratorError) as excinfo:
            evolve_fragment("vertical.decisions", None, {}, "text", window_index=2)
        assert excinfo.value.fragment_type == "decisions"
        assert excinfo.value.window_index == 2

    def test_schema_violation_raises_collaborator_error(self, test_adapter):
        _install(test_adapter, focus=json.dumps({"active_tasks": []}))
        with pytest.raises(CollaboratorError):
            evolve_fragment("vertical.focus", None, {}, "text")


# ---------------------------------------------------------------------------
# evolve_vertical
# ---------------------------------------------------------------------------

class TestEvolveVertical:

    def test_all_four_types_evolve_and_vocabulary_is_local(self, test_adapter):
        _install(test_adapter)
        memory = store.ProjectMemory(project="p")
        result = evolve_vertical(memory, "s1", _events(4))

        fragments = result.snapshot.fragments
        assert fragments.decisions["decisions"][0]["what"] == "Use SQLite"
        assert fragments.insights["gotchas"][0]["issue"] == "fsync is slow on CI"
        assert fragments.focus["current_goal"] == "Ship the parser"
        assert fragments.narrative["story_beats"][0]["beat_type"] == "breakthrough"
        assert fragments.vocabulary["terms"]["sqlite"] == 4
        assert result.errors == []
        assert result.windows == 1
        assert len(test_adapter.llm_calls) == 4

    def test_one_call_per_type_per_window(self, test_adapter):
        _install(test_adapter)
        memory = store.ProjectMemory(project="p")
        result = evolve_vertical(memory, "s1", _events(5), window_size=2)
        assert result.windows == 3
        assert len(test_adapter.llm_calls) == 12
        assert result.snapshot.fragments.vocabulary["terms"]["sqlite"] == 5

    def test_failing_narrative_does_not_block_siblings(self, test_adapter):
        _install(test_adapter, narrative=RuntimeError("provider exploded"))
        memory = store.ProjectMemory(project="p")
        result = evolve_vertical(memory, "s1", _events(2))

        fragments = result.snapshot.fragments
        assert fragments.decisions == {"decisions": [dict(DECISIONS_REPLY["decisions"][0])]}
        assert fragments.insights["insights"] == INSIGHTS_REPLY["insights"]
        assert fragments.focus == FOCUS_REPLY
        assert fragments.narrative is None
        assert [e.fragment_type for e in result.errors] == ["narrative"]
        assert result.errors[0].window_index == 0

    @pytest.mark.parametrize("max_workers", [4, 2])
    def test_slow_type_times_out_alone(self, test_adapter, max_workers):
        write_memory_config(test_adapter, {
            "evolution": {"maxWorkers": max_workers, "collaboratorTimeoutSeconds": 0.5},
        })
        _install(
            test_adapter,
            decisions=delayed(DECISIONS_REPLY, 0.3),
            insights=delayed(INSIGHTS_REPLY, 0.3),
            focus=delayed(FOCUS_REPLY, 0.3),
            narrative=delayed(NARRATIVE_REPLY, 1.2),
        )
        memory = store.ProjectMemory(project="p")
        prior_narrative = {"story_beats": [{"beat_type": "pivot", "summary": "Earlier pivot"}]}
        store.record_session(memory, "s1", FragmentSet(narrative=prior_narrative), 1, 10)

        result = evolve_vertical(memory, "s1", _events(2))

        fragments = result.snapshot.fragments
        assert fragments.decisions["decisions"][0]["what"] == "Use SQLite"
        assert fragments.insights["gotchas"][0]["issue"] == "fsync is slow on CI"
        assert fragments.focus == FOCUS_REPLY
        assert fragments.narrative == prior_narrative
        assert len(result.errors) == 1
        assert result.errors[0].fragment_type == "narrative"
        assert "timed out" in str(result.errors[0])

    def test_failure_is_logged_once(self, test_adapter, caplog):
        _install(test_adapter, focus="not json at all")
        with caplog.at_level(logging.WARNING, logger="core.evolution.vertical"):
            evolve_vertical(store.ProjectMemory(project="p"), "s1", _events(1))
        warnings = [r.getMessage() for r in caplog.records if r.name == "core.evolution.vertical"]
        assert len(warnings) == 1
        assert warnings[0].count("not JSON") == 1
        assert "focus[window=0]" in warnings[0]

    def test_failure_keeps_prior_session_value(self, test_adapter):
        _install(test_adapter, focus="not json at all")
        memory = store.ProjectMemory(project="p")
        prior_focus = {"current_goal": "Earlier goal", "active_tasks": [], "blockers": [], "next_steps": []}
        store.record_session(memory, "s1", FragmentSet(focus=prior_focus), 1, 10)

        result = evolve_vertical(memory, "s1", _events(2))
        assert result.snapshot.fragments.focus == prior_focus
        assert result.snapshot.fragments.decisions is not None

    def test_previous_state_is_sent_to_collaborator(self, test_adapter):
        _install(test_adapter)
        memory = store.ProjectMemory(project="p")
        prior = {"decisions": [{"what": "Keep JSONL", "why": "", "when": "", "confidence": "certain"}]}
        store.record_session(memory, "s1", FragmentSet(decisions=prior), 1, 10)

        evolve_vertical(memory, "s1", _events(1))
        decisions_call = next(c for c in test_adapter.llm_calls
                              if "DECISIONS" in c["messages"][0]["content"])
        assert "Keep JSONL" in decisions_call["messages"][1]["content"]

    def test_no_events_returns_existing_snapshot_without_calls(self, test_adapter):
        memory = store.ProjectMemory(project="p")
        result = evolve_vertical(memory, "s1", [])
        assert result.windows == 0
        assert result.snapshot.fragments.is_empty()
        assert test_adapter.llm_calls == []

    def test_correction_events_mark_snapshot(self, test_adapter):
        _install(test_adapter)
        result = evolve_vertical(store.ProjectMemory(project="p"), "design-1", _events(1, correction=True))
        assert result.snapshot.correction is True
        user_msg = test_adapter.llm_calls[0]["messages"][1]["content"]
        assert "Designer (authoritative correction)" in user_msg

    def test_snapshot_timestamp_is_last_event(self, test_adapter):
        _install(test_adapter)
        result = evolve_vertical(store.ProjectMemory(project="p"), "s1", _events(3))
        assert result.snapshot.timestamp.startswith("2025-01-01T09:02")
