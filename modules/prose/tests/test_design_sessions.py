"""Tests for ingest/design_sessions.py: recording, listing and parsing corrections."""

import json
import os
import sys
from datetime import datetime, timezone

# Ensure plugin root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from ingest.design_sessions import list_design_sessions, parse_design_session, record_design_session
from ingest.log_parser import discover, parse_session


NOW = datetime(2025, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)


class TestRecordDesignSession:

    def test_writes_document(self, test_adapter):
        path = record_design_session("demo", [
            {"role": "user", "content": "We dropped Redis."},
            {"role": "assistant", "content": "Noted."},
        ], now=NOW)
        assert path.name == "design-2025-03-04T05-06-07-890000Z.json"
        doc = json.loads(path.read_text(encoding="utf-8"))
        assert doc["type"] == "design-session"
        assert doc["project"] == "demo"
        assert [m["role"] for m in doc["messages"]] == ["user", "assistant"]

    def test_blank_and_unknown_messages_dropped(self, test_adapter):
        path = record_design_session("demo", [
            {"role": "user", "content": "  "},
            {"role": "system", "content": "ignored"},
            "not a dict",
            {"role": "USER", "content": "Real correction"},
        ], now=NOW)
        doc = json.loads(path.read_text(encoding="utf-8"))
        assert doc["messages"] == [{"role": "user", "content": "Real correction"}]

    def test_requires_a_designer_message(self, test_adapter):
        with pytest.raises(ValueError):
            record_design_session("demo", [{"role": "assistant", "content": "only me"}])


class TestParseDesignSession:

    def test_events_are_corrections(self, test_adapter):
        path = record_design_session("demo", [
            {"role": "user", "content": "Focus is search"},
            {"role": "assistant", "content": "Understood"},
        ], now=NOW)
        result = parse_design_session(path)
        assert result.processed_bytes == path.stat().st_size
        assert [e.actor_role for e in result.events] == ["user", "assistant"]
        assert all(e.correction for e in result.events)
        assert result.events[0].record_id == f"{path.stem}:0"
        assert result.events[0].timestamp == NOW

    def test_already_consumed_document_yields_nothing(self, test_adapter):
        path = record_design_session("demo", [{"role": "user", "content": "x"}], now=NOW)
        result = parse_design_session(path, path.stat().st_size)
        assert result.events == []
        assert result.processed_bytes == path.stat().st_size

    def test_unreadable_document_is_deferred(self, test_adapter):
        path = record_design_session("demo", [{"role": "user", "content": "x"}], now=NOW)
        path.write_text('{"type": "design-sess', encoding="utf-8")
        result = parse_design_session(path)
        assert result.events == []
        assert result.processed_bytes == 0
        assert result.deferred is not None

    def test_foreign_document_is_skipped(self, test_adapter):
        path = record_design_session("demo", [{"role": "user", "content": "x"}], now=NOW)
        path.write_text('{"type": "other"}', encoding="utf-8")
        result = parse_design_session(path)
        assert result.skipped_lines == 1
        assert result.processed_bytes == path.stat().st_size


class TestDiscovery:

    def test_listed_and_discovered_with_transcripts(self, test_adapter, log_dir):
        (log_dir / "t1.jsonl").write_text("", encoding="utf-8")
        path = record_design_session("demo", [{"role": "user", "content": "x"}], now=NOW)

        listed = list_design_sessions("demo")
        assert [s.session_id for s in listed] == [path.stem]
        assert listed[0].is_design

        found = {s.session_id: s for s in discover("demo")}
        assert set(found) == {"t1", path.stem}
        assert parse_session(found[path.stem]).events[0].correction is True

    def test_other_project_not_listed(self, test_adapter):
        record_design_session("demo", [{"role": "user", "content": "x"}], now=NOW)
        assert list_design_sessions("other") == []
