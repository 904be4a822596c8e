"""Shared fixtures for all test modules."""
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Default home for tests: a scratch dir inside the repository, never ~/.claude-prose.
_DEFAULT_WORKSPACE = str(Path(__file__).resolve().parents[3])
_DEFAULT_TEST_HOME = Path(os.environ.get("PROSE_HOME", str(Path(_DEFAULT_WORKSPACE) / ".pytest-home")))

# Seed an explicit adapter config before collection so import-time adapter
# resolution never relies on hidden fallbacks.
if not os.environ.get("PROSE_HOME"):
    os.environ["PROSE_HOME"] = str(_DEFAULT_TEST_HOME)
_adapter_cfg = _DEFAULT_TEST_HOME / "config" / "memory.json"
_adapter_cfg.parent.mkdir(parents=True, exist_ok=True)
if not _adapter_cfg.exists():
    _adapter_cfg.write_text('{"adapter":{"type":"standalone"}}', encoding="utf-8")

os.environ.setdefault("PROSE_QUIET", "1")

from lib.adapter import reset_adapter


# Routing keys for TestLLMProvider: each appears only in its own system prompt.
VERTICAL_KEYS = {
    "decisions": "DECISIONS",
    "insights": "INSIGHTS",
    "focus": "CURRENT FOCUS",
    "narrative": "NARRATIVE",
}
HORIZONTAL_KEYS = {
    "decisions": "decision memory",
    "insights": "project's insights",
    "focus": "CURRENT focus",
    "narrative": "narrative arc of a project",
}

DECISIONS_REPLY = {"decisions": [{"what": "Use SQLite", "why": "Zero ops", "when": "day 1",
                                  "confidence": "certain"}]}
INSIGHTS_REPLY = {"insights": [{"learning": "WAL mode avoids reader stalls", "context": "load test"}],
                  "gotchas": [{"issue": "fsync is slow on CI", "solution": "tmpfs"}]}
FOCUS_REPLY = {"current_goal": "Ship the parser", "active_tasks": ["offsets"], "blockers": [],
               "next_steps": ["tests"]}
NARRATIVE_REPLY = {"story_beats": [{"beat_type": "breakthrough", "summary": "Offsets finally line up"}],
                   "memorable_quotes": [{"speaker": "human", "quote": "bytes, not lines"}],
                   "themes": ["robustness"]}


def canned_responses(keys=None, **overrides):
    """Valid JSON reply per fragment type, routed by prompt key."""
    keys = keys or VERTICAL_KEYS
    replies = {
        "decisions": DECISIONS_REPLY,
        "insights": INSIGHTS_REPLY,
        "focus": FOCUS_REPLY,
        "narrative": NARRATIVE_REPLY,
    }
    out = {}
    for fragment_type, key in keys.items():
        reply = overrides.get(fragment_type, replies[fragment_type])
        out[key] = json.dumps(reply) if isinstance(reply, dict) else reply
    return out


def write_jsonl(path: Path, records, trailing: str = "") -> Path:
    """Write records as JSONL (one per line, newline-terminated) plus raw trailing text."""
    path.parent.mkdir(parents=True, exist_ok=True)
    body = "".join(json.dumps(r) + "\n" for r in records) + trailing
    path.write_bytes(body.encode("utf-8"))
    return path


def make_record(role: str, text: str, minute: int = 0, session: str = "s1", uuid: str = "") -> dict:
    ts = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc) + timedelta(minutes=minute)
    content = text if role == "user" else [{"type": "text", "text": text}]
    return {
        "type": role,
        "message": {"role": role, "content": content},
        "uuid": uuid or f"{session}-{minute}-{role}",
        "timestamp": ts.isoformat().replace("+00:00", "Z"),
        "sessionId": session,
    }


def delayed(reply: dict, seconds: float):
    """Canned reply that takes ``seconds`` to arrive."""
    def _reply(messages):
        time.sleep(seconds)
        return json.dumps(reply)
    return _reply


def write_memory_config(adapter, data: dict) -> Path:
    """Write config/memory.json under the adapter home and drop the cached config."""
    from config import reset_config
    path = adapter.config_dir() / "memory.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    reset_config()
    return path


@pytest.fixture(autouse=True)
def _ensure_adapter_clean(monkeypatch):
    """Reset adapter/config/provider singletons before and after every test."""
    monkeypatch.delenv("MOCK_EMBEDDINGS", raising=False)
    monkeypatch.delenv("PROSE_DISABLE_LLM", raising=False)
    monkeypatch.delenv("PROSE_STORE_DIR", raising=False)
    monkeypatch.delenv("PROSE_EMBEDDINGS_DIR", raising=False)
    monkeypatch.delenv("PROSE_LOG_SOURCE_DIR", raising=False)
    reset_adapter()
    yield
    reset_adapter()


@pytest.fixture
def test_adapter(tmp_path):
    """Provide a TestAdapter with canned LLM responses and call recording.

    Usage::

        def test_something(test_adapter):
            test_adapter.llm.set_response("DECISIONS", '{"decisions": []}')
            # ... code under test ...
            assert len(test_adapter.llm_calls) == 4
    """
    from lib.adapter import TestAdapter, set_adapter
    adapter = TestAdapter(tmp_path / "home", log_source=tmp_path / "logs")
    set_adapter(adapter)
    return adapter


@pytest.fixture
def mock_embeddings(test_adapter):
    """The deterministic embeddings provider behind test_adapter."""
    return test_adapter.embeddings


@pytest.fixture
def log_dir(test_adapter):
    """Log-source directory for project 'demo' (``-home-me-demo``)."""
    path = test_adapter.log_source_dir() / "-home-me-demo"
    path.mkdir(parents=True, exist_ok=True)
    return path
