"""Fragment data model: the five semantic views and their validation.

A FragmentSet holds one value per kind; each value is a plain JSON-shaped
dict so it persists as-is. Every kind is a FragmentKind with the same
contract, which lets the evolution and retrieval engines fan out over kinds
without per-type branching:

    kind.empty()            fresh value
    kind.validate(payload)  normalized value, ValueError when unusable
    kind.entries(value)     (type, primary, secondary) index units
"""

from __future__ import annotations

import abc
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from lib.llm_clients import validate_llm_output


FRAGMENT_TYPES = ("decisions", "insights", "focus", "narrative", "vocabulary")
REASONING_TYPES = ("decisions", "insights", "focus", "narrative")

DECISION_CONFIDENCE = ("certain", "tentative", "revisiting")
BEAT_TYPES = ("setup", "conflict", "breakthrough", "pivot", "resolution", "cliffhanger")
EMOTIONAL_TONES = ("frustrated", "curious", "excited", "determined", "satisfied")
QUOTE_SPEAKERS = ("human", "claude")


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _str_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list, got {type(value).__name__}")
    return [_text(v) for v in value if _text(v)]


def _object_list(payload: Dict[str, Any], key: str, *, required: bool) -> List[Any]:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValueError(f"missing required list '{key}'")
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Entry schemas (validated through lib.llm_clients.validate_llm_output)
# ---------------------------------------------------------------------------

@dataclass
class DecisionEntry:
    what: str
    why: str = ""
    when: str = ""
    alternatives: Optional[List[str]] = None
    confidence: str = "tentative"

    def __post_init__(self):
        self.what = _text(self.what)
        if not self.what:
            raise ValueError("decision.what is required")
        self.why = _text(self.why)
        self.when = _text(self.when)
        self.alternatives = _str_list(self.alternatives, "decision.alternatives") or None
        conf = _text(self.confidence).lower()
        # Unknown confidence degrades to tentative rather than dropping the decision.
        self.confidence = conf if conf in DECISION_CONFIDENCE else "tentative"

    def to_dict(self) -> Dict[str, Any]:
        out = {"what": self.what, "why": self.why, "when": self.when, "confidence": self.confidence}
        if self.alternatives:
            out["alternatives"] = list(self.alternatives)
        return out


@dataclass
class InsightEntry:
    learning: str
    context: str = ""
    applies_to: Optional[List[str]] = None

    def __post_init__(self):
        self.learning = _text(self.learning)
        if not self.learning:
            raise ValueError("insight.learning is required")
        self.context = _text(self.context)
        self.applies_to = _str_list(self.applies_to, "insight.applies_to") or None

    def to_dict(self) -> Dict[str, Any]:
        out = {"learning": self.learning, "context": self.context}
        if self.applies_to:
            out["applies_to"] = list(self.applies_to)
        return out


@dataclass
class GotchaEntry:
    issue: str
    solution: Optional[str] = None

    def __post_init__(self):
        self.issue = _text(self.issue)
        if not self.issue:
            raise ValueError("gotcha.issue is required")
        self.solution = _text(self.solution) or None

    def to_dict(self) -> Dict[str, Any]:
        out = {"issue": self.issue}
        if self.solution:
            out["solution"] = self.solution
        return out


@dataclass
class StoryBeat:
    beat_type: str
    summary: str
    emotional_tone: Optional[str] = None

    def __post_init__(self):
        self.beat_type = _text(self.beat_type).lower()
        if self.beat_type not in BEAT_TYPES:
            raise ValueError(f"unknown beat_type {self.beat_type!r}")
        self.summary = _text(self.summary)
        if not self.summary:
            raise ValueError("story_beat.summary is required")
        tone = _text(self.emotional_tone).lower()
        self.emotional_tone = tone if tone in EMOTIONAL_TONES else None

    def to_dict(self) -> Dict[str, Any]:
        out = {"beat_type": self.beat_type, "summary": self.summary}
        if self.emotional_tone:
            out["emotional_tone"] = self.emotional_tone
        return out


@dataclass
class Quote:
    speaker: str
    quote: str
    context: Optional[str] = None

    def __post_init__(self):
        speaker = _text(self.speaker).lower()
        if speaker in ("user", "designer"):
            speaker = "human"
        elif speaker == "assistant":
            speaker = "claude"
        if speaker not in QUOTE_SPEAKERS:
            raise ValueError(f"unknown quote speaker {self.speaker!r}")
        self.speaker = speaker
        self.quote = _text(self.quote)
        if not self.quote:
            raise ValueError("quote.quote is required")
        self.context = _text(self.context) or None

    def to_dict(self) -> Dict[str, Any]:
        out = {"speaker": self.speaker, "quote": self.quote}
        if self.context:
            out["context"] = self.context
        return out


def _validated_list(raw: List[Any], schema: type, name: str) -> List[Dict[str, Any]]:
    valid = validate_llm_output(raw, schema)
    if raw and not valid:
        raise ValueError(f"no valid {name} entries in {len(raw)} candidates")
    return [v.to_dict() for v in valid]


# ---------------------------------------------------------------------------
# Fragment kinds
# ---------------------------------------------------------------------------

EntryTuple = Tuple[str, str, str]


class FragmentKind(abc.ABC):
    name = ""

    @abc.abstractmethod
    def empty(self) -> Dict[str, Any]:
        """Fresh value for a session with no history."""
        ...

    @abc.abstractmethod
    def validate(self, payload: Any) -> Dict[str, Any]:
        """Normalized value; ValueError when the payload is unusable."""
        ...

    def entries(self, value: Optional[Dict[str, Any]]) -> List[EntryTuple]:
        return []

    def coerce(self, previous: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Previous value, or empty when absent."""
        return copy.deepcopy(previous) if previous else self.empty()

    def _require_object(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValueError(f"{self.name} payload must be an object, got {type(payload).__name__}")
        return payload


class DecisionsKind(FragmentKind):
    name = "decisions"

    def empty(self):
        return {"decisions": []}

    def validate(self, payload):
        payload = self._require_object(payload)
        out = {"decisions": _validated_list(
            _object_list(payload, "decisions", required=True), DecisionEntry, "decision")}
        musings = _text(payload.get("musings"))
        if musings:
            out["musings"] = musings
        return out

    def entries(self, value):
        return [("decision", d.get("what", ""), d.get("why", ""))
                for d in (value or {}).get("decisions", []) or []]


class InsightsKind(FragmentKind):
    name = "insights"

    def empty(self):
        return {"insights": [], "gotchas": []}

    def validate(self, payload):
        payload = self._require_object(payload)
        return {
            "insights": _validated_list(
                _object_list(payload, "insights", required=True), InsightEntry, "insight"),
            "gotchas": _validated_list(
                _object_list(payload, "gotchas", required=False), GotchaEntry, "gotcha"),
        }

    def entries(self, value):
        value = value or {}
        out = [("insight", i.get("learning", ""), i.get("context", ""))
               for i in value.get("insights", []) or []]
        out.extend(("gotcha", g.get("issue", ""), g.get("solution") or "")
                   for g in value.get("gotchas", []) or [])
        return out


class FocusKind(FragmentKind):
    name = "focus"

    def empty(self):
        return {"current_goal": "", "active_tasks": [], "blockers": [], "next_steps": []}

    def validate(self, payload):
        payload = self._require_object(payload)
        if "current_goal" not in payload:
            raise ValueError("missing required field 'current_goal'")
        return {
            "current_goal": _text(payload.get("current_goal")),
            "active_tasks": _str_list(payload.get("active_tasks"), "focus.active_tasks"),
            "blockers": _str_list(payload.get("blockers"), "focus.blockers"),
            "next_steps": _str_list(payload.get("next_steps"), "focus.next_steps"),
        }

    def entries(self, value):
        if not value or not value.get("current_goal"):
            return []
        return [("focus", value["current_goal"], "; ".join(value.get("active_tasks", []) or []))]


class NarrativeKind(FragmentKind):
    name = "narrative"

    def empty(self):
        return {"story_beats": [], "memorable_quotes": [], "themes": []}

    def validate(self, payload):
        payload = self._require_object(payload)
        return {
            "story_beats": _validated_list(
                _object_list(payload, "story_beats", required=True), StoryBeat, "story beat"),
            # Quotes are optional flavor; a malformed one is dropped, never fatal.
            "memorable_quotes": [q.to_dict() for q in validate_llm_output(
                _object_list(payload, "memorable_quotes", required=False), Quote)],
            "themes": _str_list(payload.get("themes"), "narrative.themes"),
        }

    def entries(self, value):
        value = value or {}
        out = [("narrative", b.get("summary", ""), b.get("beat_type", ""))
               for b in value.get("story_beats", []) or []]
        out.extend(("quote", q.get("quote", ""), q.get("speaker", ""))
                   for q in value.get("memorable_quotes", []) or [])
        return out


class VocabularyKind(FragmentKind):
    name = "vocabulary"

    def empty(self):
        return {"terms": {}, "concepts": [], "technologies": [], "files": []}

    def validate(self, payload):
        payload = self._require_object(payload)
        raw_terms = payload.get("terms") or {}
        if not isinstance(raw_terms, dict):
            raise ValueError("vocabulary.terms must be an object")
        terms: Dict[str, int] = {}
        for term, count in raw_terms.items():
            try:
                terms[str(term)] = int(count)
            except (TypeError, ValueError):
                continue
        return {
            "terms": terms,
            "concepts": _str_list(payload.get("concepts"), "vocabulary.concepts"),
            "technologies": _str_list(payload.get("technologies"), "vocabulary.technologies"),
            "files": _str_list(payload.get("files"), "vocabulary.files"),
        }


FRAGMENT_KINDS: Dict[str, FragmentKind] = {
    kind.name: kind
    for kind in (DecisionsKind(), InsightsKind(), FocusKind(), NarrativeKind(), VocabularyKind())
}


def get_kind(name: str) -> FragmentKind:
    try:
        return FRAGMENT_KINDS[name]
    except KeyError:
        raise ValueError(f"Unknown fragment type: {name!r}") from None


# ---------------------------------------------------------------------------
# FragmentSet
# ---------------------------------------------------------------------------

@dataclass
class FragmentSet:
    decisions: Optional[Dict[str, Any]] = None
    insights: Optional[Dict[str, Any]] = None
    focus: Optional[Dict[str, Any]] = None
    narrative: Optional[Dict[str, Any]] = None
    vocabulary: Optional[Dict[str, Any]] = None

    def get(self, fragment_type: str) -> Optional[Dict[str, Any]]:
        get_kind(fragment_type)
        return getattr(self, fragment_type)

    def with_value(self, fragment_type: str, value: Optional[Dict[str, Any]]) -> "FragmentSet":
        """Copy with one field replaced."""
        get_kind(fragment_type)
        data = {name: getattr(self, name) for name in FRAGMENT_TYPES}
        data[fragment_type] = value
        return FragmentSet(**data)

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in FRAGMENT_TYPES)

    def items(self) -> Iterator[Tuple[str, Optional[Dict[str, Any]]]]:
        for name in FRAGMENT_TYPES:
            yield name, getattr(self, name)

    def copy(self) -> "FragmentSet":
        return FragmentSet(**{name: copy.deepcopy(getattr(self, name)) for name in FRAGMENT_TYPES})

    def to_dict(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in FRAGMENT_TYPES}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FragmentSet":
        """Load persisted fragments; values that fail validation load as None."""
        data = data or {}
        values: Dict[str, Any] = {}
        for name in FRAGMENT_TYPES:
            raw = data.get(name)
            if raw is None:
                values[name] = None
                continue
            try:
                values[name] = get_kind(name).validate(raw)
            except ValueError:
                values[name] = None
        return cls(**values)


@dataclass
class FragmentCounts:
    decisions: int = 0
    insights: int = 0
    gotchas: int = 0
    story_beats: int = 0
    quotes: int = 0
    terms: int = 0

    @classmethod
    def of(cls, fragments: FragmentSet) -> "FragmentCounts":
        return cls(
            decisions=len((fragments.decisions or {}).get("decisions", [])),
            insights=len((fragments.insights or {}).get("insights", [])),
            gotchas=len((fragments.insights or {}).get("gotchas", [])),
            story_beats=len((fragments.narrative or {}).get("story_beats", [])),
            quotes=len((fragments.narrative or {}).get("memorable_quotes", [])),
            terms=len((fragments.vocabulary or {}).get("terms", {})),
        )

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)
