"""Local (no LLM) vocabulary extraction and additive merging."""

from __future__ import annotations

import re
from collections import Counter
from typing import Dict, Iterable, List, Optional

_NON_TOKEN = re.compile(r"[^a-z0-9\s-]")
_TECH = re.compile(
    r"\b(typescript|javascript|python|rust|go|react|svelte|node|npm|git|docker|claude|gpt|llm|ai|zod|zontax)\b"
)
_FILE = re.compile(r"[a-z0-9_-]+\.(?:ts|js|tsx|jsx|py|rs|go|md|json|yaml|zig|gd)\b")

MIN_TERM_LEN = 3
MAX_TERM_LEN = 29
TOP_CONCEPTS = 20

STOPWORDS = frozenset("""
the and for are but not you all any can had her was one our out has him his how its may new now
old see two who boy did get let put say she too use that with this from have they will what when
your been were them then than into just like make some there their which would could should about
also only over such here more most other these those very each both after before because while where
being does doing done dont didnt cant wont isnt its im ive youre thats lets okay yeah yes sure
""".split())


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(i for i in items if i))


def extract_vocabulary(texts: Iterable[str]) -> Dict[str, object]:
    """Vocabulary fragment for a batch of texts."""
    lowered = " ".join(texts).lower()
    cleaned = _NON_TOKEN.sub(" ", lowered)
    counts = Counter(
        tok for tok in cleaned.split()
        if MIN_TERM_LEN <= len(tok) <= MAX_TERM_LEN and tok not in STOPWORDS
    )
    return {
        "terms": dict(counts),
        "concepts": [term for term, _ in counts.most_common(TOP_CONCEPTS)],
        "technologies": _unique(m.group(1) for m in _TECH.finditer(lowered)),
        "files": _unique(m.group(0) for m in _FILE.finditer(lowered)),
    }


def merge_vocabulary(base: Optional[Dict[str, object]], update: Optional[Dict[str, object]]) -> Dict[str, object]:
    """Add term counts, union lists in first-seen order, recompute concepts."""
    base = base or {}
    update = update or {}
    terms: Counter = Counter()
    terms.update({k: int(v) for k, v in (base.get("terms") or {}).items()})
    terms.update({k: int(v) for k, v in (update.get("terms") or {}).items()})
    return {
        "terms": dict(terms),
        "concepts": [term for term, _ in terms.most_common(TOP_CONCEPTS)],
        "technologies": _unique(list(base.get("technologies") or []) + list(update.get("technologies") or [])),
        "files": _unique(list(base.get("files") or []) + list(update.get("files") or [])),
    }
