"""Fail-hard policy helpers.

Centralizes how prose resolves fallback policy from config.
"""

from __future__ import annotations


def is_fail_hard_enabled() -> bool:
    """Return True when provider fallbacks must be disabled.

    Source of truth: config/memory.json evolution.fail_hard (or failHard alias).
    Defaults to False if config is unavailable; the pipeline bulkheads stay
    active either way.
    """
    try:
        from config import get_config

        evolution = getattr(get_config(), "evolution", None)
        if evolution is None:
            return False
        return bool(getattr(evolution, "fail_hard", False))
    except Exception:
        return False
