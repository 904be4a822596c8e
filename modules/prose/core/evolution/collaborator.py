"""One reasoning-collaborator invocation for one fragment type.

``evolve_fragment`` returns a validated fragment value or raises
CollaboratorError; callers decide what to keep on failure.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from config import get_config
from datastore.fragmentdb.schemas import REASONING_TYPES, get_kind
from lib.errors import CollaboratorError
from lib.llm_clients import call_llm, parse_json_response
from prompt_sets import get_prompt

logger = logging.getLogger(__name__)

PASSES = ("vertical", "horizontal")


def split_schema_id(schema_id: str):
    """``"vertical.decisions"`` -> ("vertical", "decisions")."""
    pass_name, _, fragment_type = str(schema_id).partition(".")
    if pass_name not in PASSES or fragment_type not in REASONING_TYPES:
        raise ValueError(f"Unknown collaborator schema id: {schema_id!r}")
    return pass_name, fragment_type


def temperature_for(fragment_type: str) -> float:
    cfg = get_config().evolution
    return cfg.narrative_temperature if fragment_type == "narrative" else cfg.temperature


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def build_user_message(pass_name: str, previous: Optional[Dict[str, Any]],
                       siblings: Dict[str, Any], event_text: str) -> str:
    input_label = "NEW MESSAGES" if pass_name == "vertical" else "SESSION SNAPSHOTS"
    parts = [
        "PREVIOUS STATE:",
        _dump(previous) if previous else "(none yet)",
        "",
        "OTHER FRAGMENTS (read-only context):",
        _dump({k: v for k, v in siblings.items() if v is not None}) if siblings else "{}",
        "",
        f"{input_label}:",
        event_text,
    ]
    return "\n".join(parts)


def evolve_fragment(
    schema_id: str,
    previous: Optional[Dict[str, Any]],
    siblings: Dict[str, Any],
    event_text: str,
    *,
    window_index: Optional[int] = None,
) -> Dict[str, Any]:
    pass_name, fragment_type = split_schema_id(schema_id)
    cfg = get_config().evolution
    system_prompt = (
        get_prompt(f"evolve.{pass_name}.{fragment_type}")
        + "\n\n"
        + get_prompt("llm.json_only")
    )
    user_message = build_user_message(pass_name, previous, siblings, event_text)

    def _fail(message: str, cause: Optional[BaseException] = None) -> CollaboratorError:
        return CollaboratorError(message, fragment_type=fragment_type, window_index=window_index, cause=cause)

    try:
        text, duration = call_llm(
            system_prompt,
            user_message,
            model_tier="deep",
            max_tokens=cfg.max_tokens,
            timeout=cfg.collaborator_timeout_seconds,
            temperature=temperature_for(fragment_type),
        )
    except Exception as exc:
        raise _fail(f"{pass_name} call failed: {exc}", exc) from exc
    if text is None:
        raise _fail(f"{pass_name} call returned no response")

    parsed = parse_json_response(text)
    if parsed is None:
        raise _fail(f"{pass_name} response was not JSON")
    try:
        value = get_kind(fragment_type).validate(parsed)
    except ValueError as exc:
        raise _fail(f"{pass_name} response failed validation: {exc}", exc) from exc
    logger.debug("[collaborator] %s window=%s ok in %.2fs", schema_id, window_index, duration)
    return value
