"""
Shared LLM client functions for fragment evolution.

Provides unified interfaces to:
- the reasoning provider (via adapter layer) with retry and deadline handling
- JSON response parsing with markdown fence stripping
- validation of parsed JSON against dataclass schemas

Model selection is config-driven via config/memory.json; callers pick a tier
('deep' or 'fast') without knowing which model or provider is behind it.
"""

import hashlib
import json
import logging
import os
import threading
import time
import urllib.error
from typing import Dict, List, Optional, Tuple

from lib.fail_policy import is_fail_hard_enabled
from lib.llm_pool import acquire_llm_slot
from lib.providers import LLMResult
from lib.runtime_context import get_llm_provider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60

# Retry config
_MAX_RETRIES = 2
_RETRY_BASE_DELAY = 1.0  # seconds, doubled each retry
_RETRYABLE_HTTP_CODES = {408, 429, 500, 502, 503, 504, 529}

# Token usage accumulator: reset per evolution run, read into the run summary
_usage_input_tokens: int = 0
_usage_output_tokens: int = 0
_usage_calls: int = 0
_usage_lock = threading.RLock()


def reset_token_usage() -> None:
    """Reset the per-run token usage counters."""
    global _usage_input_tokens, _usage_output_tokens, _usage_calls
    with _usage_lock:
        _usage_input_tokens = 0
        _usage_output_tokens = 0
        _usage_calls = 0


def get_token_usage() -> Dict[str, int]:
    """Return accumulated token usage for this run."""
    with _usage_lock:
        return {
            "input_tokens": _usage_input_tokens,
            "output_tokens": _usage_output_tokens,
            "api_calls": _usage_calls,
        }


def _track_usage(result: LLMResult) -> None:
    global _usage_input_tokens, _usage_output_tokens, _usage_calls
    with _usage_lock:
        _usage_input_tokens += int(result.input_tokens or 0)
        _usage_output_tokens += int(result.output_tokens or 0)
        _usage_calls += 1


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code in _RETRYABLE_HTTP_CODES
    return isinstance(exc, (TimeoutError, ConnectionError, urllib.error.URLError))


def call_llm(system_prompt: str, user_message: str,
             model_tier: str = "deep",
             max_tokens: int = 4000,
             timeout: float = DEFAULT_TIMEOUT,
             temperature: Optional[float] = None,
             max_retries: Optional[int] = None) -> Tuple[Optional[str], float]:
    """Call the configured LLM provider and return (response text, duration).

    Retries transient errors with exponential backoff, all inside one
    deadline of ``timeout`` seconds (slot wait included). Returns
    (None, duration) on persistent errors unless failHard is enabled.

    Set PROSE_DISABLE_LLM=1 to disable all LLM calls (returns None immediately).
    """
    if os.environ.get("PROSE_DISABLE_LLM"):
        return (None, 0.0)

    tier = model_tier if model_tier in ("deep", "fast") else "deep"
    try:
        from config import get_config
        max_tokens = min(max_tokens, get_config().models.max_output(tier))
    except Exception:
        max_tokens = min(max_tokens, 16384)

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_message},
    ]
    llm = get_llm_provider(model_tier=tier)
    provider_name = llm.__class__.__name__

    start_time = time.time()
    deadline = None if timeout is None else start_time + max(0.0, float(timeout))
    retries = _MAX_RETRIES if max_retries is None else max_retries
    last_error: Optional[BaseException] = None

    for attempt in range(retries + 1):
        try:
            remaining = None if deadline is None else deadline - time.time()
            if remaining is not None and remaining <= 0:
                raise TimeoutError("LLM deadline exhausted before provider call")
            with acquire_llm_slot(timeout_seconds=remaining):
                call_timeout = remaining if deadline is None else deadline - time.time()
                if call_timeout is not None and call_timeout <= 0:
                    raise TimeoutError("LLM deadline exhausted while waiting for worker slot")
                result = llm.llm_call(messages, tier, max_tokens, call_timeout, temperature)
            _track_usage(result)
            if result.truncated:
                logger.warning("[llm_clients] Response truncated (max_tokens) for model=%s", result.model)
            if result.text is None:
                raise RuntimeError(
                    f"No response from provider (provider={provider_name}, tier={tier}, model={result.model})"
                )
            return result.text, result.duration
        except Exception as e:
            last_error = e
            if _is_retryable(e) and attempt < retries:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                if deadline is not None:
                    remaining = deadline - time.time()
                    if remaining <= 0:
                        break
                    delay = min(delay, remaining)
                logger.warning(
                    "[llm_clients] Retryable error (%s), attempt %s/%s, retrying in %.1fs",
                    getattr(e, "code", type(e).__name__),
                    attempt + 1,
                    retries + 1,
                    delay,
                )
                time.sleep(delay)
                continue
            break

    duration = time.time() - start_time
    logger.error("[llm_clients] LLM error: %s", last_error)
    if is_fail_hard_enabled():
        err_type = type(last_error).__name__ if last_error is not None else "UnknownError"
        raise RuntimeError(
            "LLM call failed after retries while failHard is enabled "
            f"(provider={provider_name}, tier={tier}, error_type={err_type}, error={last_error})."
        ) from last_error
    logger.warning(
        "[llm_clients][FALLBACK] Returning None after LLM failure because failHard is disabled."
    )
    return None, duration


def parse_json_response(text: Optional[str]) -> Optional[object]:
    """Strip markdown fences and parse JSON from an LLM response.

    Handles responses wrapped in ```json ... ``` blocks as well as bare JSON.
    Returns parsed JSON (dict or list) or None on failure.
    """
    if not text:
        return None

    cleaned = text.strip()
    if not cleaned:
        return None
    parse_errors = []

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        parse_errors.append(f"direct parse failed at line {e.lineno}, col {e.colno}: {e.msg}")

    if "```" in cleaned:
        for part in cleaned.split("```"):
            candidate = part.strip()
            if candidate.startswith("json"):
                candidate = candidate[4:].strip()
            if candidate and candidate[0] in "{[":
                try:
                    return json.loads(candidate)
                except json.JSONDecodeError as e:
                    parse_errors.append(f"fenced parse failed at line {e.lineno}, col {e.colno}: {e.msg}")

    # Last resort: find first { or [ and try to parse from there
    for start_char, end_char in [("{", "}"), ("[", "]")]:
        start_idx = cleaned.find(start_char)
        end_idx = cleaned.rfind(end_char)
        if start_idx != -1 and end_idx > start_idx:
            try:
                return json.loads(cleaned[start_idx:end_idx + 1])
            except json.JSONDecodeError as e:
                parse_errors.append(
                    f"substring parse ({start_char}...{end_char}) failed at line {e.lineno}, col {e.colno}: {e.msg}"
                )

    content_hash = hashlib.sha256(cleaned.encode("utf-8")).hexdigest()[:16]
    logger.warning(
        "[llm_clients] parse_json_response failed: %s; content_len=%d; content_sha256_prefix=%s",
        "; ".join(parse_errors[:3]),
        len(cleaned),
        content_hash,
    )
    return None


def validate_llm_output(parsed: object, schema_class: type) -> List:
    """Validate parsed LLM JSON output against a dataclass schema.

    Args:
        parsed: The parsed JSON (a list of objects, or a single object)
        schema_class: The dataclass to validate against (e.g. DecisionEntry)

    Returns:
        List of validated dataclass instances. Invalid items are skipped with
        a warning.
    """
    if parsed is None:
        return []

    items = parsed if isinstance(parsed, list) else [parsed]
    field_names = set(schema_class.__dataclass_fields__.keys())
    results = []

    for item in items:
        if not isinstance(item, dict):
            continue
        mapped = {}
        dropped_keys = []
        for k, v in item.items():
            k_lower = str(k).lower().replace("-", "_")
            if k_lower in field_names:
                mapped[k_lower] = v
            else:
                dropped_keys.append(k)
        if dropped_keys:
            logger.debug(
                "[llm_clients] dropping unknown keys %s for schema %s",
                dropped_keys,
                schema_class.__name__,
            )
        if not mapped:
            logger.warning(
                "[llm_clients] Validation warning: no recognized keys for schema %s (keys=%s)",
                schema_class.__name__,
                list(item.keys()),
            )
            continue
        try:
            results.append(schema_class(**mapped))
        except (TypeError, ValueError) as e:
            logger.warning(
                "[llm_clients] Validation warning: %s for schema %s", e, schema_class.__name__
            )

    return results
