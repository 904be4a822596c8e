"""Central prompt-set API."""

from .registry import (
    DEFAULT_PROMPT_SET_ID,
    get_prompt,
    list_prompt_sets,
    register_prompt_set,
    reset_registry,
    set_active_prompt_set,
    validate_prompt_set_exists,
)

__all__ = [
    "DEFAULT_PROMPT_SET_ID",
    "get_prompt",
    "list_prompt_sets",
    "register_prompt_set",
    "reset_registry",
    "set_active_prompt_set",
    "validate_prompt_set_exists",
]
