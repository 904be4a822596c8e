"""Runtime context port for path/provider access.

This isolates direct adapter access behind a single module so ingest,
datastore and evolution code does not import adapter internals directly.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, TYPE_CHECKING

from lib.adapter import get_adapter

if TYPE_CHECKING:
    from lib.adapter import ProseAdapter
    from lib.providers import LLMProvider


def get_adapter_instance() -> "ProseAdapter":
    return get_adapter()


def get_workspace_dir() -> Path:
    return get_adapter().prose_home()


def get_data_dir() -> Path:
    return get_adapter().data_dir()


def get_log_source_dir() -> Path:
    return get_adapter().log_source_dir()


def resolve_data_path(configured: str) -> Path:
    return get_adapter().resolve_path(configured)


def get_llm_provider(model_tier: Optional[str] = None) -> "LLMProvider":
    return get_adapter().get_llm_provider(model_tier=model_tier)
