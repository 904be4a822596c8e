"""Shared path and endpoint resolution: single source of truth.

Consumers import from lib.config instead of joining paths themselves.

Environment variable overrides (for testing):
  PROSE_STORE_DIR      : overrides storage.projectsDir
  PROSE_EMBEDDINGS_DIR : overrides storage.embeddingsDir
  PROSE_LOG_SOURCE_DIR : overrides logSource.projectsDir (see lib.adapter)
"""

import os
import re
from pathlib import Path


def _get_cfg():
    """Lazy import to avoid circular dependency with config.py."""
    from config import get_config
    return get_config()


def _resolve(configured: str) -> Path:
    from lib.runtime_context import resolve_data_path
    return resolve_data_path(configured)


def sanitize_project_key(project: str) -> str:
    """Filesystem-safe project key (``/home/me/src/app`` -> ``-home-me-src-app``)."""
    return re.sub(r"[^A-Za-z0-9_-]", "-", str(project or "").strip()) or "default"


def get_projects_store_dir() -> Path:
    env_path = os.environ.get("PROSE_STORE_DIR")
    if env_path:
        return Path(env_path)
    return _resolve(_get_cfg().storage.projects_dir)


def get_embeddings_dir() -> Path:
    env_path = os.environ.get("PROSE_EMBEDDINGS_DIR")
    if env_path:
        return Path(env_path)
    return _resolve(_get_cfg().storage.embeddings_dir)


def get_design_dir() -> Path:
    return _resolve(_get_cfg().storage.design_dir)


def get_project_memory_path(project: str) -> Path:
    return get_projects_store_dir() / f"{sanitize_project_key(project)}.json"


def get_embedding_db_path(project: str) -> Path:
    return get_embeddings_dir() / f"{sanitize_project_key(project)}.db"


def get_log_source_dir() -> Path:
    from lib.runtime_context import get_log_source_dir as _source_dir
    return _source_dir()
