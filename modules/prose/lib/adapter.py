"""Host adapter layer: decouples the pipeline from where it runs.

Provides an abstract interface that prose modules call for:
- Path resolution (home dir, data dir, config dir, log-source dir)
- Credentials (API key lookup)
- Providers (reasoning LLM, embeddings)

StandaloneAdapter works anywhere (~/.claude-prose/). Tests use TestAdapter
together with set_adapter() / reset_adapter() for isolation.

Adapter selection (get_adapter()):
1. config/memory.json adapter type  (required)
"""

import abc
import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from lib.fail_policy import is_fail_hard_enabled

if TYPE_CHECKING:
    from lib.providers import EmbeddingsProvider, LLMProvider

logger = logging.getLogger(__name__)


class ProseAdapter(abc.ABC):
    """Abstract interface for host-specific behavior."""

    # ---- Paths ----

    @abc.abstractmethod
    def prose_home(self) -> Path:
        """Root directory for all prose data (config, data, logs)."""
        ...

    def data_dir(self) -> Path:
        return self.prose_home() / "data"

    def config_dir(self) -> Path:
        return self.prose_home() / "config"

    def log_source_dir(self) -> Path:
        """Directory whose subdirectories hold per-project session logs."""
        env = os.environ.get("PROSE_LOG_SOURCE_DIR", "").strip()
        if env:
            return Path(env).expanduser()
        from config import get_config
        return Path(get_config().log_source.projects_dir).expanduser()

    def resolve_path(self, configured: str) -> Path:
        """Resolve a config path relative to the prose home."""
        p = Path(configured).expanduser()
        return p if p.is_absolute() else self.prose_home() / p

    # ---- Credentials ----

    @abc.abstractmethod
    def get_api_key(self, env_var_name: str) -> Optional[str]:
        """Retrieve an API key by environment variable name."""
        ...

    # ---- Providers ----

    @abc.abstractmethod
    def get_llm_provider(self, model_tier: Optional[str] = None) -> "LLMProvider":
        ...

    def get_embeddings_provider(self) -> Optional["EmbeddingsProvider"]:
        """Adapter-supplied embeddings provider, or None to use config."""
        return None


def read_env_file(env_file: Path, var_name: str) -> Optional[str]:
    """Read ``VAR=value`` from a dotenv-style file."""
    try:
        with open(env_file, "r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if not stripped or stripped.startswith("#") or "=" not in stripped:
                    continue
                key, _, value = stripped.partition("=")
                if key.strip() == var_name:
                    return value.strip().strip('"').strip("'") or None
    except OSError as exc:
        logger.warning("Failed reading %s for %s: %s", env_file, var_name, exc)
    return None


class StandaloneAdapter(ProseAdapter):
    """Default adapter.

    - Home dir: PROSE_HOME env or ~/.claude-prose/
    - Credentials: env var, then .env file in prose home (unless failHard)
    - LLM: provider named by models.llmProvider
    """

    def __init__(self, home: Optional[Path] = None):
        self._home = home

    def prose_home(self) -> Path:
        if self._home is not None:
            return Path(self._home)
        env = os.environ.get("PROSE_HOME", "").strip()
        return Path(env).expanduser() if env else Path.home() / ".claude-prose"

    def get_api_key(self, env_var_name: str) -> Optional[str]:
        key = os.environ.get(env_var_name, "").strip()
        if key:
            return key
        if is_fail_hard_enabled():
            return None
        env_file = self.prose_home() / ".env"
        if env_file.exists():
            found = read_env_file(env_file, env_var_name)
            if found:
                logger.warning("[adapter][FALLBACK] Loaded %s from %s.", env_var_name, env_file)
                return found
        return None

    def get_llm_provider(self, model_tier: Optional[str] = None):
        from config import get_config
        from lib.providers import AnthropicLLMProvider, OpenAICompatibleLLMProvider

        cfg = get_config().models
        api_key = self.get_api_key(cfg.api_key_env) or ""
        if cfg.llm_provider == "anthropic":
            return AnthropicLLMProvider(
                api_key=api_key,
                deep_model=cfg.deep_reasoning,
                fast_model=cfg.fast_reasoning,
                base_url=cfg.base_url if "anthropic" in cfg.base_url else "",
            )
        if cfg.llm_provider in ("openai-compatible", "openrouter", "openai"):
            return OpenAICompatibleLLMProvider(
                base_url=cfg.base_url,
                api_key=api_key,
                deep_model=cfg.deep_reasoning,
                fast_model=cfg.fast_reasoning,
            )
        raise RuntimeError(
            f"Unsupported models.llmProvider={cfg.llm_provider!r} "
            "(expected 'anthropic' or 'openai-compatible')"
        )


class TestAdapter(StandaloneAdapter):
    """Test adapter with canned LLM responses and call recording.

    Usage in tests::

        adapter = TestAdapter(tmp_path)
        set_adapter(adapter)
        # ... code under test calls get_adapter().get_llm_provider() ...
        assert len(adapter.llm_calls) == 4
    """
    __test__ = False  # Not a pytest test class

    def __init__(self, home: Path, responses: Optional[Dict] = None,
                 log_source: Optional[Path] = None):
        super().__init__(home=home)
        from lib.providers import MockEmbeddingsProvider, TestLLMProvider
        self._llm = TestLLMProvider(responses)
        self._embeddings = MockEmbeddingsProvider()
        self._log_source = log_source

    def log_source_dir(self) -> Path:
        if self._log_source is not None:
            return Path(self._log_source)
        return self.prose_home() / "logs"

    def get_llm_provider(self, model_tier: Optional[str] = None):
        return self._llm

    def get_embeddings_provider(self):
        return self._embeddings

    @property
    def llm(self):
        return self._llm

    @property
    def embeddings(self):
        return self._embeddings

    @property
    def llm_calls(self) -> list:
        return self._llm.calls


# ---------------------------------------------------------------------------
# Singleton management
# ---------------------------------------------------------------------------

_adapter: Optional[ProseAdapter] = None
_adapter_lock = threading.Lock()


def _adapter_config_paths() -> List[Path]:
    """Candidate config files for adapter selection (priority order)."""
    paths: List[Path] = []
    prose_home = os.environ.get("PROSE_HOME", "").strip()
    if prose_home:
        paths.append(Path(prose_home).expanduser() / "config" / "memory.json")
    paths.append(Path.home() / ".claude-prose" / "config" / "memory.json")
    paths.append(Path.cwd() / "memory-config.json")

    seen = set()
    unique: List[Path] = []
    for p in paths:
        if str(p) not in seen:
            seen.add(str(p))
            unique.append(p)
    return unique


def _read_adapter_type_from_config() -> str:
    """Read adapter type from config file; standalone when none exists.

    Accepted formats:
      {"adapter": "standalone"}
      {"adapter": {"type": "standalone"}}
    """
    for cfg_path in _adapter_config_paths():
        if not cfg_path.exists():
            continue
        try:
            with open(cfg_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise RuntimeError(f"Failed to read adapter config from {cfg_path}: {e}") from e

        adapter_cfg = data.get("adapter") if isinstance(data, dict) else None
        if adapter_cfg is None:
            return "standalone"
        if isinstance(adapter_cfg, str):
            kind = adapter_cfg.strip().lower()
        elif isinstance(adapter_cfg, dict):
            kind = str(adapter_cfg.get("type") or "").strip().lower()
        else:
            kind = ""
        if kind == "standalone":
            return kind
        raise RuntimeError(
            f"Config {cfg_path} must set adapter type to 'standalone' (found: {adapter_cfg!r})."
        )
    return "standalone"


def get_adapter() -> ProseAdapter:
    """Get the current adapter (resolved on first call)."""
    global _adapter
    if _adapter is not None:
        return _adapter
    with _adapter_lock:
        if _adapter is not None:
            return _adapter
        _read_adapter_type_from_config()
        _adapter = StandaloneAdapter()
        return _adapter


def set_adapter(adapter: ProseAdapter) -> None:
    """Override the adapter (for tests)."""
    global _adapter
    with _adapter_lock:
        _adapter = adapter


def reset_adapter() -> None:
    """Reset adapter resolution state (for tests).

    Also clears cached config and providers so they re-resolve against the
    next adapter.
    """
    global _adapter
    with _adapter_lock:
        _adapter = None
    from config import reset_config
    from lib.embeddings import reset_embeddings_provider
    from lib.llm_pool import reset_llm_pool

    reset_config()
    reset_embeddings_provider()
    reset_llm_pool()
