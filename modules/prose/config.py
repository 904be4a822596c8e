"""
Configuration loader for the prose memory pipeline

Loads settings from <prose_home>/config/memory.json
Falls back to sensible defaults if config is missing.
"""

import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from lib.runtime_context import get_workspace_dir
logger = logging.getLogger(__name__)


def _coerce_positive_int(raw: Any, default: int) -> int:
    """Return a positive int; fallback to default for invalid values."""
    try:
        return max(1, int(raw))
    except (TypeError, ValueError):
        return default


def _coerce_positive_float(raw: Any, default: float) -> float:
    """Return a positive float; fallback to default for invalid values."""
    try:
        value = float(raw)
        return value if value > 0 else default
    except (TypeError, ValueError):
        return default


def _coerce_unit_float(raw: Any, default: float) -> float:
    """Return a float clamped to [0, 1]; fallback to default for invalid values."""
    try:
        return min(1.0, max(0.0, float(raw)))
    except (TypeError, ValueError):
        return default


def _workspace_root() -> Path:
    """Get workspace root from runtime context."""
    return get_workspace_dir()


def _config_paths() -> list:
    """Config file search paths (in priority order)."""
    root = _workspace_root()
    return [
        root / "config" / "memory.json",
        Path("./memory-config.json"),
    ]


def _default_code_extensions() -> List[str]:
    return [".py", ".ts", ".tsx", ".js", ".jsx", ".rs", ".go"]


def _default_code_exclude() -> List[str]:
    return ["node_modules", ".git", "dist", "build", "__pycache__", ".venv", "venv"]


@dataclass
class AdapterConfig:
    type: str = "standalone"


@dataclass
class ModelConfig:
    llm_provider: str = "openai-compatible"   # "anthropic" or "openai-compatible"
    deep_reasoning: str = "google/gemini-3-flash-preview"
    fast_reasoning: str = "google/gemini-3-flash-preview"
    deep_reasoning_max_output: int = 16384
    fast_reasoning_max_output: int = 8192
    api_key_env: str = "OPENROUTER_API_KEY"
    base_url: str = "https://openrouter.ai/api"

    def max_output(self, tier: str) -> int:
        """Get max output tokens for a model tier ('deep' or 'fast')."""
        if tier == 'deep':
            return self.deep_reasoning_max_output
        return self.fast_reasoning_max_output


@dataclass
class EmbeddingsConfig:
    provider: str = "jina"   # jina | ollama | mock
    model: str = "jina-embeddings-v4"
    dimensions: int = 512
    url: str = "https://api.jina.ai/v1/embeddings"
    api_key_env: str = "JINA_API_KEY"
    batch_size: int = 16
    timeout_seconds: float = 60.0


@dataclass
class LogSourceConfig:
    projects_dir: str = "~/.claude/projects"


@dataclass
class EvolutionConfig:
    window_messages: int = 500          # Max events per vertical window
    horizontal_window: int = 3          # Snapshots considered per horizontal pass
    collaborator_timeout_seconds: float = 60.0
    max_workers: int = 4                # Fragment-type fan-out width
    llm_workers: int = 4                # Global LLM concurrency gate
    temperature: float = 0.3
    narrative_temperature: float = 0.5
    max_tokens: int = 4000
    fail_hard: bool = False


@dataclass
class RetrievalConfig:
    similarity_threshold: float = 0.6   # Cosine floor for vector-scored entries
    keyword_per_term_minimum: int = 10  # Every term must at least substring-match
    vector_min_terms: int = 3
    recency_max_bonus: float = 10.0
    default_limit: int = 10
    max_limit: int = 50


@dataclass
class CodeIndexConfig:
    extensions: List[str] = field(default_factory=_default_code_extensions)
    exclude: List[str] = field(default_factory=_default_code_exclude)
    max_chunk_lines: int = 120


@dataclass
class StorageConfig:
    projects_dir: str = "data/projects"
    embeddings_dir: str = "data/embeddings"
    design_dir: str = "data/design"


@dataclass
class MemoryConfig:
    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    log_source: LogSourceConfig = field(default_factory=LogSourceConfig)
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    code_index: CodeIndexConfig = field(default_factory=CodeIndexConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    prompt_set: str = "default"


# Global config instance
_config: Optional[MemoryConfig] = None
_config_loading: bool = False  # Re-entrancy guard (load_config -> adapter -> get_config)
_config_lock = threading.RLock()
_warned_unknown_config_keys: set[str] = set()

_KNOWN_TOP_LEVEL_CONFIG_KEYS = {
    "adapter",
    "models",
    "embeddings",
    "log_source",
    "evolution",
    "retrieval",
    "code_index",
    "storage",
    "prompt_set",
}

_KNOWN_MODELS_KEYS = {
    "llm_provider",
    "deep_reasoning",
    "fast_reasoning",
    "deep_reasoning_max_output",
    "fast_reasoning_max_output",
    "api_key_env",
    "base_url",
}

_KNOWN_EVOLUTION_KEYS = {
    "window_messages",
    "horizontal_window",
    "collaborator_timeout_seconds",
    "max_workers",
    "llm_workers",
    "temperature",
    "narrative_temperature",
    "max_tokens",
    "fail_hard",
}

_KNOWN_RETRIEVAL_KEYS = {
    "similarity_threshold",
    "keyword_per_term_minimum",
    "vector_min_terms",
    "recency_max_bonus",
    "default_limit",
    "max_limit",
}


def _warn_unknown_keys(section: str, data: Any, known_keys: set[str]) -> None:
    if not isinstance(data, dict):
        return
    for key in data.keys():
        token = f"{section}.{key}" if section else str(key)
        if key in known_keys:
            continue
        if token in _warned_unknown_config_keys:
            continue
        _warned_unknown_config_keys.add(token)
        if not os.environ.get("PROSE_QUIET"):
            print(f"[config] Unknown config key ignored: {token}", file=sys.stderr)


def _camel_to_snake(camel_str: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(camel_str):
        if char.isupper() and i > 0:
            result.append('_')
        result.append(char.lower())
    return ''.join(result)


def _load_nested(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert camelCase keys to snake_case recursively."""
    result = {}
    for key, value in data.items():
        snake_key = _camel_to_snake(key)
        if isinstance(value, dict):
            result[snake_key] = _load_nested(value)
        else:
            result[snake_key] = value
    return result


def _coerce_list_field(value: Any, *, field_name: str, default: Optional[List[Any]] = None) -> List[Any]:
    """Normalize list-like config fields from raw JSON."""
    fallback = list(default or [])
    if value is None:
        return fallback
    if isinstance(value, list):
        return [str(v) for v in value]
    logger.warning(
        "Invalid type for %s (expected list, got %s); using default",
        field_name,
        type(value).__name__,
    )
    return fallback


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config_data.get(name, {})
    return value if isinstance(value, dict) else {}


def load_config() -> MemoryConfig:
    """Load configuration from file or use defaults."""
    global _config, _config_loading

    with _config_lock:
        if _config is not None:
            return _config

        # Adapter resolution can call back into get_config(); break the cycle
        # on the same thread with defaults.
        if _config_loading:
            return MemoryConfig()

        _config_loading = True
        try:
            return _load_config_inner()
        finally:
            _config_loading = False


def _load_config_inner() -> MemoryConfig:
    """Inner config loader (called with re-entrancy guard held)."""
    global _config

    raw_config: Dict[str, Any] = {}

    for config_path in _config_paths():
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    raw_config = json.load(f)
                if not os.environ.get("PROSE_QUIET"):
                    print(f"[config] Loaded from {config_path}", file=sys.stderr)
                break
            except json.JSONDecodeError as e:
                print(f"[config] Failed to parse {config_path}: {e}", file=sys.stderr)
            except OSError as e:
                print(f"[config] Failed to read {config_path}: {e}", file=sys.stderr)

    if not raw_config and not os.environ.get("PROSE_QUIET"):
        print("[config] Using defaults (no config file found)", file=sys.stderr)
    if not isinstance(raw_config, dict):
        print("[config] Config root must be an object; using defaults", file=sys.stderr)
        raw_config = {}

    config_data = _load_nested(raw_config)
    _warn_unknown_keys("", config_data, _KNOWN_TOP_LEVEL_CONFIG_KEYS)
    _warn_unknown_keys("models", config_data.get("models", {}), _KNOWN_MODELS_KEYS)
    _warn_unknown_keys("evolution", config_data.get("evolution", {}), _KNOWN_EVOLUTION_KEYS)
    _warn_unknown_keys("retrieval", config_data.get("retrieval", {}), _KNOWN_RETRIEVAL_KEYS)

    adapter_data = config_data.get('adapter', {})
    if isinstance(adapter_data, str):
        adapter_data = {"type": adapter_data}
    adapter = AdapterConfig(
        type=str(adapter_data.get('type', 'standalone')).strip().lower(),
    )

    models_data = _section(config_data, 'models')
    defaults = ModelConfig()
    models = ModelConfig(
        llm_provider=str(models_data.get('llm_provider', defaults.llm_provider)).strip().lower(),
        deep_reasoning=str(models_data.get('deep_reasoning', defaults.deep_reasoning)),
        fast_reasoning=str(models_data.get('fast_reasoning', defaults.fast_reasoning)),
        deep_reasoning_max_output=_coerce_positive_int(
            models_data.get('deep_reasoning_max_output'), defaults.deep_reasoning_max_output),
        fast_reasoning_max_output=_coerce_positive_int(
            models_data.get('fast_reasoning_max_output'), defaults.fast_reasoning_max_output),
        api_key_env=str(models_data.get('api_key_env', defaults.api_key_env)),
        base_url=str(models_data.get('base_url', defaults.base_url)),
    )

    embed_data = _section(config_data, 'embeddings')
    embed_defaults = EmbeddingsConfig()
    embeddings = EmbeddingsConfig(
        provider=str(embed_data.get('provider', embed_defaults.provider)).strip().lower(),
        model=str(embed_data.get('model', embed_defaults.model)),
        dimensions=_coerce_positive_int(embed_data.get('dimensions'), embed_defaults.dimensions),
        url=str(embed_data.get('url', embed_defaults.url)),
        api_key_env=str(embed_data.get('api_key_env', embed_defaults.api_key_env)),
        batch_size=_coerce_positive_int(embed_data.get('batch_size'), embed_defaults.batch_size),
        timeout_seconds=_coerce_positive_float(
            embed_data.get('timeout_seconds'), embed_defaults.timeout_seconds),
    )

    source_data = _section(config_data, 'log_source')
    log_source = LogSourceConfig(
        projects_dir=str(source_data.get('projects_dir', LogSourceConfig.projects_dir)),
    )

    evo_data = _section(config_data, 'evolution')
    evo_defaults = EvolutionConfig()
    evolution = EvolutionConfig(
        window_messages=_coerce_positive_int(evo_data.get('window_messages'), evo_defaults.window_messages),
        horizontal_window=_coerce_positive_int(evo_data.get('horizontal_window'), evo_defaults.horizontal_window),
        collaborator_timeout_seconds=_coerce_positive_float(
            evo_data.get('collaborator_timeout_seconds'), evo_defaults.collaborator_timeout_seconds),
        max_workers=_coerce_positive_int(evo_data.get('max_workers'), evo_defaults.max_workers),
        llm_workers=_coerce_positive_int(evo_data.get('llm_workers'), evo_defaults.llm_workers),
        temperature=_coerce_unit_float(evo_data.get('temperature'), evo_defaults.temperature),
        narrative_temperature=_coerce_unit_float(
            evo_data.get('narrative_temperature'), evo_defaults.narrative_temperature),
        max_tokens=_coerce_positive_int(evo_data.get('max_tokens'), evo_defaults.max_tokens),
        fail_hard=bool(evo_data.get('fail_hard', evo_defaults.fail_hard)),
    )

    ret_data = _section(config_data, 'retrieval')
    ret_defaults = RetrievalConfig()
    retrieval = RetrievalConfig(
        similarity_threshold=_coerce_unit_float(
            ret_data.get('similarity_threshold'), ret_defaults.similarity_threshold),
        keyword_per_term_minimum=_coerce_positive_int(
            ret_data.get('keyword_per_term_minimum'), ret_defaults.keyword_per_term_minimum),
        vector_min_terms=_coerce_positive_int(ret_data.get('vector_min_terms'), ret_defaults.vector_min_terms),
        recency_max_bonus=float(ret_data.get('recency_max_bonus', ret_defaults.recency_max_bonus)),
        default_limit=_coerce_positive_int(ret_data.get('default_limit'), ret_defaults.default_limit),
        max_limit=_coerce_positive_int(ret_data.get('max_limit'), ret_defaults.max_limit),
    )
    if retrieval.default_limit > retrieval.max_limit:
        logger.warning(
            "retrieval.default_limit=%s exceeds max_limit=%s; clamping",
            retrieval.default_limit,
            retrieval.max_limit,
        )
        retrieval.default_limit = retrieval.max_limit

    code_data = _section(config_data, 'code_index')
    code_index = CodeIndexConfig(
        extensions=_coerce_list_field(
            code_data.get('extensions'), field_name="codeIndex.extensions",
            default=_default_code_extensions()),
        exclude=_coerce_list_field(
            code_data.get('exclude'), field_name="codeIndex.exclude",
            default=_default_code_exclude()),
        max_chunk_lines=_coerce_positive_int(code_data.get('max_chunk_lines'), CodeIndexConfig.max_chunk_lines),
    )

    storage_data = _section(config_data, 'storage')
    storage = StorageConfig(
        projects_dir=str(storage_data.get('projects_dir', StorageConfig.projects_dir)),
        embeddings_dir=str(storage_data.get('embeddings_dir', StorageConfig.embeddings_dir)),
        design_dir=str(storage_data.get('design_dir', StorageConfig.design_dir)),
    )

    raw_prompt_set = config_data.get("prompt_set", "default")
    prompt_set = str(raw_prompt_set or "").strip() or "default"

    candidate = MemoryConfig(
        adapter=adapter,
        models=models,
        embeddings=embeddings,
        log_source=log_source,
        evolution=evolution,
        retrieval=retrieval,
        code_index=code_index,
        storage=storage,
        prompt_set=prompt_set,
    )

    # Fail fast on unknown prompt sets to keep prompt-family swaps explicit.
    from prompt_sets import set_active_prompt_set

    set_active_prompt_set(candidate.prompt_set)

    _config = candidate
    return _config


def get_config() -> MemoryConfig:
    """Get the loaded config (loads on first call)."""
    return load_config()


def reload_config() -> MemoryConfig:
    """Force reload configuration from file."""
    global _config, _config_loading
    from prompt_sets import reset_registry

    with _config_lock:
        _config = None
        _config_loading = False
        _warned_unknown_config_keys.clear()
        reset_registry()
        return load_config()


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    with _config_lock:
        _config = None
        _warned_unknown_config_keys.clear()
