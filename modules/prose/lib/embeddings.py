"""Shared embedding utilities.

Manages an EmbeddingsProvider singleton and exposes batch embedding,
packing and similarity helpers.

Provider resolution order:
  1. MOCK_EMBEDDINGS=1 env            → MockEmbeddingsProvider
  2. Adapter provides embeddings       → adapter's provider
  3. Default                           → embeddings.provider from config
"""

import logging
import os
import struct
import threading
from typing import List, Optional, Sequence

from lib.errors import EmbeddingError
from lib.providers import (
    EMBED_MODES,
    EmbeddingsProvider,
    JinaEmbeddingsProvider,
    MockEmbeddingsProvider,
    OllamaEmbeddingsProvider,
)

logger = logging.getLogger(__name__)


# ── Provider singleton ────────────────────────────────────────────────

_provider: Optional[EmbeddingsProvider] = None
_provider_lock = threading.Lock()


def _provider_from_config() -> EmbeddingsProvider:
    from config import get_config
    from lib.adapter import get_adapter

    cfg = get_config().embeddings
    if cfg.provider == "mock":
        return MockEmbeddingsProvider()
    if cfg.provider == "ollama":
        url = os.environ.get("OLLAMA_URL") or cfg.url
        if "jina.ai" in url:
            url = "http://localhost:11434"
        return OllamaEmbeddingsProvider(url=url, model=cfg.model, dim=cfg.dimensions,
                                        timeout=cfg.timeout_seconds)
    if cfg.provider == "jina":
        return JinaEmbeddingsProvider(
            api_key=get_adapter().get_api_key(cfg.api_key_env) or "",
            model=cfg.model,
            dim=cfg.dimensions,
            url=cfg.url,
            timeout=cfg.timeout_seconds,
        )
    raise RuntimeError(
        f"Unsupported embeddings.provider={cfg.provider!r} (expected jina, ollama or mock)"
    )


def get_embeddings_provider() -> EmbeddingsProvider:
    """Get the current embeddings provider (auto-resolved on first call)."""
    global _provider
    if _provider is not None:
        return _provider
    with _provider_lock:
        if _provider is not None:
            return _provider

        if os.environ.get("MOCK_EMBEDDINGS"):
            _provider = MockEmbeddingsProvider()
            return _provider

        from lib.adapter import get_adapter
        adapter_embed = get_adapter().get_embeddings_provider()
        if adapter_embed is not None:
            _provider = adapter_embed
            return _provider

        _provider = _provider_from_config()
        return _provider


def set_embeddings_provider(provider: EmbeddingsProvider) -> None:
    """Override the embeddings provider (for tests)."""
    global _provider
    with _provider_lock:
        _provider = provider


def reset_embeddings_provider() -> None:
    """Reset to auto-detection (for tests / adapter reset)."""
    global _provider
    with _provider_lock:
        _provider = None


# ── Public API ────────────────────────────────────────────────────────

def _batch_size() -> int:
    try:
        from config import get_config
        return max(1, int(get_config().embeddings.batch_size))
    except Exception:
        return 16


def embed_texts(texts: Sequence[str], mode: str = "passage",
                batch_size: Optional[int] = None) -> List[List[float]]:
    """Embed texts in order-preserving batches.

    Raises EmbeddingError when the provider fails or returns a payload whose
    length or dimensionality does not line up with the input.
    """
    items = list(texts)
    if not items:
        return []
    if mode not in EMBED_MODES:
        raise ValueError(f"Unknown embedding mode: {mode!r}")
    try:
        provider = get_embeddings_provider()
    except Exception as exc:
        raise EmbeddingError(f"Embeddings provider unavailable: {exc}") from exc

    size = batch_size or _batch_size()
    vectors: List[List[float]] = []
    for start in range(0, len(items), size):
        batch = items[start:start + size]
        try:
            out = provider.embed(batch, mode=mode)
        except Exception as exc:
            logger.warning(
                "[embeddings] provider=%s batch_start=%d batch=%d failed: %s",
                provider.model_name, start, len(batch), exc,
            )
            raise EmbeddingError(f"Embedding batch failed: {exc}") from exc
        if len(out) != len(batch):
            raise EmbeddingError(
                f"Embedding provider returned {len(out)} vectors for {len(batch)} texts"
            )
        vectors.extend(list(v) for v in out)

    dims = {len(v) for v in vectors}
    if len(dims) > 1 or 0 in dims:
        raise EmbeddingError(f"Inconsistent embedding dimensions: {sorted(dims)}")
    return vectors


def embed_query(text: str) -> List[float]:
    """Embed a single search query."""
    return embed_texts([text], mode="query")[0]


def pack_embedding(embedding: List[float]) -> bytes:
    """Pack embedding as float32 binary blob."""
    return struct.pack(f'{len(embedding)}f', *embedding)


def unpack_embedding(blob: bytes) -> List[float]:
    """Unpack embedding from binary blob."""
    count = len(blob) // 4  # 4 bytes per float
    return list(struct.unpack(f'{count}f', blob))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-length vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a <= 0 or norm_b <= 0:
        return 0.0
    sim = dot / ((norm_a ** 0.5) * (norm_b ** 0.5))
    if sim != sim:  # NaN
        return 0.0
    return sim
