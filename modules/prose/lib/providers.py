"""Provider ABCs and concrete implementations for LLM and embeddings.

Providers are the lowest-level abstraction for calling models. Adapters
produce providers from config, but providers also work standalone.

Concrete providers shipped:

  LLM:
    AnthropicLLMProvider       : Anthropic Messages API (API key)
    OpenAICompatibleLLMProvider: any /v1/chat/completions API (OpenRouter default)
    TestLLMProvider            : canned responses for tests

  Embeddings:
    JinaEmbeddingsProvider  : Jina embeddings API with query/passage tasks
    OllamaEmbeddingsProvider: HTTP call to local Ollama instance
    MockEmbeddingsProvider  : deterministic MD5 vectors for tests
"""

import abc
import hashlib
import json
import logging
import re
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# Dataclasses
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class LLMResult:
    """Result from an LLM call."""
    text: Optional[str]
    duration: float
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    truncated: bool = False


EMBED_MODES = ("query", "passage")


# ═══════════════════════════════════════════════════════════════════════
# LLM Provider ABC
# ═══════════════════════════════════════════════════════════════════════

class LLMProvider(abc.ABC):
    """Abstract LLM provider. Produced by adapters or standalone."""

    @abc.abstractmethod
    def llm_call(self, messages: list, model_tier: str = "deep",
                 max_tokens: int = 4000, timeout: float = 60,
                 temperature: Optional[float] = None) -> LLMResult:
        """Make an LLM call.

        Args:
            messages: List of dicts with 'role' and 'content' keys.
                      Roles: 'system', 'user'.
            model_tier: 'deep' (quality/slow) or 'fast' (cheap/fast).
            max_tokens: Maximum output tokens.
            timeout: Request timeout in seconds.
            temperature: Sampling temperature; provider default when None.

        Returns:
            LLMResult with response text and usage metadata.
        """
        ...

    @abc.abstractmethod
    def get_profiles(self) -> dict:
        """Return model profiles for each tier."""
        ...


def _split_messages(messages: list):
    system_prompt = ""
    user_message = ""
    for m in messages:
        if m["role"] == "system":
            system_prompt = m["content"]
        elif m["role"] == "user":
            user_message = m["content"]
    return system_prompt, user_message


def _post_json(url: str, body: dict, headers: Dict[str, str], timeout: float) -> object:
    req = urllib.request.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


# ═══════════════════════════════════════════════════════════════════════
# Embeddings Provider ABC
# ═══════════════════════════════════════════════════════════════════════

class EmbeddingsProvider(abc.ABC):
    """Abstract batch embeddings provider.

    ``embed`` is order-preserving: the i-th vector belongs to the i-th text.
    Implementations raise on transport or payload failure; callers wrap that
    into EmbeddingError.
    """

    @abc.abstractmethod
    def embed(self, texts: List[str], mode: str = "passage") -> List[List[float]]:
        ...

    @abc.abstractmethod
    def dimension(self) -> int:
        """Return the embedding vector dimension."""
        ...

    @property
    @abc.abstractmethod
    def model_name(self) -> str:
        """Return the model name used for embeddings."""
        ...


# ═══════════════════════════════════════════════════════════════════════
# Concrete LLM Providers
# ═══════════════════════════════════════════════════════════════════════

class AnthropicLLMProvider(LLMProvider):
    """Calls the Anthropic Messages API directly with an API key.

    Supports prompt caching via cache_control on the system block; the
    fragment instructions are stable across windows, so they cache well.
    """

    ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_VERSION = "2023-06-01"

    def __init__(self, api_key: str = "",
                 deep_model: str = "claude-sonnet-4-5",
                 fast_model: str = "claude-haiku-4-5",
                 base_url: str = ""):
        self._api_key = api_key
        self._deep_model = deep_model
        self._fast_model = fast_model
        self._base_url = base_url or self.ANTHROPIC_API_URL

    def _resolve_model(self, model_tier: str) -> str:
        if model_tier == "fast" and self._fast_model:
            return self._fast_model
        return self._deep_model

    def llm_call(self, messages, model_tier="deep",
                 max_tokens=4000, timeout=60, temperature=None):
        model = self._resolve_model(model_tier)
        system_prompt, user_message = _split_messages(messages)

        body = {
            "model": model,
            "max_tokens": max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": [{"role": "user", "content": user_message}],
        }
        if temperature is not None:
            body["temperature"] = float(temperature)
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self.ANTHROPIC_VERSION,
        }

        start_time = time.time()
        try:
            data = _post_json(self._base_url, body, headers, timeout)
        except Exception as e:
            logger.error("Anthropic API error: %s", e)
            raise
        duration = time.time() - start_time
        if not isinstance(data, dict):
            raise RuntimeError(
                f"Anthropic API returned non-object JSON for model={model}: {type(data).__name__}"
            )

        usage = data.get("usage", {})
        if not isinstance(usage, dict):
            usage = {}
        content_blocks = data.get("content", [])
        if not isinstance(content_blocks, list):
            raise RuntimeError(
                f"Anthropic API returned invalid content payload for model={model}"
            )
        text_parts = [
            b["text"]
            for b in content_blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        return LLMResult(
            text="\n".join(text_parts).strip(),
            duration=duration,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            model=data.get("model", model),
            truncated=data.get("stop_reason", "") == "max_tokens",
        )

    def get_profiles(self):
        return {
            "deep": {"model": self._deep_model, "available": bool(self._api_key)},
            "fast": {"model": self._fast_model, "available": bool(self._api_key)},
        }


class OpenAICompatibleLLMProvider(LLMProvider):
    """Calls any OpenAI-compatible API (OpenRouter, vLLM, LiteLLM, etc.)."""

    def __init__(self, base_url: str = "https://openrouter.ai/api",
                 api_key: str = "",
                 deep_model: str = "", fast_model: str = ""):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._deep_model = deep_model
        self._fast_model = fast_model or deep_model

    def _resolve_model(self, model_tier: str) -> str:
        if model_tier == "fast" and self._fast_model:
            return self._fast_model
        return self._deep_model

    def llm_call(self, messages, model_tier="deep",
                 max_tokens=4000, timeout=60, temperature=None):
        model = self._resolve_model(model_tier)
        payload = {
            "model": model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "max_tokens": max_tokens,
            "temperature": 0.0 if temperature is None else float(temperature),
            "response_format": {"type": "json_object"},
        }
        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        t0 = time.time()
        data = _post_json(f"{self._base_url}/v1/chat/completions", payload, headers, timeout)
        elapsed = time.time() - t0

        if not isinstance(data, dict):
            raise RuntimeError(f"OpenAI-compatible response must be a JSON object, got {type(data).__name__}")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise RuntimeError("OpenAI-compatible response missing non-empty choices array")
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first, dict) else {}
        content = message.get("content") if isinstance(message, dict) else None
        if content is None:
            raise RuntimeError("OpenAI-compatible response missing choices[0].message.content")
        # Strip thinking tags (Qwen3 and similar models)
        text = re.sub(r"<think>[\s\S]*?</think>\s*", "", str(content)).strip()
        usage = data.get("usage", {}) if isinstance(data.get("usage"), dict) else {}
        return LLMResult(
            text=text,
            duration=elapsed,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=model,
            truncated=first.get("finish_reason") == "length",
        )

    def get_profiles(self):
        return {
            "deep": {"model": self._deep_model, "available": bool(self._api_key)},
            "fast": {"model": self._fast_model, "available": bool(self._api_key)},
        }


CannedResponse = Union[str, BaseException, Callable[[list], str]]


class TestLLMProvider(LLMProvider):
    """Canned responses and call recording for tests.

    ``responses`` maps a routing key to a reply. A key matches when it equals
    the model tier or appears in the system prompt (so ``"DECISIONS"`` routes
    the decisions prompt). A reply may be a string, an exception instance
    (raised) or a callable receiving the messages.
    """
    __test__ = False  # Not a pytest test class

    def __init__(self, responses: Optional[Dict[str, CannedResponse]] = None):
        self.calls: List[dict] = []
        self._responses = dict(responses or {})
        self._default_response = "{}"

    def set_response(self, key: str, reply: CannedResponse) -> None:
        self._responses[key] = reply

    def _route(self, messages: list, model_tier: str) -> CannedResponse:
        system_prompt, _ = _split_messages(messages)
        for key, reply in self._responses.items():
            if key == model_tier or key in system_prompt:
                return reply
        return self._default_response

    def llm_call(self, messages, model_tier="deep",
                 max_tokens=4000, timeout=60, temperature=None):
        self.calls.append({
            "messages": messages,
            "model_tier": model_tier,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        reply = self._route(messages, model_tier)
        if isinstance(reply, BaseException):
            raise reply
        text = reply(messages) if callable(reply) else reply
        return LLMResult(
            text=text,
            duration=0.01,
            input_tokens=100,
            output_tokens=50,
            model=f"test-{model_tier}",
        )

    def get_profiles(self):
        return {
            "deep": {"model": "test-deep", "available": True},
            "fast": {"model": "test-fast", "available": True},
        }


# ═══════════════════════════════════════════════════════════════════════
# Concrete Embeddings Providers
# ═══════════════════════════════════════════════════════════════════════

class JinaEmbeddingsProvider(EmbeddingsProvider):
    """Jina embeddings API; ``mode`` selects the retrieval.query/passage task."""

    JINA_API_URL = "https://api.jina.ai/v1/embeddings"

    def __init__(self, api_key: str = "", model: str = "jina-embeddings-v4",
                 dim: int = 512, url: str = "", timeout: float = 60.0):
        self._api_key = api_key
        self._model = model
        self._dim = dim
        self._url = url or self.JINA_API_URL
        self._timeout = timeout

    def embed(self, texts, mode="passage"):
        if not texts:
            return []
        if mode not in EMBED_MODES:
            raise ValueError(f"Unknown embedding mode: {mode!r}")
        if not self._api_key:
            raise RuntimeError("Jina embeddings require an API key")
        body = {
            "model": self._model,
            "task": f"retrieval.{mode}",
            "dimensions": self._dim,
            "input": list(texts),
        }
        data = _post_json(self._url, body, {"Authorization": f"Bearer {self._api_key}"}, self._timeout)
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list) or len(rows) != len(texts):
            raise RuntimeError(
                f"Jina returned {len(rows) if isinstance(rows, list) else 'no'} embeddings "
                f"for {len(texts)} inputs"
            )
        ordered = sorted(rows, key=lambda r: int(r.get("index", 0)))
        return [list(map(float, r["embedding"])) for r in ordered]

    def dimension(self):
        return self._dim

    @property
    def model_name(self):
        return self._model


class OllamaEmbeddingsProvider(EmbeddingsProvider):
    """Generates embeddings via a local Ollama instance (mode is ignored)."""

    def __init__(self, url: str = "http://localhost:11434",
                 model: str = "nomic-embed-text", dim: int = 768,
                 timeout: float = 60.0):
        self._url = url.rstrip("/")
        self._model = model
        self._dim = dim
        self._timeout = timeout

    def embed(self, texts, mode="passage"):
        if not texts:
            return []
        retries = 1
        last_error: Optional[BaseException] = None
        for attempt in range(retries + 1):
            try:
                result = _post_json(
                    f"{self._url}/api/embed",
                    {"model": self._model, "input": list(texts), "keep_alive": -1},
                    {},
                    self._timeout,
                )
                embeddings = result.get("embeddings", []) if isinstance(result, dict) else []
                if len(embeddings) != len(texts):
                    raise RuntimeError(
                        f"Ollama returned {len(embeddings)} embeddings for {len(texts)} inputs"
                    )
                return embeddings
            except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
                last_error = e
                if attempt < retries:
                    time.sleep(0.2 * (2 ** attempt))
                    continue
        logger.error(
            "Ollama embeddings call failed model=%s url=%s batch=%d error=%s",
            self._model,
            self._url,
            len(texts),
            last_error,
        )
        raise RuntimeError(f"Ollama embeddings failed: {last_error}") from last_error

    def dimension(self):
        return self._dim

    @property
    def model_name(self):
        return self._model


class MockEmbeddingsProvider(EmbeddingsProvider):
    """Deterministic MD5-based embeddings for testing. Returns 128-dim vectors."""

    def __init__(self):
        self.calls: List[dict] = []

    def _vector(self, text: str) -> List[float]:
        h = hashlib.md5(text.encode()).digest()
        raw = [float(b) / 255.0 for b in h] * 8  # 16 bytes * 8 = 128-dim
        magnitude = sum(x * x for x in raw) ** 0.5
        return [x / magnitude for x in raw] if magnitude > 0 else raw

    def embed(self, texts, mode="passage"):
        self.calls.append({"texts": list(texts), "mode": mode})
        return [self._vector(t) for t in texts]

    def dimension(self):
        return 128

    @property
    def model_name(self):
        return "mock-md5"
