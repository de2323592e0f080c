"""
Embedding providers backed by HTTP APIs, and per-user provider resolution.

- openai: any OpenAI-compatible /v1/embeddings endpoint (httpx)
- ollama: a local Ollama server's /api/embed endpoint (requests)
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

import httpx
import requests

from ..errors import EmbeddingAPIError, ProviderNotConfigured
from ..settings_store import (
    AI_API_KEY,
    AI_BASE_URL,
    AI_EMBEDDING_MODEL,
    AI_EMBEDDING_PROVIDER,
    mask_value,
)
from .base import EmbeddingProvider, ProviderRegistry, get_registry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
OLLAMA_DEFAULT_URL = "http://localhost:11434"


def _bounded_timeout(timeout: Optional[float], default: float) -> float:
    """The smaller of the caller's budget and the provider's own limit."""
    if timeout is None:
        return default
    return min(timeout, default)


def _close_provider(provider: EmbeddingProvider) -> None:
    close = getattr(provider, "close", None)
    if close is not None:
        close()


def _to_vector(raw: object) -> list[float]:
    if not isinstance(raw, list) or not raw:
        raise EmbeddingAPIError("embedding is empty or not a list")
    try:
        return [float(x) for x in raw]
    except (TypeError, ValueError) as e:
        raise EmbeddingAPIError(f"embedding contains non-numeric values: {e}") from e


class OpenAICompatibleEmbedding:
    """
    Embedding provider for OpenAI-compatible APIs.

    Posts {"input": text, "model": model} to {base_url}/v1/embeddings with
    a bearer token and returns the first embedding of the response.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com",
        request_timeout: float = DEFAULT_TIMEOUT,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        base = base_url.rstrip("/")
        # Accept base URLs given with or without the /v1 suffix
        if base.endswith("/v1"):
            base = base[:-3]
        self.model_name = model
        self._base_url = base
        self._request_timeout = request_timeout
        self._client = httpx.Client(
            base_url=base,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=request_timeout,
        )

    def embed(self, text: str, *, timeout: Optional[float] = None) -> list[float]:
        """Generate an embedding for one text."""
        try:
            resp = self._client.post(
                "/v1/embeddings",
                json={"input": text, "model": self.model_name},
                timeout=_bounded_timeout(timeout, self._request_timeout),
            )
        except httpx.TimeoutException as e:
            raise EmbeddingAPIError(f"Embedding request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise EmbeddingAPIError(f"Failed to send embedding request: {e}") from e

        if resp.status_code != 200:
            logger.error(
                "Embedding API error: status=%d, url=%s/v1/embeddings, response=%s",
                resp.status_code, self._base_url, resp.text[:500],
            )
            raise EmbeddingAPIError(
                f"API returned status {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json().get("data") or []
        except (ValueError, AttributeError) as e:
            raise EmbeddingAPIError(f"Failed to decode embedding response: {e}") from e
        if not data:
            raise EmbeddingAPIError("No embedding data in response")
        return _to_vector(data[0].get("embedding"))

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


def ollama_base_url(base_url: Optional[str] = None) -> str:
    """Resolve the Ollama URL from an explicit value, OLLAMA_HOST, or the default."""
    url = base_url or os.environ.get("OLLAMA_HOST") or OLLAMA_DEFAULT_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        request_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model_name = model
        self.base_url = ollama_base_url(base_url)
        self._request_timeout = request_timeout
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def embed(self, text: str, *, timeout: Optional[float] = None) -> list[float]:
        """Generate an embedding using Ollama."""
        read_timeout = _bounded_timeout(timeout, self._request_timeout)
        try:
            response = requests.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model_name, "input": text},
                headers=self._headers,
                timeout=(min(5.0, read_timeout), read_timeout),  # (connect, read)
            )
        except requests.RequestException as e:
            raise EmbeddingAPIError(
                f"Cannot reach Ollama at {self.base_url}: {e}"
            ) from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise EmbeddingAPIError(
                f"Ollama embedding failed (model={self.model_name}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}",
                status_code=response.status_code,
            )

        embeddings = response.json().get("embeddings") or []
        if not embeddings:
            raise EmbeddingAPIError("No embedding data in Ollama response")
        return _to_vector(embeddings[0])


# -----------------------------------------------------------------------------
# Per-user resolution
# -----------------------------------------------------------------------------

class UserEmbeddingResolver:
    """
    Builds each user's embedding provider from their AI settings.

    One provider is cached per user. When the user's settings change, the
    old provider is closed and replaced.
    """

    def __init__(
        self,
        settings,
        registry: Optional[ProviderRegistry] = None,
        *,
        request_timeout: float = DEFAULT_TIMEOUT,
    ):
        self._settings = settings
        self._registry = registry or get_registry()
        self._request_timeout = request_timeout
        # user_id -> (settings it was built from, provider)
        self._cache: dict[str, tuple[tuple, EmbeddingProvider]] = {}
        self._lock = threading.Lock()

    def __call__(self, user_id: str) -> EmbeddingProvider:
        """
        Return the embedding provider configured for user_id.

        Raises:
            ProviderNotConfigured: If required settings are missing or invalid
            ConfigUnavailable: If settings cannot be read
        """
        name, _ = self._settings.get_string(user_id, AI_EMBEDDING_PROVIDER)
        name = name or "openai"
        base_url, _ = self._settings.get_string(user_id, AI_BASE_URL)
        api_key, _ = self._settings.get_string(user_id, AI_API_KEY)
        model, _ = self._settings.get_string(user_id, AI_EMBEDDING_MODEL)

        if not model:
            raise ProviderNotConfigured("Embedding model not configured")
        if name == "openai":
            if not api_key:
                raise ProviderNotConfigured("AI API key not configured")
            if not base_url:
                raise ProviderNotConfigured("AI base URL not configured")

        logger.debug(
            "Embedding config for user %s: provider=%s, baseURL=%s, model=%s, apiKey=%s",
            user_id, name, base_url, model, mask_value(api_key),
        )

        key = (name, base_url, api_key, model)
        with self._lock:
            cached = self._cache.get(user_id)
            if cached is not None:
                if cached[0] == key:
                    return cached[1]
                del self._cache[user_id]
                _close_provider(cached[1])
            params: dict = {"model": model, "request_timeout": self._request_timeout}
            if base_url:
                params["base_url"] = base_url
            if api_key:
                params["api_key"] = api_key
            try:
                provider = self._registry.create_embedding(name, params)
            except (ValueError, RuntimeError) as e:
                raise ProviderNotConfigured(str(e)) from e
            self._cache[user_id] = (key, provider)
            return provider

    def close(self) -> None:
        """Close any cached providers that hold connections."""
        with self._lock:
            for _, provider in self._cache.values():
                _close_provider(provider)
            self._cache.clear()

    def cached_users(self) -> list[str]:
        with self._lock:
            return sorted(self._cache)


# Register providers
_registry = get_registry()
_registry.register_embedding("openai", OpenAICompatibleEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
