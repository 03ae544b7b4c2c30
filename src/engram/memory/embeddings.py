"""Embedding providers and the bounded embedding cache.

The external embedding service is consumed as a black box returning one
fixed-length vector per string. Every failure mode of that service is
reported as ``EmbeddingUnavailable``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
from collections import OrderedDict
from typing import Any, Protocol, Sequence

import httpx
import numpy as np

from engram.config import EmbeddingConfig, EmbeddingProviderName
from engram.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Canonical form used for cache keys."""
    return _WHITESPACE_RE.sub(" ", text.strip().lower())


def cache_key(text: str) -> str:
    """SHA-256 hex digest of the normalized text."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 when either vector has zero magnitude or the lengths differ.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    # Clamp floating point overshoot
    return max(-1.0, min(1.0, sim))


class EmbeddingProvider(Protocol):
    """Protocol for external text -> vector services."""

    async def embed(self, text: str) -> list[float]:
        """Return the embedding for *text*."""
        ...

    async def close(self) -> None:
        """Release HTTP resources."""
        ...


class _HTTPEmbeddingProvider:
    """Shared httpx plumbing for the concrete providers."""

    def __init__(
        self,
        model: str,
        embedding_dim: int | None,
        timeout: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.embedding_dim = embedding_dim
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> Any:
        try:
            response = await self._http_client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise EmbeddingUnavailable(f"Failed to generate embedding: {e}") from e
        except ValueError as e:
            raise EmbeddingUnavailable(f"Embedding service returned invalid JSON: {e}") from e

    def _validate(self, vector: Any) -> list[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingUnavailable("Embedding service returned an empty vector")
        try:
            values = [float(x) for x in vector]
        except (TypeError, ValueError) as e:
            raise EmbeddingUnavailable(f"Embedding contains non-numeric values: {e}") from e
        if self.embedding_dim is not None and len(values) != self.embedding_dim:
            raise EmbeddingUnavailable(
                f"Unexpected embedding dimensionality: {len(values)} (expected {self.embedding_dim})"
            )
        return values

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client:
            await self._http_client.aclose()


class OllamaEmbeddingProvider(_HTTPEmbeddingProvider):
    """Local embeddings served by Ollama's ``/api/embeddings`` endpoint."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        embedding_dim: int | None = 768,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(model, embedding_dim, timeout, http_client)
        self.host = host.rstrip("/")

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding using Ollama.

        Raises:
            EmbeddingUnavailable: If the request fails or the response is malformed.
        """
        data = await self._post(
            f"{self.host}/api/embeddings",
            {"model": self.model, "prompt": text},
        )
        if not isinstance(data, dict) or "embedding" not in data:
            raise EmbeddingUnavailable(f"Unexpected Ollama response: {data}")
        return self._validate(data["embedding"])


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """Hosted embeddings from an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "text-embedding-3-small",
        embedding_dim: int | None = 1536,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(model, embedding_dim, timeout, http_client)
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding using the OpenAI embeddings API.

        Raises:
            EmbeddingUnavailable: If the request fails or the response is malformed.
        """
        if not self._api_key:
            raise EmbeddingUnavailable("No API key configured for the OpenAI embedding provider")

        data = await self._post(
            f"{self.base_url}/embeddings",
            {"input": text, "model": self.model, "encoding_format": "float"},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingUnavailable("Invalid embedding response format") from e
        return self._validate(vector)


def create_embedding_provider(
    config: EmbeddingConfig,
    http_client: httpx.AsyncClient | None = None,
) -> EmbeddingProvider:
    """Build the provider selected in *config*."""
    if config.provider == EmbeddingProviderName.OLLAMA:
        return OllamaEmbeddingProvider(
            host=config.host,
            model=config.model,
            embedding_dim=config.embedding_dim,
            timeout=config.timeout_seconds,
            http_client=http_client,
        )
    return OpenAIEmbeddingProvider(
        api_key=config.api_key,
        base_url=config.base_url,
        model=config.model,
        embedding_dim=config.embedding_dim,
        timeout=config.timeout_seconds,
        http_client=http_client,
    )


class EmbeddingCache:
    """Bounded LRU cache in front of an embedding provider.

    Keys are hashes of the normalized text. Concurrent misses for the same key
    share a single provider call, which keeps running when any one caller is
    cancelled or times out. Vectors are cached as immutable tuples and
    only after the provider call has completed.

    Example:
        >>> cache = EmbeddingCache(provider, max_size=100)
        >>> vector = await cache.embed("I prefer dark mode")
    """

    def __init__(self, provider: EmbeddingProvider, max_size: int = 100) -> None:
        """Initialize the cache.

        Args:
            provider: External embedding service.
            max_size: Maximum number of cached vectors.
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._provider = provider
        self._max_size = max_size
        self._entries: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: dict[str, asyncio.Task[tuple[float, ...]]] = {}
        self.hits = 0
        self.misses = 0

    async def embed(self, text: str) -> list[float]:
        """Return the embedding for *text*, calling the provider on a miss.

        Raises:
            ValueError: If text is empty.
            EmbeddingUnavailable: If the provider fails.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        key = cache_key(text)
        cached = self._get(key)
        if cached is not None:
            return list(cached)

        loop = asyncio.get_running_loop()
        task = self._inflight.get(key)
        if task is None or task.done() or task.get_loop() is not loop:
            self.misses += 1
            task = loop.create_task(self._fetch(key, text), name=f"engram-embed-{key[:12]}")
            self._inflight[key] = task
            task.add_done_callback(self._finish)

        # Shielded so one caller giving up does not cancel the fetch for the others
        return list(await asyncio.shield(task))

    async def _fetch(self, key: str, text: str) -> tuple[float, ...]:
        try:
            vector = tuple(await self._provider.embed(text))
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            # Provider errors are opaque to the engine
            raise EmbeddingUnavailable(f"Embedding provider failed: {e}") from e
        self._put(key, vector)
        return vector

    def _finish(self, task: asyncio.Task[tuple[float, ...]]) -> None:
        for key, pending in list(self._inflight.items()):
            if pending is task:
                del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved so a failure without waiters is not logged as unhandled
            task.exception()

    def _get(self, key: str) -> tuple[float, ...] | None:
        with self._lock:
            vector = self._entries.get(key)
            if vector is not None:
                self._entries.move_to_end(key)
                self.hits += 1
            return vector

    def _put(self, key: str, vector: tuple[float, ...]) -> None:
        with self._lock:
            self._entries[key] = vector
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted embedding {evicted[:12]} from cache")

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return cache_key(text) in self._entries

    def clear(self) -> None:
        """Drop every cached vector."""
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        """Number of cached vectors."""
        with self._lock:
            return len(self._entries)

    @property
    def max_size(self) -> int:
        """Configured capacity."""
        return self._max_size

    async def close(self) -> None:
        """Cancel in-flight requests and close the underlying provider."""
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        await self._provider.close()
