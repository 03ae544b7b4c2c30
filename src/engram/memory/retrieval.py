"""Ranked memory retrieval.

Scores a user's active memories against a query with a hybrid of cosine
similarity and auxiliary signals (effective importance, recency, access
frequency, keyword overlap). Falls back to keyword overlap when no query
embedding can be produced, so a search always yields a result set.
"""

from __future__ import annotations

import asyncio
import logging
import time

from engram.config import RetrievalConfig
from engram.errors import EmbeddingUnavailable, StoreUnavailable
from engram.memory.classifier import extract_keywords, tokenize
from engram.memory.embeddings import EmbeddingCache, cosine_similarity
from engram.memory.models import MemoryRecord, SearchResult
from engram.memory.store import MemoryStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def recency_boost(last_accessed_at: float | None, now: float, half_life_days: float) -> float:
    """Exponential falloff in [0, 1]; halves every half_life_days since last access."""
    if last_accessed_at is None:
        return 0.0
    elapsed_days = max(0.0, now - last_accessed_at) / SECONDS_PER_DAY
    return 0.5 ** (elapsed_days / half_life_days)


def frequency_boost(access_count: int, saturation: float) -> float:
    """Saturating access-frequency signal in [0, 1)."""
    count = max(0, access_count)
    return count / (count + saturation)


def keyword_match(query_keywords: list[str], record_keywords: list[str]) -> float:
    """Fraction of query keywords present in the record's keywords."""
    if not query_keywords:
        return 0.0
    record_set = set(record_keywords)
    return sum(1 for kw in query_keywords if kw in record_set) / len(query_keywords)


def query_terms(query_text: str) -> list[str]:
    """Keywords of a query, falling back to plain tokens for stopword-only queries."""
    terms = extract_keywords(query_text)
    if not terms:
        terms = list(dict.fromkeys(t for t in tokenize(query_text) if len(t) > 2))
    return terms


def _rank_key(result: SearchResult) -> tuple[float, float, str]:
    return (-result.score, -(result.record.ranking_accessed_at or 0.0), result.record.id)


class AccessTracker:
    """Applies retrieval hits (access count / last access time) off the read path.

    Hits are queued and written by a background task. A failed write is
    retried with capped exponential backoff until the store accepts it, so
    every queued hit is applied at least once. The queue holds at most
    max_pending hits; hits arriving while it is full are dropped, logged and
    counted in ``dropped``.
    """

    def __init__(
        self,
        store: MemoryStore,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 30.0,
        max_pending: int = 10000,
    ) -> None:
        if max_pending <= 0:
            raise ValueError("max_pending must be positive")
        self._store = store
        self._max_pending = max_pending
        self.dropped = 0
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._queue: asyncio.Queue[tuple[str, str, float]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def record_hits(self, user_id: str, memory_ids: list[str], accessed_at: float | None = None) -> None:
        """Queue one touch per memory id. Never blocks."""
        if not memory_ids:
            return
        accessed_at = time.time() if accessed_at is None else accessed_at
        queue = self._ensure_worker()
        for i, memory_id in enumerate(memory_ids):
            try:
                queue.put_nowait((user_id, memory_id, accessed_at))
            except asyncio.QueueFull:
                lost = memory_ids[i:]
                self.dropped += len(lost)
                logger.warning(
                    f"Touch queue full ({self._max_pending} pending), dropping {len(lost)} "
                    f"touches for user {user_id}: {', '.join(lost)}"
                )
                return

    def _ensure_worker(self) -> asyncio.Queue[tuple[str, str, float]]:
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            if self._queue is not None and not self._queue.empty():
                self.dropped += self._queue.qsize()
                logger.warning(f"Dropping {self._queue.qsize()} touches queued on a previous event loop")
            self._queue = asyncio.Queue(maxsize=self._max_pending)
            self._loop = loop
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(self._queue), name="engram-access-tracker")
        return self._queue

    async def _run(self, queue: asyncio.Queue[tuple[str, str, float]]) -> None:
        while True:
            user_id, memory_id, accessed_at = await queue.get()
            try:
                await self._apply(user_id, memory_id, accessed_at)
            finally:
                queue.task_done()

    async def _apply(self, user_id: str, memory_id: str, accessed_at: float) -> None:
        delay = self._retry_base
        while True:
            try:
                await self._store.touch(user_id, memory_id, accessed_at)
                return
            except StoreUnavailable as e:
                logger.warning(f"Touch of memory {memory_id} failed ({e}); retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._retry_max)
            except Exception as e:
                logger.error(f"Touch of memory {memory_id} failed permanently: {e}")
                return

    @property
    def pending(self) -> int:
        """Touches queued but not yet applied."""
        return self._queue.qsize() if self._queue is not None else 0

    async def flush(self, timeout: float | None = None) -> None:
        """Wait until every queued touch has been applied."""
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def close(self, timeout: float | None = 5.0) -> None:
        """Drain pending touches (bounded by timeout) and stop the worker."""
        try:
            await self.flush(timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Stopping access tracker with {self.pending} touches still pending")

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


class RetrievalEngine:
    """Hybrid-scored search over a user's active memories.

    Example:
        >>> engine = RetrievalEngine(store, embeddings, RetrievalConfig())
        >>> results = await engine.search("u1", "what theme do I like", top_k=5)
        >>> [r.record.content for r in results]
        ['I prefer dark mode']
    """

    def __init__(
        self,
        store: MemoryStore,
        embeddings: EmbeddingCache,
        config: RetrievalConfig | None = None,
        tracker: AccessTracker | None = None,
    ) -> None:
        """Initialize the retrieval engine.

        Args:
            store: Memory store providing candidate records.
            embeddings: Embedding cache producing query vectors.
            config: Retrieval configuration. If None, uses defaults.
            tracker: Background applier for access touches. Created from
                config when None.
        """
        self._store = store
        self._embeddings = embeddings
        self._config = config or RetrievalConfig()
        self._tracker = tracker or AccessTracker(
            store,
            retry_base_seconds=self._config.touch_retry_base_seconds,
            retry_max_seconds=self._config.touch_retry_max_seconds,
            max_pending=self._config.touch_queue_size,
        )

    @property
    def tracker(self) -> AccessTracker:
        """Background applier for access touches."""
        return self._tracker

    async def search(
        self,
        user_id: str,
        query_text: str,
        top_k: int | None = None,
        min_similarity: float | None = None,
        now: float | None = None,
    ) -> list[SearchResult]:
        """Rank user_id's active memories against query_text.

        Args:
            user_id: Owner whose memories are searched.
            query_text: Free-text query.
            top_k: Maximum results. Uses config default if None.
            min_similarity: Minimum raw cosine similarity. Uses config default if None.
            now: Reference time for recency (defaults to the current time).

        Returns:
            Results sorted by descending score. When no query embedding could
            be produced, keyword-overlap results flagged ``degraded``.

        Raises:
            StoreUnavailable: If candidate records cannot be read.
        """
        if not query_text or not query_text.strip():
            return []

        top_k = self._config.top_k if top_k is None else top_k
        min_similarity = self._config.min_similarity if min_similarity is None else min_similarity
        now = time.time() if now is None else now

        try:
            query_vector = await asyncio.wait_for(
                self._embeddings.embed(query_text),
                timeout=self._config.embed_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Query embedding timed out after {self._config.embed_timeout_seconds}s, using keyword search"
            )
            return await self.keyword_search(user_id, query_text, top_k=top_k, now=now)
        except EmbeddingUnavailable as e:
            logger.warning(f"Query embedding unavailable, using keyword search: {e}")
            return await self.keyword_search(user_id, query_text, top_k=top_k, now=now)

        candidates = await self._candidates(user_id)
        terms = query_terms(query_text)
        weights = self._config.weights

        results: list[SearchResult] = []
        for record in candidates:
            similarity = cosine_similarity(query_vector, record.embedding)
            if similarity < min_similarity:
                continue

            importance = record.effective_importance
            # Settled access state keeps back-to-back searches in the same order
            recency = recency_boost(record.ranking_accessed_at, now, self._config.recency_half_life_days)
            frequency = frequency_boost(record.ranking_access_count, self._config.frequency_saturation)
            keyword = keyword_match(terms, record.keywords)

            score = (
                similarity * weights.similarity
                + importance * weights.importance
                + recency * weights.recency
                + frequency * weights.frequency
                + keyword * weights.keyword
            )
            results.append(
                SearchResult(
                    record=record,
                    score=score,
                    similarity=similarity,
                    importance_boost=importance,
                    recency_boost=recency,
                    frequency_boost=frequency,
                    keyword_boost=keyword,
                )
            )

        results.sort(key=_rank_key)
        ranked = results[:top_k]

        for r in ranked[:5]:
            logger.debug(f"{r} keywords={r.record.keywords}")

        self._tracker.record_hits(user_id, [r.record.id for r in ranked], accessed_at=now)
        return ranked

    async def keyword_search(
        self,
        user_id: str,
        query_text: str,
        top_k: int | None = None,
        now: float | None = None,
    ) -> list[SearchResult]:
        """Degraded search scored purely by query-term overlap.

        A term counts as matched when it is one of the record's keywords or a
        substring of its content. Records matching nothing are excluded.
        """
        top_k = self._config.top_k if top_k is None else top_k
        terms = query_terms(query_text)
        if not terms:
            return []

        candidates = await self._candidates(user_id)

        results: list[SearchResult] = []
        for record in candidates:
            keywords = set(record.keywords)
            content = record.content.lower()
            matched = sum(1 for term in terms if term in keywords or term in content)
            if matched == 0:
                continue
            overlap = matched / len(terms)
            results.append(SearchResult(record=record, score=overlap, keyword_boost=overlap, degraded=True))

        results.sort(key=_rank_key)
        ranked = results[:top_k]

        self._tracker.record_hits(user_id, [r.record.id for r in ranked], accessed_at=now)
        return ranked

    async def _candidates(self, user_id: str) -> list[MemoryRecord]:
        records = await self._store.get_active_by_user(user_id)
        # The store contract already filters; re-check so a faulty backend cannot leak
        return [r for r in records if r.is_active and r.user_id == user_id]
