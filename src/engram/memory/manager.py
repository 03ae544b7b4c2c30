"""Memory engine: the single entry point for Engram's memory operations.

Wires the embedding cache, store, classifier, retrieval engine, context
assembler, decay scheduler and session buffers together behind one explicit
instance. Nothing is global; several engines can coexist in one process.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from engram.config import EngramConfig
from engram.errors import InvalidRecord
from engram.memory.classifier import DEFAULT_IMPORTANCE, classify, generate_summary
from engram.memory.context import ContextAssembler
from engram.memory.decay import DecayScheduler
from engram.memory.embeddings import (
    EmbeddingCache,
    EmbeddingProvider,
    cosine_similarity,
    create_embedding_provider,
)
from engram.memory.models import (
    DecayReport,
    MemoryContext,
    MemoryRecord,
    MemorySource,
    MemoryType,
    SearchResult,
)
from engram.memory.retrieval import RetrievalEngine
from engram.memory.session import Message, SessionMemory
from engram.memory.store import MemoryStore, SQLiteMemoryStore

logger = logging.getLogger(__name__)

# Default confidence of newly stored memories; informational only.
DEFAULT_CONFIDENCE = 0.8


class MemoryEngine:
    """Unified interface to Engram's long-term semantic memory.

    - store_memory(): classify, embed and persist a memory
    - search_memories(): hybrid-ranked retrieval for a query
    - build_context(): token-budgeted context block for a language model
    - run_decay_pass(): attenuate and deactivate stale memories

    Example:
        >>> from engram.config import EngramConfig
        >>> config = EngramConfig.load()
        >>> async with MemoryEngine(config) as engine:
        ...     memory_id = await engine.store_memory("u1", "I prefer dark mode")
        ...     context = await engine.build_context("u1", "what theme do I like")
    """

    def __init__(
        self,
        config: EngramConfig | None = None,
        provider: EmbeddingProvider | None = None,
        store: MemoryStore | None = None,
    ) -> None:
        """Initialize the engine and its components.

        Args:
            config: Engram configuration. Loaded from YAML/env when None.
            provider: Embedding provider override. Built from config if None.
            store: Memory store override. A SQLite store at config.db_path if None.
        """
        self._config = config or EngramConfig.load()

        self._owns_provider = provider is None
        self._provider = provider or create_embedding_provider(self._config.embedding)
        self._embeddings = EmbeddingCache(self._provider, max_size=self._config.embedding.cache_size)

        self._store: MemoryStore = store or SQLiteMemoryStore(
            self._config.db_path,
            embedding_dim=self._config.embedding.embedding_dim,
        )

        self._retrieval = RetrievalEngine(self._store, self._embeddings, self._config.retrieval)
        self._context = ContextAssembler(self._retrieval, self._store, self._config.context)
        self._decay = DecayScheduler(self._store, self._config.decay)
        self._session = SessionMemory(max_messages=self._config.session.max_messages)

        self._initialized = False

    async def initialize(self) -> None:
        """Open the store. Must be called before other methods."""
        if self._initialized:
            return

        await self._store.initialize()
        self._initialized = True
        logger.info("MemoryEngine initialization complete")

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("MemoryEngine not initialized. Call initialize() first.")

    @property
    def config(self) -> EngramConfig:
        """Active configuration."""
        return self._config

    @property
    def store(self) -> MemoryStore:
        """Underlying memory store."""
        return self._store

    @property
    def embeddings(self) -> EmbeddingCache:
        """Embedding cache in front of the provider."""
        return self._embeddings

    @property
    def retrieval(self) -> RetrievalEngine:
        """Retrieval engine."""
        return self._retrieval

    @property
    def decay(self) -> DecayScheduler:
        """Decay scheduler."""
        return self._decay

    # ===== Write path =====

    async def store_memory(
        self,
        user_id: str,
        content: str,
        type: MemoryType | str | None = None,
        source: MemorySource | str = MemorySource.CONVERSATION,
        importance: float | None = None,
        summary: str | None = None,
        context: MemoryContext | dict[str, Any] | None = None,
    ) -> str:
        """Classify, embed and persist a memory.

        Type and importance are proposed by the classifier unless given. An
        explicit type without an importance uses that type's default.

        Args:
            user_id: Owner of the memory.
            content: Memory text.
            type: Memory type override.
            source: How the memory came into existence.
            importance: Importance override in [0, 1].
            summary: Short description. Derived from content when None.
            context: Back-reference to the originating session/message.

        Returns:
            Id of the stored memory, or of the existing near-identical memory
            when store de-duplication is enabled.

        Raises:
            RuntimeError: If the engine is not initialized.
            InvalidRecord: If user_id/content is empty or a value is invalid.
            EmbeddingUnavailable: If no embedding could be produced; nothing is stored.
            StoreUnavailable: If the write fails.
        """
        self._check_initialized()

        if not user_id or not user_id.strip():
            raise InvalidRecord("user_id must not be empty")
        if not content or not content.strip():
            raise InvalidRecord("content must not be empty")

        try:
            memory_type = MemoryType(type) if type is not None else None
            memory_source = MemorySource(source)
        except ValueError as e:
            raise InvalidRecord(str(e)) from e

        classification = classify(content)
        if memory_type is None:
            memory_type = classification.type
            default_importance = classification.importance
        else:
            default_importance = DEFAULT_IMPORTANCE[memory_type]

        embedding = await self._embeddings.embed(content)

        threshold = self._config.store.dedup_threshold
        if threshold is not None:
            existing = await self._find_similar(user_id, embedding, threshold)
            if existing is not None:
                await self._store.touch(user_id, existing.id)
                logger.info(f"Memory for user {user_id} matches existing {existing.id}, not storing a duplicate")
                return existing.id

        if not isinstance(context, MemoryContext):
            context = MemoryContext.from_dict(context)

        record = MemoryRecord(
            user_id=user_id,
            content=content.strip(),
            type=memory_type,
            summary=summary.strip() if summary and summary.strip() else generate_summary(content),
            keywords=classification.keywords,
            embedding=embedding,
            importance=default_importance if importance is None else importance,
            confidence=DEFAULT_CONFIDENCE,
            source=memory_source,
            context=context,
        )
        await self._store.create(record)

        logger.info(f"Stored {memory_type.value} memory {record.id} for user {user_id}")
        return record.id

    async def _find_similar(self, user_id: str, embedding: list[float], threshold: float) -> MemoryRecord | None:
        best: MemoryRecord | None = None
        best_similarity = threshold
        for record in await self._store.get_active_by_user(user_id):
            similarity = cosine_similarity(embedding, record.embedding)
            if similarity >= best_similarity:
                best, best_similarity = record, similarity
        return best

    # ===== Read path =====

    async def search_memories(
        self,
        user_id: str,
        query_text: str,
        top_k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[SearchResult]:
        """Rank user_id's active memories against query_text.

        Never raises for embedding failures: results are then keyword-based
        and flagged ``degraded``.

        Raises:
            RuntimeError: If the engine is not initialized.
            StoreUnavailable: If the store cannot be read.
        """
        self._check_initialized()
        return await self._retrieval.search(user_id, query_text, top_k=top_k, min_similarity=min_similarity)

    async def build_context(
        self,
        user_id: str,
        query_text: str,
        session_history: Iterable[Message | dict[str, Any]] | None = None,
    ) -> str:
        """Assemble the memory context block for a prompt.

        Args:
            user_id: Owner whose memories are used.
            query_text: Current query.
            session_history: Recent turns. The engine's own session buffer for
                user_id is used when None.

        Returns:
            Formatted context; empty string when there is nothing to include.
        """
        self._check_initialized()
        if session_history is None:
            session_history = await self._session.get_messages(user_id)
        return await self._context.build_context(user_id, query_text, session_history)

    async def get_memory(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        """Fetch a single memory of user_id (active or not)."""
        self._check_initialized()
        return await self._store.get(user_id, memory_id)

    async def list_memories(self, user_id: str, include_inactive: bool = False) -> list[MemoryRecord]:
        """Memories of user_id, newest first."""
        self._check_initialized()
        return await self._store.list_by_user(user_id, include_inactive=include_inactive)

    async def flush(self) -> None:
        """Wait until pending access touches have been written."""
        await self._retrieval.tracker.flush()

    # ===== Maintenance =====

    async def run_decay_pass(self, user_id: str | None = None, now: float | None = None) -> DecayReport:
        """Run one decay pass over all users (or just user_id)."""
        self._check_initialized()
        return await self._decay.run_decay_pass(user_id=user_id, now=now)

    def start_decay(self, interval_seconds: float | None = None) -> None:
        """Run decay passes periodically in the background."""
        self._check_initialized()
        self._decay.start(interval_seconds)

    async def correct_type(self, user_id: str, memory_id: str, memory_type: MemoryType | str) -> bool:
        """Manually correct the type of a memory.

        Raises:
            InvalidRecord: If memory_type is not a known type.
        """
        self._check_initialized()
        return await self._store.update(user_id, memory_id, {"type": memory_type})

    async def boost_importance(self, user_id: str, memory_id: str, amount: float = 0.1) -> bool:
        """Explicit access-boost event: raise importance and record an access.

        Importance is capped at 1.0. The update is optimistic and is reported
        as not applied if the memory changed concurrently.

        Returns:
            True if the memory exists and was boosted.
        """
        self._check_initialized()
        record = await self._store.get(user_id, memory_id)
        if record is None:
            return False

        boosted = min(1.0, record.importance + amount)
        applied = await self._store.compare_and_update(
            user_id,
            memory_id,
            expected={"importance": record.importance},
            mutation={"importance": boosted},
        )
        if applied:
            await self._store.touch(user_id, memory_id)
            logger.debug(f"Boosted memory {memory_id} importance to {boosted:.2f}")
        return applied

    async def forget(self, user_id: str, memory_id: str) -> bool:
        """Logically delete a memory; it stays stored for audit and export."""
        self._check_initialized()
        return await self._store.set_active(user_id, memory_id, False)

    async def purge(self, user_id: str, memory_id: str) -> bool:
        """Physically delete a memory."""
        self._check_initialized()
        return await self._store.purge(user_id, memory_id)

    async def purge_inactive(self, user_id: str) -> int:
        """Physically delete every inactive memory of user_id."""
        self._check_initialized()
        return await self._store.purge_inactive(user_id)

    # ===== Session =====

    async def add_to_session(self, user_id: str, role: str, content: str) -> Message:
        """Append a conversation turn to user_id's session buffer.

        Raises:
            ValueError: If role is invalid or content is empty.
        """
        self._check_initialized()
        return await self._session.add_message(user_id, role, content)

    async def get_session_history(self, user_id: str, limit: int | None = None) -> list[Message]:
        """Session turns of user_id, oldest first."""
        self._check_initialized()
        return await self._session.get_messages(user_id, limit=limit)

    async def clear_session(self, user_id: str | None = None) -> None:
        """Clear one user's session buffer, or all of them."""
        self._check_initialized()
        await self._session.clear(user_id)

    # ===== Lifecycle =====

    async def close(self) -> None:
        """Stop background work and release resources."""
        await self._decay.stop()
        await self._retrieval.tracker.close()
        if self._owns_provider:
            await self._embeddings.close()
        await self._store.close()
        self._initialized = False
        logger.debug("MemoryEngine closed")

    async def __aenter__(self) -> MemoryEngine:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
