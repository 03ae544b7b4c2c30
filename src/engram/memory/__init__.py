"""Engram Memory System - long-term semantic memory for conversational assistants.

Memories are classified, embedded and persisted per user, retrieved with a
hybrid score (similarity plus importance, recency, frequency and keyword
signals), packed into a token-budgeted context block, and slowly decayed
when they stop being used.

Classes:
    MemoryEngine: Unified interface to every memory operation
    EmbeddingCache: Bounded LRU cache in front of the embedding provider
    SQLiteMemoryStore: Persistent per-user record storage
    RetrievalEngine: Hybrid-scored search with a keyword fallback
    ContextAssembler: Three-tier, token-budgeted context builder
    DecayScheduler: Periodic importance decay and deactivation
    SessionMemory: In-memory recent conversation turns

Example:
    >>> from engram.config import EngramConfig
    >>> from engram.memory import MemoryEngine
    >>>
    >>> async with MemoryEngine(EngramConfig.load()) as engine:
    ...     await engine.store_memory("u1", "I prefer dark mode")
    ...     results = await engine.search_memories("u1", "what theme do I like")
    ...     context = await engine.build_context("u1", "what theme do I like")
"""

from __future__ import annotations

from engram.memory.classifier import Classification, classify, extract_keywords
from engram.memory.context import ContextAssembler
from engram.memory.decay import DecayScheduler
from engram.memory.embeddings import (
    EmbeddingCache,
    EmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    cosine_similarity,
    create_embedding_provider,
)
from engram.memory.manager import MemoryEngine
from engram.memory.models import (
    DecayReport,
    MemoryContext,
    MemoryRecord,
    MemorySource,
    MemoryType,
    SearchResult,
)
from engram.memory.retrieval import AccessTracker, RetrievalEngine
from engram.memory.session import Message, SessionMemory
from engram.memory.store import MemoryStore, SQLiteMemoryStore

__all__ = [
    "MemoryEngine",
    "MemoryRecord",
    "MemoryContext",
    "MemoryType",
    "MemorySource",
    "SearchResult",
    "DecayReport",
    "Classification",
    "classify",
    "extract_keywords",
    "EmbeddingCache",
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "cosine_similarity",
    "create_embedding_provider",
    "MemoryStore",
    "SQLiteMemoryStore",
    "RetrievalEngine",
    "AccessTracker",
    "ContextAssembler",
    "DecayScheduler",
    "SessionMemory",
    "Message",
]
