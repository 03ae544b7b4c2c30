"""Data model shared by every memory component.

Records are plain dataclasses so they can be handed to callers, fakes and the
store without any serialization layer in between.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Self


class MemoryType(str, Enum):
    """Closed set of memory categories."""
    PERSONAL = "personal"
    PREFERENCE = "preference"
    PROFESSIONAL = "professional"
    GOAL = "goal"
    INSTRUCTION = "instruction"
    KNOWLEDGE = "knowledge"
    RELATIONSHIP = "relationship"
    EVENT = "event"


class MemorySource(str, Enum):
    """How a memory came into existence."""
    EXPLICIT = "explicit"
    CONVERSATION = "conversation"
    EXTRACTION = "extraction"


@dataclass
class MemoryContext:
    """Back-reference to the session/message a memory was derived from."""

    session_id: str | None = None
    message_id: str | None = None
    timestamp: float | None = None
    conversation_topic: str | None = None
    related_memories: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "session_id": self.session_id,
            "message_id": self.message_id,
            "timestamp": self.timestamp,
            "conversation_topic": self.conversation_topic,
            "related_memories": list(self.related_memories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        """Create MemoryContext from dictionary."""
        data = data or {}
        return cls(
            session_id=data.get("session_id"),
            message_id=data.get("message_id"),
            timestamp=data.get("timestamp"),
            conversation_topic=data.get("conversation_topic"),
            related_memories=list(data.get("related_memories") or []),
        )


@dataclass
class MemoryRecord:
    """A single stored memory.

    Attributes:
        user_id: Owner key. Every read and write is scoped by it.
        content: Full memory text. Never changes after creation.
        type: Category assigned at creation (manual correction only).
        embedding: Vector from the embedding provider, stored as returned.
        importance: Base importance in [0, 1].
        decay_factor: Accumulated attenuation in [0, 1]; multiplied into
            importance to get the effective importance.
        id: Assigned by the store when empty.
        created_at / last_accessed_at: Unix timestamps, assigned by the store
            when missing. last_accessed_at and access_count change on every
            retrieval hit.
        settled_accessed_at / settled_access_count: Access state as of the
            last decay pass. Ranking reads these, so hits recorded by one
            search do not reorder the next one.
    """

    user_id: str
    content: str
    type: MemoryType = MemoryType.KNOWLEDGE
    summary: str = ""
    keywords: list[str] = field(default_factory=list)
    embedding: list[float] = field(default_factory=list)
    importance: float = 0.5
    confidence: float = 0.8
    source: MemorySource = MemorySource.CONVERSATION
    context: MemoryContext = field(default_factory=MemoryContext)
    id: str = ""
    created_at: float | None = None
    last_accessed_at: float | None = None
    access_count: int = 0
    decay_factor: float = 1.0
    is_active: bool = True
    settled_accessed_at: float | None = None
    settled_access_count: int | None = None

    @property
    def effective_importance(self) -> float:
        """Importance after time-based attenuation."""
        return self.importance * self.decay_factor

    @property
    def ranking_accessed_at(self) -> float | None:
        """Last access time used for ranking."""
        if self.settled_accessed_at is not None:
            return self.settled_accessed_at
        return self.last_accessed_at

    @property
    def ranking_access_count(self) -> int:
        """Access count used for ranking."""
        if self.settled_access_count is not None:
            return self.settled_access_count
        return self.access_count

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "content": self.content,
            "summary": self.summary,
            "keywords": list(self.keywords),
            "embedding": list(self.embedding),
            "importance": self.importance,
            "confidence": self.confidence,
            "source": self.source.value,
            "context": self.context.to_dict(),
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "access_count": self.access_count,
            "decay_factor": self.decay_factor,
            "is_active": self.is_active,
            "settled_accessed_at": self.settled_accessed_at,
            "settled_access_count": self.settled_access_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create MemoryRecord from dictionary."""
        return cls(
            id=str(data.get("id") or ""),
            user_id=str(data["user_id"]),
            type=MemoryType(data.get("type", MemoryType.KNOWLEDGE.value)),
            content=str(data["content"]),
            summary=str(data.get("summary") or ""),
            keywords=list(data.get("keywords") or []),
            embedding=[float(x) for x in data.get("embedding") or []],
            importance=float(data.get("importance", 0.5)),
            confidence=float(data.get("confidence", 0.8)),
            source=MemorySource(data.get("source", MemorySource.CONVERSATION.value)),
            context=MemoryContext.from_dict(data.get("context")),
            created_at=data.get("created_at"),
            last_accessed_at=data.get("last_accessed_at"),
            access_count=int(data.get("access_count", 0)),
            decay_factor=float(data.get("decay_factor", 1.0)),
            is_active=bool(data.get("is_active", True)),
            settled_accessed_at=data.get("settled_accessed_at"),
            settled_access_count=data.get("settled_access_count"),
        )


@dataclass
class SearchResult:
    """One ranked retrieval hit with the signals that produced its score."""

    record: MemoryRecord
    score: float
    similarity: float = 0.0
    importance_boost: float = 0.0
    recency_boost: float = 0.0
    frequency_boost: float = 0.0
    keyword_boost: float = 0.0
    degraded: bool = False

    def __str__(self) -> str:
        tag = " degraded" if self.degraded else ""
        return f"SearchResult({self.record.id}, score={self.score:.3f}, sim={self.similarity:.3f}{tag})"


@dataclass
class DecayReport:
    """Outcome of a single decay pass."""

    scanned: int = 0
    decayed: int = 0
    deactivated: int = 0
    skipped: int = 0
    errors: int = 0
    settled: int = 0
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "scanned": self.scanned,
            "decayed": self.decayed,
            "deactivated": self.deactivated,
            "skipped": self.skipped,
            "errors": self.errors,
            "settled": self.settled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
