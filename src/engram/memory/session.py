"""Recent conversation turns per user.

Bounded in-memory buffers feeding the conversation tier of context assembly.
Oldest turns are dropped first once a buffer is full.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Self

VALID_ROLES = ("user", "assistant")


@dataclass
class Message:
    """A single conversation turn.

    Attributes:
        role: Either "user" or "assistant"
        content: The message content
        timestamp: Unix timestamp when the message was added
    """

    role: str
    content: str
    timestamp: float

    def __post_init__(self) -> None:
        if self.role not in VALID_ROLES:
            raise ValueError(f"Invalid role: {self.role!r}. Must be 'user' or 'assistant'.")

    def to_dict(self) -> dict[str, str | float]:
        """Convert to dictionary representation."""
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create Message from dictionary. A missing timestamp means now."""
        timestamp = data.get("timestamp")
        return cls(
            role=str(data["role"]),
            content=str(data["content"]),
            timestamp=float(timestamp) if timestamp is not None else time.time(),
        )


def coerce_history(history: Iterable[Message | dict[str, Any]] | None) -> list[Message]:
    """Normalize caller-supplied history (messages or plain dicts), oldest first."""
    if not history:
        return []
    messages = [m if isinstance(m, Message) else Message.from_dict(m) for m in history]
    # Stable sort keeps caller order for equal timestamps
    return sorted(messages, key=lambda m: m.timestamp)


class SessionMemory:
    """In-memory recent-turn buffers, one per user.

    Safe for concurrent access via an asyncio lock.

    Example:
        >>> session = SessionMemory(max_messages=50)
        >>> await session.add_message("u1", "user", "Hello")
        >>> await session.get_messages("u1")
        [Message(role='user', content='Hello', timestamp=...)]
    """

    def __init__(self, max_messages: int = 50) -> None:
        """Initialize session memory.

        Args:
            max_messages: Turns retained per user. Oldest are removed first.
        """
        if max_messages <= 0:
            raise ValueError("max_messages must be positive")
        self._max_messages = max_messages
        self._buffers: dict[str, deque[Message]] = {}
        self._lock = asyncio.Lock()

    async def add_message(self, user_id: str, role: str, content: str) -> Message:
        """Append a turn to user_id's buffer.

        Raises:
            ValueError: If role is invalid or content is empty.
        """
        if not content or not content.strip():
            raise ValueError("Message content must not be empty")

        message = Message(role=role, content=content, timestamp=time.time())

        async with self._lock:
            buffer = self._buffers.get(user_id)
            if buffer is None:
                buffer = deque(maxlen=self._max_messages)
                self._buffers[user_id] = buffer
            buffer.append(message)

        return message

    async def get_messages(self, user_id: str, limit: int | None = None) -> list[Message]:
        """Turns of user_id, oldest first; limit keeps only the newest ones."""
        async with self._lock:
            messages = list(self._buffers.get(user_id, ()))

        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []

        return messages

    async def clear(self, user_id: str | None = None) -> None:
        """Clear one user's buffer, or every buffer when user_id is None."""
        async with self._lock:
            if user_id is None:
                self._buffers.clear()
            else:
                self._buffers.pop(user_id, None)

    def message_count(self, user_id: str) -> int:
        """Snapshot of the number of turns buffered for user_id."""
        return len(self._buffers.get(user_id, ()))

    @property
    def max_messages(self) -> int:
        """Get the configured maximum message limit."""
        return self._max_messages
