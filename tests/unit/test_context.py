"""Unit tests for token-budgeted context assembly."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from engram.config import ContextConfig
from engram.memory.context import (
    CONVERSATION_HEADER,
    MEMORY_HEADER,
    PROFILE_HEADER,
    ContextAssembler,
    estimate_tokens,
)
from engram.memory.models import MemoryRecord, MemoryType, SearchResult
from engram.memory.session import Message
from engram.memory.store import SQLiteMemoryStore


def _retrieval(*records: MemoryRecord) -> MagicMock:
    retrieval = MagicMock()
    retrieval.search = AsyncMock(
        return_value=[SearchResult(record=r, score=1.0 - i * 0.1) for i, r in enumerate(records)]
    )
    return retrieval


async def _profile(store: SQLiteMemoryStore, content: str, importance: float = 0.8, **kwargs) -> MemoryRecord:
    kwargs.setdefault("type", MemoryType.PERSONAL)
    return await store.create(
        MemoryRecord(user_id="u1", content=content, summary=content, importance=importance, **kwargs)
    )


def _memory(content: str, memory_id: str) -> MemoryRecord:
    return MemoryRecord(user_id="u1", content=content, summary=content, id=memory_id, type=MemoryType.KNOWLEDGE)


def _tier_lines(context: str, header: str) -> list[str]:
    for section in context.split("\n\n"):
        lines = section.split("\n")
        if lines[0] == header:
            return lines[1:]
    return []


class TestEstimateTokens:
    """Tests for the length-proxied token count."""

    def test_rounds_up(self) -> None:
        """Test partial tokens count as whole tokens."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("abcdef", chars_per_token=3) == 2


class TestBuildContext:
    """Tests for ContextAssembler.build_context()."""

    async def test_all_tiers(self, store: SQLiteMemoryStore) -> None:
        """Test each tier is emitted under its header, in priority order."""
        await _profile(store, "My name is Alice")
        retrieval = _retrieval(_memory("The project deadline is Friday", "m1"))
        assembler = ContextAssembler(retrieval, store, ContextConfig())

        history = [
            Message(role="user", content="Hi", timestamp=1.0),
            Message(role="assistant", content="Hello Alice", timestamp=2.0),
        ]
        context = await assembler.build_context("u1", "when is the deadline", history)

        assert context.index(PROFILE_HEADER) < context.index(MEMORY_HEADER) < context.index(CONVERSATION_HEADER)
        assert _tier_lines(context, PROFILE_HEADER) == ["- My name is Alice"]
        assert _tier_lines(context, MEMORY_HEADER) == ["- The project deadline is Friday"]
        assert _tier_lines(context, CONVERSATION_HEADER) == ["user: Hi", "assistant: Hello Alice"]

    async def test_empty(self, store: SQLiteMemoryStore) -> None:
        """Test nothing to include yields an empty string."""
        assembler = ContextAssembler(_retrieval(), store, ContextConfig())
        assert await assembler.build_context("u1", "anything") == ""

    async def test_empty_tiers_omitted(self, store: SQLiteMemoryStore) -> None:
        """Test tiers without items get no header."""
        assembler = ContextAssembler(_retrieval(_memory("Some background", "m1")), store, ContextConfig())
        context = await assembler.build_context("u1", "query")

        assert context == f"{MEMORY_HEADER}\n- Some background"

    async def test_profile_order_and_types(self, store: SQLiteMemoryStore) -> None:
        """Test profile facts are ordered by effective importance and filtered by type."""
        await _profile(store, "I prefer tea", importance=0.7, type=MemoryType.PREFERENCE)
        await _profile(store, "My name is Alice", importance=0.9)
        await _profile(store, "Earth orbits the sun", importance=1.0, type=MemoryType.KNOWLEDGE)
        assembler = ContextAssembler(_retrieval(), store, ContextConfig())

        context = await assembler.build_context("u1", "")

        assert _tier_lines(context, PROFILE_HEADER) == ["- My name is Alice", "- I prefer tea"]

    async def test_profile_budget_no_partial_items(self, store: SQLiteMemoryStore) -> None:
        """Test the profile tier stops at the first item that does not fit."""
        await _profile(store, "A" * 30, importance=0.9)  # "- " + 30 chars = 8 tokens
        await _profile(store, "B" * 30, importance=0.8)
        config = ContextConfig(total_tokens=100, profile_tokens=10, memory_tokens=50)
        assembler = ContextAssembler(_retrieval(), store, config)

        context = await assembler.build_context("u1", "")

        assert _tier_lines(context, PROFILE_HEADER) == ["- " + "A" * 30]

    async def test_memory_tier_stops_at_overflow(self, store: SQLiteMemoryStore) -> None:
        """Test packing stops once an item exceeds the remaining budget."""
        retrieval = _retrieval(
            _memory("short one", "m1"),
            _memory("x" * 200, "m2"),
            _memory("short two", "m3"),
        )
        config = ContextConfig(total_tokens=100, profile_tokens=10, memory_tokens=20)
        assembler = ContextAssembler(retrieval, store, config)

        context = await assembler.build_context("u1", "query")

        assert _tier_lines(context, MEMORY_HEADER) == ["- short one"]

    async def test_budgets_respected(self, store: SQLiteMemoryStore) -> None:
        """Test no tier ever exceeds its allotment."""
        for i in range(10):
            await _profile(store, f"Profile fact number {i} about the user", importance=0.5 + i * 0.01)
        retrieval = _retrieval(*(_memory(f"Background item {i} " + "detail " * i, f"m{i}") for i in range(20)))
        history = [Message(role="user", content=f"turn {i} " * 5, timestamp=float(i)) for i in range(10)]
        config = ContextConfig(total_tokens=120, profile_tokens=30, memory_tokens=60)
        assembler = ContextAssembler(retrieval, store, config)

        context = await assembler.build_context("u1", "query", history)

        for header, budget in (
            (PROFILE_HEADER, config.profile_tokens),
            (MEMORY_HEADER, config.memory_tokens),
            (CONVERSATION_HEADER, config.conversation_tokens),
        ):
            assert sum(assembler.estimate_tokens(line) for line in _tier_lines(context, header)) <= budget

    async def test_identical_content_included_once(self, store: SQLiteMemoryStore) -> None:
        """Test near-duplicate memories are skipped."""
        retrieval = _retrieval(
            _memory("I prefer dark mode", "m1"),
            _memory("I prefer dark mode", "m2"),
            _memory("I prefer dark mode!", "m3"),
        )
        assembler = ContextAssembler(retrieval, store, ContextConfig())

        context = await assembler.build_context("u1", "theme")

        assert _tier_lines(context, MEMORY_HEADER) == ["- I prefer dark mode"]

    async def test_profile_not_repeated_in_background(self, store: SQLiteMemoryStore) -> None:
        """Test a profile fact returned by search is not emitted twice."""
        record = await _profile(store, "I prefer dark mode", type=MemoryType.PREFERENCE)
        assembler = ContextAssembler(_retrieval(record), store, ContextConfig())

        context = await assembler.build_context("u1", "what theme do I like")

        assert context.count("I prefer dark mode") == 1
        assert MEMORY_HEADER not in context

    async def test_conversation_keeps_newest(self, store: SQLiteMemoryStore) -> None:
        """Test recent turns win and are emitted chronologically."""
        history = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}", "timestamp": float(i)}
            for i in range(10)
        ]
        config = ContextConfig(max_conversation_turns=3)
        assembler = ContextAssembler(_retrieval(), store, config)

        context = await assembler.build_context("u1", "", history)

        assert _tier_lines(context, CONVERSATION_HEADER) == [
            "assistant: message 7",
            "user: message 8",
            "assistant: message 9",
        ]

    async def test_conversation_budget_drops_oldest(self, store: SQLiteMemoryStore) -> None:
        """Test the oldest turns are dropped when the remainder is small."""
        history = [Message(role="user", content="x" * 30, timestamp=float(i)) for i in range(3)]
        # "user: " + 30 chars = 9 tokens; remainder of 20 fits two turns
        config = ContextConfig(total_tokens=40, profile_tokens=10, memory_tokens=10)
        assembler = ContextAssembler(_retrieval(), store, config)

        context = await assembler.build_context("u1", "", history)

        assert len(_tier_lines(context, CONVERSATION_HEADER)) == 2

    @pytest.mark.parametrize("query", ["", "   "])
    async def test_blank_query_skips_search(self, store: SQLiteMemoryStore, query: str) -> None:
        """Test a blank query does not hit retrieval."""
        retrieval = _retrieval()
        assembler = ContextAssembler(retrieval, store, ContextConfig())

        await assembler.build_context("u1", query)

        retrieval.search.assert_not_awaited()
