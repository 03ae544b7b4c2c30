"""Unit tests for the SQLite memory store."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest

from engram.errors import InvalidRecord, StoreUnavailable
from engram.memory.models import MemoryContext, MemoryRecord, MemorySource, MemoryType
from engram.memory.store import SQLiteMemoryStore


def _record(user_id: str = "u1", content: str = "I prefer dark mode", **kwargs) -> MemoryRecord:
    kwargs.setdefault("embedding", [1.0] + [0.0] * 15)
    return MemoryRecord(user_id=user_id, content=content, **kwargs)


class TestSQLiteMemoryStoreInit:
    """Tests for store initialization."""

    async def test_init_creates_database(self, temp_db_path: Path) -> None:
        """Test initialization creates the database file."""
        store = SQLiteMemoryStore(temp_db_path)
        await store.initialize()
        await store.close()

        assert temp_db_path.exists()

    async def test_init_creates_tables(self, temp_db_path: Path) -> None:
        """Test initialization creates the memories table."""
        async with SQLiteMemoryStore(temp_db_path):
            pass

        conn = sqlite3.connect(temp_db_path)
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        conn.close()
        assert "memories" in tables

    async def test_requires_initialize(self) -> None:
        """Test operations before initialize() fail loudly."""
        store = SQLiteMemoryStore()
        with pytest.raises(RuntimeError, match="not initialized"):
            await store.get_active_by_user("u1")

    async def test_detects_embedding_dim(self, temp_db_path: Path) -> None:
        """Test a reopened store enforces the stored embedding length."""
        async with SQLiteMemoryStore(temp_db_path) as store:
            await store.create(_record(embedding=[0.1, 0.2, 0.3]))

        async with SQLiteMemoryStore(temp_db_path) as store:
            assert store.embedding_dim == 3
            with pytest.raises(InvalidRecord, match="dimensions"):
                await store.create(_record(embedding=[0.1, 0.2]))


class TestCreate:
    """Tests for creating records."""

    async def test_assigns_id_and_timestamps(self, store: SQLiteMemoryStore) -> None:
        """Test id and timestamps are assigned when absent."""
        record = await store.create(_record())

        assert record.id
        assert record.created_at is not None
        assert record.last_accessed_at == record.created_at

    async def test_roundtrip(self, store: SQLiteMemoryStore) -> None:
        """Test every field survives storage."""
        original = _record(
            type=MemoryType.PREFERENCE,
            summary="dark mode",
            keywords=["mode", "dark", "prefer"],
            importance=0.7,
            source=MemorySource.EXPLICIT,
            context=MemoryContext(session_id="s1", conversation_topic="ui"),
        )
        await store.create(original)

        stored = await store.get("u1", original.id)
        assert stored is not None
        assert stored.type == MemoryType.PREFERENCE
        assert stored.keywords == ["dark", "mode", "prefer"]
        assert stored.embedding == original.embedding
        assert stored.source == MemorySource.EXPLICIT
        assert stored.context.session_id == "s1"
        assert stored.is_active is True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"user_id": ""},
            {"content": "   "},
            {"importance": 1.5},
            {"decay_factor": -0.1},
            {"access_count": -1},
            {"embedding": [1.0, 2.0]},
        ],
    )
    async def test_invalid_records_rejected(self, store: SQLiteMemoryStore, kwargs: dict) -> None:
        """Test invalid records are rejected before writing."""
        with pytest.raises(InvalidRecord):
            await store.create(_record(**kwargs))

    async def test_duplicate_id_rejected(self, store: SQLiteMemoryStore) -> None:
        """Test a record id can only be created once."""
        record = await store.create(_record())
        with pytest.raises(InvalidRecord, match="already exists"):
            await store.create(_record(id=record.id))


class TestUserScoping:
    """Tests for per-user isolation."""

    async def test_get_other_users_record(self, store: SQLiteMemoryStore) -> None:
        """Test a record is invisible to other users."""
        record = await store.create(_record(user_id="alice"))
        assert await store.get("bob", record.id) is None

    async def test_active_by_user(self, store: SQLiteMemoryStore) -> None:
        """Test scans only return the owner's active records."""
        kept = await store.create(_record(user_id="alice"))
        hidden = await store.create(_record(user_id="alice", content="old fact"))
        await store.create(_record(user_id="bob"))
        await store.set_active("alice", hidden.id, False)

        active = await store.get_active_by_user("alice")
        assert [r.id for r in active] == [kept.id]

    async def test_mutations_scoped(self, store: SQLiteMemoryStore) -> None:
        """Test other users cannot mutate a record."""
        record = await store.create(_record(user_id="alice"))

        assert await store.update("bob", record.id, {"summary": "hijacked"}) is False
        assert await store.touch("bob", record.id) is False
        assert await store.set_active("bob", record.id, False) is False
        assert await store.purge("bob", record.id) is False

        stored = await store.get("alice", record.id)
        assert stored is not None
        assert stored.summary == ""
        assert stored.is_active is True

    async def test_list_user_ids(self, store: SQLiteMemoryStore) -> None:
        """Test distinct owners are listed."""
        await store.create(_record(user_id="bob"))
        await store.create(_record(user_id="alice"))
        await store.create(_record(user_id="alice", content="another"))
        carol = await store.create(_record(user_id="carol"))
        await store.set_active("carol", carol.id, False)

        assert await store.list_user_ids() == ["alice", "bob"]
        assert await store.list_user_ids(active_only=False) == ["alice", "bob", "carol"]


class TestUpdate:
    """Tests for partial updates."""

    async def test_partial_merge(self, store: SQLiteMemoryStore) -> None:
        """Test fields not named in the mutation are untouched."""
        record = await store.create(_record(importance=0.7, summary="dark mode"))

        assert await store.update("u1", record.id, {"importance": 0.9}) is True

        stored = await store.get("u1", record.id)
        assert stored is not None
        assert stored.importance == 0.9
        assert stored.summary == "dark mode"
        assert stored.content == "I prefer dark mode"

    async def test_immutable_fields_rejected(self, store: SQLiteMemoryStore) -> None:
        """Test content, owner and embedding cannot be changed."""
        record = await store.create(_record())
        for field_name in ("content", "user_id", "embedding", "created_at"):
            with pytest.raises(InvalidRecord, match="immutable"):
                await store.update("u1", record.id, {field_name: "x"})

    async def test_access_count_never_decreases(self, store: SQLiteMemoryStore) -> None:
        """Test the access counter cannot move backwards."""
        record = await store.create(_record(access_count=3))

        with pytest.raises(InvalidRecord, match="never decrease"):
            await store.update("u1", record.id, {"access_count": 2})
        assert await store.update("u1", record.id, {"access_count": 5}) is True

    async def test_type_correction(self, store: SQLiteMemoryStore) -> None:
        """Test the type can be corrected with a plain string."""
        record = await store.create(_record())
        await store.update("u1", record.id, {"type": "goal"})

        stored = await store.get("u1", record.id)
        assert stored is not None
        assert stored.type == MemoryType.GOAL

    async def test_unknown_type_rejected(self, store: SQLiteMemoryStore) -> None:
        """Test unknown types are rejected."""
        record = await store.create(_record())
        with pytest.raises(InvalidRecord, match="Unknown memory type"):
            await store.update("u1", record.id, {"type": "hobby"})


class TestCompareAndUpdate:
    """Tests for optimistic updates."""

    async def test_applies_when_unchanged(self, store: SQLiteMemoryStore) -> None:
        """Test the mutation applies when expected values hold."""
        record = await store.create(_record())

        applied = await store.compare_and_update(
            "u1", record.id, {"decay_factor": 1.0}, {"decay_factor": 0.95}
        )

        assert applied is True
        stored = await store.get("u1", record.id)
        assert stored is not None
        assert stored.decay_factor == 0.95

    async def test_skips_when_changed(self, store: SQLiteMemoryStore) -> None:
        """Test the mutation is not applied after a concurrent change."""
        record = await store.create(_record())
        await store.update("u1", record.id, {"decay_factor": 0.5})

        applied = await store.compare_and_update(
            "u1", record.id, {"decay_factor": 1.0}, {"decay_factor": 0.95}
        )

        assert applied is False
        stored = await store.get("u1", record.id)
        assert stored is not None
        assert stored.decay_factor == 0.5


class TestTouch:
    """Tests for access tracking."""

    async def test_touch_increments(self, store: SQLiteMemoryStore) -> None:
        """Test touch bumps the counter and the access time."""
        record = await store.create(_record())
        assert record.created_at is not None

        await store.touch("u1", record.id, record.created_at + 100)
        await store.touch("u1", record.id, record.created_at + 50)

        stored = await store.get("u1", record.id)
        assert stored is not None
        assert stored.access_count == 2
        # Never moves backwards
        assert stored.last_accessed_at == record.created_at + 100


class TestPurge:
    """Tests for physical deletion."""

    async def test_purge(self, store: SQLiteMemoryStore) -> None:
        """Test a purged record is gone."""
        record = await store.create(_record())
        assert await store.purge("u1", record.id) is True
        assert await store.get("u1", record.id) is None

    async def test_purge_inactive(self, store: SQLiteMemoryStore) -> None:
        """Test only inactive records are purged."""
        active = await store.create(_record())
        inactive = await store.create(_record(content="stale"))
        await store.set_active("u1", inactive.id, False)

        assert await store.purge_inactive("u1") == 1
        remaining = await store.list_by_user("u1")
        assert [r.id for r in remaining] == [active.id]


class TestErrors:
    """Tests for backend failures."""

    async def test_sqlite_errors_wrapped(self, store: SQLiteMemoryStore) -> None:
        """Test backend errors surface as StoreUnavailable."""
        with patch.object(store, "_require_conn") as mock_conn:
            mock_conn.return_value.execute.side_effect = sqlite3.OperationalError("disk I/O error")
            with pytest.raises(StoreUnavailable, match="disk I/O error"):
                await store.get_active_by_user("u1")
