"""Persistent memory store backed by SQLite.

CRUD plus filtered scans over memory records. Holds no business logic:
ranking, decay and classification live in their own components. Every
operation is scoped by ``user_id``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from engram.errors import InvalidRecord, StoreUnavailable
from engram.memory.models import MemoryContext, MemoryRecord, MemorySource, MemoryType

logger = logging.getLogger(__name__)

# Fields a caller may change through update(); everything else is immutable.
MUTABLE_FIELDS = frozenset({
    "type",
    "summary",
    "keywords",
    "importance",
    "confidence",
    "context",
    "last_accessed_at",
    "access_count",
    "decay_factor",
    "is_active",
    "settled_accessed_at",
    "settled_access_count",
})

_UNIT_FIELDS = ("importance", "confidence", "decay_factor")

_COLUMNS = (
    "id, user_id, type, content, summary, keywords, embedding, importance, "
    "confidence, source, context, created_at, last_accessed_at, access_count, "
    "decay_factor, is_active, settled_accessed_at, settled_access_count"
)


class MemoryStore(Protocol):
    """Protocol for memory store implementations."""

    async def initialize(self) -> None:
        """Open the backend."""
        ...

    async def close(self) -> None:
        """Release the backend."""
        ...

    async def create(self, record: MemoryRecord) -> MemoryRecord:
        """Persist a new record, assigning id and timestamps if absent."""
        ...

    async def get(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        """Fetch a single record owned by user_id."""
        ...

    async def get_active_by_user(self, user_id: str) -> list[MemoryRecord]:
        """All active records of user_id, in unspecified order."""
        ...

    async def list_by_user(self, user_id: str, include_inactive: bool = True) -> list[MemoryRecord]:
        """Records of user_id, newest first."""
        ...

    async def list_user_ids(self, active_only: bool = True) -> list[str]:
        """Distinct owners of stored records."""
        ...

    async def purge(self, user_id: str, memory_id: str) -> bool:
        """Physically delete a record."""
        ...

    async def purge_inactive(self, user_id: str) -> int:
        """Physically delete inactive records of user_id."""
        ...

    async def update(self, user_id: str, memory_id: str, mutation: dict[str, Any]) -> bool:
        """Partially merge mutation into a record."""
        ...

    async def set_active(self, user_id: str, memory_id: str, active: bool) -> bool:
        """Toggle a record's visibility."""
        ...

    async def touch(self, user_id: str, memory_id: str, accessed_at: float | None = None) -> bool:
        """Record a retrieval hit."""
        ...

    async def compare_and_update(
        self,
        user_id: str,
        memory_id: str,
        expected: dict[str, Any],
        mutation: dict[str, Any],
    ) -> bool:
        """Apply mutation only if the stored values still equal expected."""
        ...


def _validate_unit(name: str, value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidRecord(f"{name} must be a number") from e
    if not 0.0 <= value <= 1.0:
        raise InvalidRecord(f"{name} must be between 0.0 and 1.0, got {value}")
    return value


class SQLiteMemoryStore:
    """SQLite implementation of the memory store.

    Each public operation is a single statement (or a single transaction), so
    per-record updates are atomic and readers never see half-applied changes.

    Example:
        >>> store = SQLiteMemoryStore("data/memories.db", embedding_dim=1536)
        >>> await store.initialize()
        >>> record = await store.create(MemoryRecord(user_id="u1", content="I prefer dark mode"))
        >>> active = await store.get_active_by_user("u1")
    """

    def __init__(self, db_path: str | Path = ":memory:", embedding_dim: int | None = None) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database (created if needed) or ":memory:".
            embedding_dim: Required embedding length. None accepts any length,
                but every record must then match the first stored one.
        """
        self._db_path = str(db_path)
        self._embedding_dim = embedding_dim
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema.

        Raises:
            StoreUnavailable: If the database cannot be opened.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._create_schema()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to open memory store at {self._db_path}: {e}") from e

        if self._embedding_dim is None:
            self._embedding_dim = self._detect_embedding_dim()

        logger.debug(f"Memory store ready at {self._db_path}")

    def _create_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._require_conn()
        cursor = conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '',
                keywords TEXT NOT NULL DEFAULT '[]',
                embedding BLOB,
                embedding_dim INTEGER NOT NULL DEFAULT 0,
                importance REAL NOT NULL,
                confidence REAL NOT NULL,
                source TEXT NOT NULL,
                context TEXT,
                created_at REAL NOT NULL,
                last_accessed_at REAL NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 0,
                decay_factor REAL NOT NULL DEFAULT 1.0,
                is_active INTEGER NOT NULL DEFAULT 1,
                settled_accessed_at REAL NOT NULL,
                settled_access_count INTEGER NOT NULL DEFAULT 0
            )
        """
        )

        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_memories_user_active
            ON memories(user_id, is_active)
        """
        )

        conn.commit()

    def _detect_embedding_dim(self) -> int | None:
        row = self._fetchone("SELECT embedding_dim FROM memories WHERE embedding_dim > 0 LIMIT 1")
        return int(row["embedding_dim"]) if row else None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Memory store not initialized. Call initialize() first.")
        return self._conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        conn = self._require_conn()
        with self._lock:
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable(f"Memory store write failed: {e}") from e

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        conn = self._require_conn()
        with self._lock:
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Memory store read failed: {e}") from e

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    # ===== Serialization =====

    @staticmethod
    def _encode_embedding(embedding: list[float]) -> bytes:
        return np.asarray(embedding, dtype=np.float64).tobytes()

    @staticmethod
    def _decode_embedding(blob: bytes | None) -> list[float]:
        if not blob:
            return []
        return np.frombuffer(blob, dtype=np.float64).tolist()

    def _row_to_record(self, row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            user_id=row["user_id"],
            type=MemoryType(row["type"]),
            content=row["content"],
            summary=row["summary"],
            keywords=json.loads(row["keywords"]) if row["keywords"] else [],
            embedding=self._decode_embedding(row["embedding"]),
            importance=row["importance"],
            confidence=row["confidence"],
            source=MemorySource(row["source"]),
            context=MemoryContext.from_dict(json.loads(row["context"]) if row["context"] else None),
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            access_count=row["access_count"],
            decay_factor=row["decay_factor"],
            is_active=bool(row["is_active"]),
            settled_accessed_at=row["settled_accessed_at"],
            settled_access_count=row["settled_access_count"],
        )

    def _encode_value(self, field_name: str, value: Any) -> Any:
        if field_name == "type":
            return MemoryType(value).value
        if field_name == "keywords":
            return json.dumps(sorted(set(value)))
        if field_name == "context":
            ctx = value if isinstance(value, MemoryContext) else MemoryContext.from_dict(value)
            return json.dumps(ctx.to_dict())
        if field_name == "is_active":
            return int(bool(value))
        return value

    # ===== Validation =====

    def _validate_record(self, record: MemoryRecord) -> None:
        if not record.user_id or not record.user_id.strip():
            raise InvalidRecord("Memory record requires a non-empty user_id")
        if not record.content or not record.content.strip():
            raise InvalidRecord("Memory record requires non-empty content")
        for name in _UNIT_FIELDS:
            _validate_unit(name, getattr(record, name))
        if record.access_count < 0 or (record.settled_access_count or 0) < 0:
            raise InvalidRecord("access_count must not be negative")
        if record.embedding and self._embedding_dim is not None and len(record.embedding) != self._embedding_dim:
            raise InvalidRecord(
                f"Embedding has {len(record.embedding)} dimensions, store expects {self._embedding_dim}"
            )

    def _validate_mutation(self, mutation: dict[str, Any]) -> dict[str, Any]:
        unknown = set(mutation) - MUTABLE_FIELDS
        if unknown:
            raise InvalidRecord(f"Cannot update immutable or unknown fields: {sorted(unknown)}")

        validated = dict(mutation)
        for name in _UNIT_FIELDS:
            if name in validated:
                validated[name] = _validate_unit(name, validated[name])
        if "type" in validated:
            try:
                validated["type"] = MemoryType(validated["type"])
            except ValueError as e:
                raise InvalidRecord(f"Unknown memory type: {validated['type']!r}") from e
        for name in ("access_count", "settled_access_count"):
            if name in validated and int(validated[name]) < 0:
                raise InvalidRecord(f"{name} must not be negative")
        return validated

    # ===== CRUD =====

    async def create(self, record: MemoryRecord) -> MemoryRecord:
        """Persist a new record.

        Assigns ``id``, ``created_at`` and ``last_accessed_at`` when absent.

        Returns:
            The stored record (same object, with assigned fields filled in).

        Raises:
            InvalidRecord: If user_id/content is empty or a value is out of range.
            StoreUnavailable: If the write fails.
        """
        self._validate_record(record)

        now = time.time()
        if not record.id:
            record.id = str(uuid.uuid4())
        if record.created_at is None:
            record.created_at = now
        if record.last_accessed_at is None:
            record.last_accessed_at = record.created_at
        if record.settled_accessed_at is None:
            record.settled_accessed_at = record.last_accessed_at
        if record.settled_access_count is None:
            record.settled_access_count = record.access_count
        if record.embedding and self._embedding_dim is None:
            self._embedding_dim = len(record.embedding)

        try:
            self._execute(
                f"""
                INSERT INTO memories ({_COLUMNS}, embedding_dim)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    record.id,
                    record.user_id,
                    record.type.value,
                    record.content,
                    record.summary,
                    json.dumps(sorted(set(record.keywords))),
                    self._encode_embedding(record.embedding) if record.embedding else None,
                    record.importance,
                    record.confidence,
                    record.source.value,
                    json.dumps(record.context.to_dict()),
                    record.created_at,
                    record.last_accessed_at,
                    record.access_count,
                    record.decay_factor,
                    int(record.is_active),
                    record.settled_accessed_at,
                    record.settled_access_count,
                    len(record.embedding),
                ),
            )
        except StoreUnavailable as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise InvalidRecord(f"Memory {record.id} already exists") from e
            raise

        logger.debug(f"Stored memory {record.id} ({record.type.value}) for user {record.user_id}")
        return record

    async def get(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        """Fetch a record by id, only if it belongs to user_id."""
        row = self._fetchone(
            f"SELECT {_COLUMNS} FROM memories WHERE id = ? AND user_id = ?",
            (memory_id, user_id),
        )
        return self._row_to_record(row) if row else None

    async def get_active_by_user(self, user_id: str) -> list[MemoryRecord]:
        """All active records of user_id. Ordering is unspecified."""
        rows = self._fetchall(
            f"SELECT {_COLUMNS} FROM memories WHERE user_id = ? AND is_active = 1",
            (user_id,),
        )
        return [self._row_to_record(row) for row in rows]

    async def list_by_user(self, user_id: str, include_inactive: bool = True) -> list[MemoryRecord]:
        """Records of user_id, newest first. Used for export and audit."""
        sql = f"SELECT {_COLUMNS} FROM memories WHERE user_id = ?"
        if not include_inactive:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at DESC"
        return [self._row_to_record(row) for row in self._fetchall(sql, (user_id,))]

    async def list_user_ids(self, active_only: bool = True) -> list[str]:
        """Distinct owners, optionally only those with active records."""
        sql = "SELECT DISTINCT user_id FROM memories"
        if active_only:
            sql += " WHERE is_active = 1"
        return [row["user_id"] for row in self._fetchall(sql + " ORDER BY user_id")]

    async def update(self, user_id: str, memory_id: str, mutation: dict[str, Any]) -> bool:
        """Partially merge mutation into a record.

        Fields not named in mutation are untouched. ``access_count`` may only
        grow.

        Returns:
            True if a record of user_id was updated.

        Raises:
            InvalidRecord: If mutation touches an immutable field or holds an invalid value.
            StoreUnavailable: If the write fails.
        """
        if not mutation:
            return await self.get(user_id, memory_id) is not None

        validated = self._validate_mutation(mutation)
        assignments = ", ".join(f"{name} = ?" for name in validated)
        params = [self._encode_value(name, value) for name, value in validated.items()]

        sql = f"UPDATE memories SET {assignments} WHERE id = ? AND user_id = ?"
        if "access_count" in validated:
            # Monotonic: never move the counter backwards
            sql += " AND access_count <= ?"
            params.extend([memory_id, user_id, int(validated["access_count"])])
        else:
            params.extend([memory_id, user_id])

        updated = self._execute(sql, tuple(params)) > 0
        if not updated and "access_count" in validated:
            if await self.get(user_id, memory_id) is not None:
                raise InvalidRecord("access_count must never decrease")
        return updated

    async def compare_and_update(
        self,
        user_id: str,
        memory_id: str,
        expected: dict[str, Any],
        mutation: dict[str, Any],
    ) -> bool:
        """Optimistic per-record update.

        The mutation is applied in one statement only if every field in
        expected still holds the given value.

        Returns:
            True if the update was applied, False if the record changed or is missing.
        """
        validated = self._validate_mutation(mutation)
        unknown = set(expected) - MUTABLE_FIELDS
        if unknown:
            raise InvalidRecord(f"Cannot compare unknown fields: {sorted(unknown)}")

        assignments = ", ".join(f"{name} = ?" for name in validated)
        conditions = " AND ".join(f"{name} = ?" for name in expected)
        params = [self._encode_value(name, value) for name, value in validated.items()]
        params.extend([memory_id, user_id])
        params.extend(self._encode_value(name, value) for name, value in expected.items())

        sql = f"UPDATE memories SET {assignments} WHERE id = ? AND user_id = ?"
        if conditions:
            sql += f" AND {conditions}"
        return self._execute(sql, tuple(params)) > 0

    async def set_active(self, user_id: str, memory_id: str, active: bool) -> bool:
        """Toggle visibility of a record. Returns True if it exists for user_id."""
        return self._execute(
            "UPDATE memories SET is_active = ? WHERE id = ? AND user_id = ?",
            (int(active), memory_id, user_id),
        ) > 0

    async def touch(self, user_id: str, memory_id: str, accessed_at: float | None = None) -> bool:
        """Increment access_count and refresh last_accessed_at atomically.

        last_accessed_at never moves backwards, so redelivered touches are harmless
        for recency.
        """
        accessed_at = time.time() if accessed_at is None else accessed_at
        return self._execute(
            """
            UPDATE memories
            SET access_count = access_count + 1,
                last_accessed_at = MAX(last_accessed_at, ?)
            WHERE id = ? AND user_id = ?
        """,
            (accessed_at, memory_id, user_id),
        ) > 0

    async def purge(self, user_id: str, memory_id: str) -> bool:
        """Physically delete a record. Returns True if it existed."""
        deleted = self._execute(
            "DELETE FROM memories WHERE id = ? AND user_id = ?",
            (memory_id, user_id),
        ) > 0
        if deleted:
            logger.info(f"Purged memory {memory_id} for user {user_id}")
        return deleted

    async def purge_inactive(self, user_id: str) -> int:
        """Physically delete every inactive record of user_id."""
        count = self._execute(
            "DELETE FROM memories WHERE user_id = ? AND is_active = 0",
            (user_id,),
        )
        logger.info(f"Purged {count} inactive memories for user {user_id}")
        return count

    @property
    def embedding_dim(self) -> int | None:
        """Embedding length enforced on new records."""
        return self._embedding_dim

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            with self._lock:
                self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteMemoryStore:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
