"""Shared pytest fixtures for Engram tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncGenerator

import pytest

from engram.config import EmbeddingConfig, EngramConfig, StoreConfig
from engram.errors import EmbeddingUnavailable
from engram.memory.embeddings import normalize_text
from engram.memory.manager import MemoryEngine
from engram.memory.store import SQLiteMemoryStore

EMBEDDING_DIM = 16


class FakeEmbeddingProvider:
    """Deterministic in-process embedding provider.

    Registered texts get the given sparse vector ({axis: weight}). Any other
    text gets its own basis vector, counted down from the last axis, so
    unrelated texts are orthogonal to each other.
    """

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self.dim = dim
        self.calls = 0
        self.fail = False
        self.delay = 0.0
        self.closed = False
        self._vectors: dict[str, list[float]] = {}
        self._next_axis = dim - 1

    def register(self, text: str, components: dict[int, float]) -> list[float]:
        vector = [0.0] * self.dim
        for axis, weight in components.items():
            vector[axis] = weight
        self._vectors[normalize_text(text)] = vector
        return vector

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingUnavailable("embedding service down")

        key = normalize_text(text)
        if key not in self._vectors:
            self.register(text, {self._next_axis: 1.0})
            self._next_axis -= 1
        return list(self._vectors[key])

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for test data."""
    return tmp_path


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Create temporary database path."""
    return temp_dir / "memories.db"


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    """Return a deterministic embedding provider."""
    return FakeEmbeddingProvider()


@pytest.fixture
def engram_config(temp_dir: Path, temp_db_path: Path) -> EngramConfig:
    """Return test configuration with temporary data directory."""
    return EngramConfig(
        data_dir=str(temp_dir),
        log_level="DEBUG",
        embedding=EmbeddingConfig(embedding_dim=EMBEDDING_DIM),
        store=StoreConfig(db_path=str(temp_db_path)),
    )


@pytest.fixture
async def store(temp_db_path: Path) -> AsyncGenerator[SQLiteMemoryStore, None]:
    """Yield an initialized SQLite store."""
    memory_store = SQLiteMemoryStore(temp_db_path, embedding_dim=EMBEDDING_DIM)
    await memory_store.initialize()
    yield memory_store
    await memory_store.close()


@pytest.fixture
async def engine(
    engram_config: EngramConfig,
    fake_provider: FakeEmbeddingProvider,
) -> AsyncGenerator[MemoryEngine, None]:
    """Yield an initialized MemoryEngine backed by the fake provider."""
    memory_engine = MemoryEngine(engram_config, provider=fake_provider)
    await memory_engine.initialize()
    yield memory_engine
    await memory_engine.close()
