"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from matrix_core.graph.backends import InMemoryGraphBackend, SqlGraphBackend
from matrix_core.graph.store import GraphStore
from matrix_core.memory.backends import LinearScanMemoryBackend, SqlMemoryBackend
from matrix_core.memory.embedder import HashingEmbedder
from matrix_core.memory.store import MemoryStore
from matrix_core.queue.repository import TaskQueue
from matrix_core.storage.alembic_runner import upgrade_head
from matrix_core.storage.common import build_sqlite_engine

TEST_DIMENSIONS = 64


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "core.db"


@pytest.fixture()
def engine(db_path: Path) -> Iterator[Engine]:
    upgrade_head(db_path)
    engine = build_sqlite_engine(db_path=db_path)
    yield engine
    engine.dispose()


@pytest.fixture()
def embedder() -> HashingEmbedder:
    return HashingEmbedder(dimensions=TEST_DIMENSIONS)


@pytest.fixture()
def graph_store(engine: Engine) -> GraphStore:
    return GraphStore(primary=SqlGraphBackend(engine), secondary=InMemoryGraphBackend())


@pytest.fixture()
def memory_store(engine: Engine, embedder: HashingEmbedder, graph_store: GraphStore) -> MemoryStore:
    return MemoryStore(
        primary=SqlMemoryBackend(engine, dimensions=TEST_DIMENSIONS),
        secondary=LinearScanMemoryBackend(),
        embedder=embedder,
        graph=graph_store,
    )


@pytest.fixture()
def task_queue(db_path: Path, engine: Engine) -> TaskQueue:
    return TaskQueue(db_path, engine=engine)
