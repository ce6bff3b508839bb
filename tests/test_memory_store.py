from __future__ import annotations

import json
import logging
from pathlib import Path

import allure
import pytest
from sqlalchemy.engine import Engine

from matrix_core.errors import BackendUnavailable
from matrix_core.graph.models import GraphRef, NodeType
from matrix_core.graph.store import GraphStore
from matrix_core.memory.backends import LinearScanMemoryBackend, SqlMemoryBackend
from matrix_core.memory.embedder import HashingEmbedder
from matrix_core.memory.models import content_hash
from matrix_core.memory.store import HAS_MEMORY, MemoryStore
from matrix_core.storage.selector import BackendSelector, BackendTier

pytestmark = [
    allure.epic("Semantic Memory"),
    allure.feature("Memory Store & Degradation"),
]


def test_add_persists_record_and_links_project_node(
    memory_store: MemoryStore,
    graph_store: GraphStore,
) -> None:
    record = memory_store.add("p1", "Set up CI pipeline", {"kind": "runtime-log"})

    assert record.scope_id == "p1"
    assert len(record.vector) == memory_store.embedder.dimensions
    assert memory_store.count("p1") == 1
    assert [item.id for item in memory_store.list_records("p1")] == [record.id]
    assert memory_store.list_records("p1")[0].metadata == {"kind": "runtime-log"}

    edges = graph_store.neighbors(GraphRef(NodeType.PROJECT, "p1"))
    assert len(edges) == 1
    assert edges[0].relation == HAS_MEMORY
    assert edges[0].to_ref == GraphRef(NodeType.MEMORY, record.id)


def test_org_scope_links_from_org_node(memory_store: MemoryStore, graph_store: GraphStore) -> None:
    record = memory_store.add("__org__", "Company-wide coding standards")

    edges = graph_store.neighbors(GraphRef(NodeType.MEMORY, record.id))
    assert [edge.from_ref for edge in edges] == [GraphRef(NodeType.ORG, "__org__")]


def test_add_unique_returns_existing_record_for_same_text(memory_store: MemoryStore) -> None:
    first = memory_store.add_unique("p1", "Project summary v1", {"kind": "summary"})
    second = memory_store.add_unique("p1", "Project summary v1", {"kind": "summary"})

    assert second.id == first.id
    assert first.metadata["hash"] == content_hash("Project summary v1")
    assert memory_store.count("p1") == 1


def test_add_unique_matches_records_added_without_hash(memory_store: MemoryStore) -> None:
    plain = memory_store.add("p1", "same text")

    assert memory_store.add_unique("p1", "same text").id == plain.id
    assert memory_store.count("p1") == 1


def test_add_unique_is_scoped(memory_store: MemoryStore) -> None:
    memory_store.add_unique("p1", "shared text")
    memory_store.add_unique("p2", "shared text")

    assert memory_store.count("p1") == 1
    assert memory_store.count("p2") == 1


def test_search_ranks_by_similarity_and_limits_results(memory_store: MemoryStore) -> None:
    memory_store.add("p1", "database migration plan for orders table")
    memory_store.add("p1", "landing page color palette")
    memory_store.add("p1", "database backup schedule")
    memory_store.add("p2", "database migration plan for orders table")

    hits = memory_store.search("p1", "database migration", top_k=2)

    assert len(hits) == 2
    assert hits[0].record.text == "database migration plan for orders table"
    assert hits[0].score >= hits[1].score
    assert all(hit.record.scope_id == "p1" for hit in hits)


def test_search_breaks_ties_by_most_recent_first(memory_store: MemoryStore) -> None:
    older = memory_store.add("p1", "deploy notes")
    newer = memory_store.add("p1", "deploy notes")

    hits = memory_store.search("p1", "deploy notes", top_k=5)

    assert [hit.record.id for hit in hits] == [newer.id, older.id]
    assert hits[0].score == pytest.approx(hits[1].score)


def test_search_with_non_positive_top_k_returns_nothing(memory_store: MemoryStore) -> None:
    memory_store.add("p1", "anything")

    assert memory_store.search("p1", "anything", top_k=0) == []
    assert memory_store.search("p1", "anything", top_k=-3) == []


def test_search_uses_default_top_k(engine: Engine, embedder: HashingEmbedder) -> None:
    store = MemoryStore(
        primary=SqlMemoryBackend(engine, dimensions=embedder.dimensions),
        secondary=LinearScanMemoryBackend(),
        embedder=embedder,
        default_top_k=2,
    )
    for index in range(4):
        store.add("p1", f"note {index}")

    assert len(store.search("p1", "note")) == 2


def test_search_sees_records_written_by_another_store_instance(
    engine: Engine,
    embedder: HashingEmbedder,
    memory_store: MemoryStore,
) -> None:
    memory_store.add("p1", "first note")
    assert len(memory_store.search("p1", "note")) == 1

    other = MemoryStore(
        primary=SqlMemoryBackend(engine, dimensions=embedder.dimensions),
        secondary=LinearScanMemoryBackend(),
        embedder=embedder,
    )
    other.add("p1", "second note")

    assert len(memory_store.search("p1", "note")) == 2


def test_primary_failure_degrades_permanently_to_secondary(
    memory_store: MemoryStore,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    primary = memory_store.primary
    calls = {"insert": 0}

    def _broken_insert(record: object) -> None:  # noqa: ARG001
        calls["insert"] += 1
        raise BackendUnavailable("sql", "insert", RuntimeError("database is locked"))

    monkeypatch.setattr(primary, "insert", _broken_insert)

    with caplog.at_level(logging.WARNING):
        record = memory_store.add("p1", "written during outage")

    assert memory_store.selector.tier is BackendTier.SECONDARY
    assert memory_store.backend_name == "linear-scan"
    assert "database is locked" in (memory_store.selector.degraded_reason or "")
    assert any("primary backend unavailable" in message for message in caplog.messages)

    monkeypatch.undo()
    second = memory_store.add("p1", "written after outage")

    assert calls["insert"] == 1
    assert [item.id for item in memory_store.list_records("p1")] == [record.id, second.id]
    assert primary.count("p1") == 0
    hits = memory_store.search("p1", "written outage", top_k=5)
    assert {hit.record.id for hit in hits} == {record.id, second.id}


def test_forced_secondary_never_touches_primary(embedder: HashingEmbedder) -> None:
    class _ExplodingBackend:
        name = "exploding"

        def __getattr__(self, item: str) -> object:
            raise AssertionError(f"primary touched: {item}")

    store = MemoryStore(
        primary=_ExplodingBackend(),  # type: ignore[arg-type]
        secondary=LinearScanMemoryBackend(),
        embedder=embedder,
        selector=BackendSelector.forced_secondary("memory"),
    )

    record = store.add("p1", "works without primary")

    assert store.search("p1", "primary", top_k=1)[0].record.id == record.id


def test_secondary_ranking_matches_primary_ordering(
    memory_store: MemoryStore,
    embedder: HashingEmbedder,
) -> None:
    texts = ["alpha beta", "alpha", "gamma delta", "alpha beta gamma"]
    degraded = MemoryStore(
        primary=memory_store.primary,
        secondary=LinearScanMemoryBackend(),
        embedder=embedder,
        selector=BackendSelector.forced_secondary("memory"),
    )
    for text in texts:
        memory_store.add("p-primary", text)
        degraded.add("p-secondary", text)

    primary_hits = memory_store.search("p-primary", "alpha beta", top_k=4)
    secondary_hits = degraded.search("p-secondary", "alpha beta", top_k=4)

    assert [hit.record.text for hit in primary_hits] == [hit.record.text for hit in secondary_hits]
    for primary_hit, secondary_hit in zip(primary_hits, secondary_hits, strict=True):
        assert primary_hit.score == pytest.approx(secondary_hit.score, abs=1e-5)


def test_graph_link_failure_does_not_fail_add(
    engine: Engine,
    embedder: HashingEmbedder,
    caplog: pytest.LogCaptureFixture,
) -> None:
    class _BrokenGraph:
        def link(self, *args: object) -> None:
            raise RuntimeError("graph offline")

    store = MemoryStore(
        primary=SqlMemoryBackend(engine, dimensions=embedder.dimensions),
        secondary=LinearScanMemoryBackend(),
        embedder=embedder,
        graph=_BrokenGraph(),  # type: ignore[arg-type]
    )

    with caplog.at_level(logging.WARNING):
        record = store.add("p1", "still stored")

    assert store.count("p1") == 1
    assert any(record.id in message for message in caplog.messages)


def test_add_rejects_embedder_dimension_mismatch(engine: Engine) -> None:
    class _ShortEmbedder:
        model_name = "short"
        dimensions = 8

        def embed(self, text: str) -> list[float]:  # noqa: ARG002
            return [1.0, 0.0]

        def embed_many(self, texts: list[str]) -> list[list[float]]:
            return [self.embed(text) for text in texts]

    store = MemoryStore(
        primary=SqlMemoryBackend(engine, dimensions=8),
        secondary=LinearScanMemoryBackend(),
        embedder=_ShortEmbedder(),
    )

    with pytest.raises(ValueError, match="returned 2 dimensions"):
        store.add("p1", "text")


def test_linear_scan_snapshot_survives_restart(tmp_path: Path, embedder: HashingEmbedder) -> None:
    snapshot = tmp_path / "memory.json"
    store = MemoryStore(
        primary=LinearScanMemoryBackend(),
        secondary=LinearScanMemoryBackend(snapshot),
        embedder=embedder,
        selector=BackendSelector.forced_secondary("memory"),
    )
    record = store.add("p1", "persist me", {"kind": "note"})

    payload = json.loads(snapshot.read_text(encoding="utf-8"))
    assert [item["id"] for item in payload["records"]] == [record.id]

    restored = LinearScanMemoryBackend(snapshot)
    [loaded] = restored.list_records("p1")
    assert loaded.id == record.id
    assert loaded.metadata == {"kind": "note"}
    assert loaded.vector == pytest.approx(record.vector)
    assert loaded.created_at == record.created_at


def test_sql_backend_skips_rows_with_foreign_dimension(
    engine: Engine,
    memory_store: MemoryStore,
) -> None:
    memory_store.add("p1", "stored at 64 dimensions")

    wider = SqlMemoryBackend(engine, dimensions=128)

    assert wider.list_records("p1") == []
    assert wider.count("p1") == 1
