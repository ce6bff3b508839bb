from __future__ import annotations

from pathlib import Path

import allure
import pytest
from sqlalchemy.engine import Engine

from matrix_core.errors import BackendUnavailable
from matrix_core.graph.backends import InMemoryGraphBackend, SqlGraphBackend
from matrix_core.graph.models import GraphRef, NodeType
from matrix_core.graph.store import GraphStore
from matrix_core.memory.store import MemoryStore
from matrix_core.storage.common import build_sqlite_engine
from matrix_core.storage.selector import BackendSelector, BackendTier

pytestmark = [
    allure.epic("Knowledge Graph"),
    allure.feature("Graph Link Layer"),
]

PROJECT = GraphRef(NodeType.PROJECT, "p1")
TASK = GraphRef(NodeType.TASK, "t1")
ARTIFACT = GraphRef(NodeType.ARTIFACT, "a1")


def test_link_and_neighbors_cover_both_edge_directions(graph_store: GraphStore) -> None:
    owns = graph_store.link(PROJECT, "HAS_TASK", TASK)
    produced = graph_store.link(TASK, "PRODUCED", ARTIFACT)

    assert [edge.id for edge in graph_store.neighbors(TASK)] == [owns.id, produced.id]
    assert [edge.id for edge in graph_store.neighbors(PROJECT)] == [owns.id]
    assert graph_store.neighbors(GraphRef(NodeType.JOB, "missing")) == []


def test_neighbors_distinguish_node_types_with_same_id(graph_store: GraphStore) -> None:
    graph_store.link(GraphRef(NodeType.PROJECT, "x"), "HAS_TASK", GraphRef(NodeType.TASK, "x"))

    assert len(graph_store.neighbors(GraphRef(NodeType.PROJECT, "x"))) == 1
    assert len(graph_store.neighbors(GraphRef(NodeType.JOB, "x"))) == 0


def test_link_rejects_blank_relation(graph_store: GraphStore) -> None:
    with pytest.raises(ValueError, match="Relation must be a non-empty string"):
        graph_store.link(PROJECT, "  ", TASK)


def test_summary_counts_relations_and_distinct_nodes(graph_store: GraphStore) -> None:
    graph_store.link(PROJECT, "HAS_TASK", TASK)
    graph_store.link(PROJECT, "HAS_TASK", GraphRef(NodeType.TASK, "t2"))
    graph_store.link(TASK, "PRODUCED", ARTIFACT)

    summary = graph_store.summary()

    assert summary.total_edges == 3
    assert summary.edge_count_by_relation == {"HAS_TASK": 2, "PRODUCED": 1}
    assert summary.node_count_by_type == {"Artifact": 1, "Project": 1, "Task": 2}


def test_graph_ref_parse_round_trips_printed_form() -> None:
    assert GraphRef.parse("project:p1") == PROJECT
    assert GraphRef.parse(str(TASK)) == TASK
    with pytest.raises(ValueError, match="Unknown node type"):
        GraphRef.parse("Planet:earth")
    with pytest.raises(ValueError, match="expected Type:id"):
        GraphRef.parse("Project")


def test_graph_degradation_is_independent_of_memory(
    engine: Engine,
    memory_store: MemoryStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    graph = memory_store.graph
    assert graph is not None

    def _broken(*args: object) -> None:
        raise BackendUnavailable("sql", "insert")

    monkeypatch.setattr(graph.primary, "insert", _broken)

    record = memory_store.add("p1", "memory survives graph outage")

    assert graph.selector.tier is BackendTier.SECONDARY
    assert memory_store.selector.tier is BackendTier.PRIMARY
    assert memory_store.backend_name == "sql"
    [edge] = graph.neighbors(GraphRef(NodeType.MEMORY, record.id))
    assert edge.from_ref == PROJECT
    assert SqlGraphBackend(engine).all() == []


def test_forced_secondary_graph_persists_snapshot(tmp_path: Path) -> None:
    snapshot = tmp_path / "graph.json"
    store = GraphStore(
        primary=InMemoryGraphBackend(),
        secondary=InMemoryGraphBackend(snapshot),
        selector=BackendSelector.forced_secondary("graph"),
    )
    edge = store.link(PROJECT, "HAS_TASK", TASK)

    restored = InMemoryGraphBackend(snapshot)

    assert restored.all() == [edge]
    assert store.primary.all() == []


def test_sql_backend_reports_unavailable_on_database_errors(tmp_path: Path) -> None:
    # No migrations applied: the edges table does not exist.
    backend = SqlGraphBackend(build_sqlite_engine(db_path=tmp_path / "empty.db"))

    with pytest.raises(BackendUnavailable, match="sql backend unavailable"):
        backend.all()
