"""Graph edge persistence: SQLite primary tier and in-process secondary tier."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from matrix_core.errors import BackendUnavailable
from matrix_core.graph.models import GraphEdge, GraphRef, NodeType
from matrix_core.storage.common import from_iso, to_db_datetime, to_utc_aware_datetime
from matrix_core.storage.sqlmodel_models import GraphEdgeRow

logger = logging.getLogger(__name__)


class GraphBackend(Protocol):
    name: str

    def insert(self, edge: GraphEdge) -> None: ...

    def neighbors(self, ref: GraphRef) -> list[GraphEdge]: ...

    def all(self) -> list[GraphEdge]: ...


class SqlGraphBackend:
    """Edges stored in the ``graph_edges`` table."""

    name = "sql"

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, edge: GraphEdge) -> None:
        try:
            with Session(self.engine) as session:
                session.add(
                    GraphEdgeRow(
                        edge_id=edge.id,
                        from_type=edge.from_ref.type.value,
                        from_id=edge.from_ref.id,
                        to_type=edge.to_ref.type.value,
                        to_id=edge.to_ref.id,
                        relation=edge.relation,
                        created_at=to_db_datetime(edge.created_at),
                    ),
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "link", exc) from exc

    def neighbors(self, ref: GraphRef) -> list[GraphEdge]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(GraphEdgeRow)
                    .where(
                        or_(
                            (col(GraphEdgeRow.from_type) == ref.type.value)
                            & (col(GraphEdgeRow.from_id) == ref.id),
                            (col(GraphEdgeRow.to_type) == ref.type.value)
                            & (col(GraphEdgeRow.to_id) == ref.id),
                        ),
                    )
                    .order_by(col(GraphEdgeRow.id).asc()),
                ).all()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "neighbors", exc) from exc
        return [_to_edge(row) for row in rows]

    def all(self) -> list[GraphEdge]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(GraphEdgeRow).order_by(col(GraphEdgeRow.id).asc()),
                ).all()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "all", exc) from exc
        return [_to_edge(row) for row in rows]


class InMemoryGraphBackend:
    """Edge list held in process, optionally mirrored to a JSON file."""

    name = "in-memory"

    def __init__(self, snapshot_path: Path | None = None) -> None:
        self.snapshot_path = snapshot_path
        self._edges: list[GraphEdge] = []
        self._lock = threading.Lock()
        if snapshot_path is not None and snapshot_path.exists():
            self._load_snapshot(snapshot_path)

    def insert(self, edge: GraphEdge) -> None:
        with self._lock:
            self._edges.append(edge)
            if self.snapshot_path is not None:
                self._write_snapshot(self.snapshot_path)

    def neighbors(self, ref: GraphRef) -> list[GraphEdge]:
        with self._lock:
            return [edge for edge in self._edges if edge.touches(ref)]

    def all(self) -> list[GraphEdge]:
        with self._lock:
            return list(self._edges)

    def _load_snapshot(self, path: Path) -> None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable graph snapshot %s: %s", path, exc)
            return
        for item in payload.get("edges", []):
            self._edges.append(
                GraphEdge(
                    id=str(item["id"]),
                    from_ref=GraphRef(NodeType(item["from"]["type"]), str(item["from"]["id"])),
                    to_ref=GraphRef(NodeType(item["to"]["type"]), str(item["to"]["id"])),
                    relation=str(item["relation"]),
                    created_at=from_iso(str(item["created_at"])),
                ),
            )

    def _write_snapshot(self, path: Path) -> None:
        payload = {"edges": [edge.to_dict() for edge in self._edges]}
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            logger.warning("Failed to write graph snapshot %s: %s", path, exc)


def _to_edge(row: GraphEdgeRow) -> GraphEdge:
    return GraphEdge(
        id=row.edge_id,
        from_ref=GraphRef(NodeType(row.from_type), row.from_id),
        to_ref=GraphRef(NodeType(row.to_type), row.to_id),
        relation=row.relation,
        created_at=to_utc_aware_datetime(row.created_at),
    )
