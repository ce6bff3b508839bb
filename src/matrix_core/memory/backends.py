"""Memory persistence backends.

``SqlMemoryBackend`` is the primary tier: rows live in SQLite and each scope
gets an in-process NumPy matrix that answers similarity queries with one
inner product. ``LinearScanMemoryBackend`` is the secondary tier: a plain
in-process list scanned with pure-Python cosine similarity, O(n) per query,
optionally mirrored to a JSON snapshot file.
"""

from __future__ import annotations

import json
import logging
import struct
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import numpy as np
from sqlalchemy import func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from matrix_core.errors import BackendUnavailable
from matrix_core.memory.embedder import cosine_similarity
from matrix_core.memory.models import MemoryHit, MemoryRecord
from matrix_core.storage.common import (
    dump_json,
    from_iso,
    load_json_object,
    pack_vector,
    to_db_datetime,
    to_utc_aware_datetime,
    unpack_vector,
)
from matrix_core.storage.sqlmodel_models import MemoryRecordRow

logger = logging.getLogger(__name__)


class MemoryBackend(Protocol):
    """Storage contract shared by both memory tiers."""

    name: str

    def insert(self, record: MemoryRecord) -> None: ...

    def list_records(self, scope_id: str) -> list[MemoryRecord]: ...

    def search(self, scope_id: str, query: Sequence[float], top_k: int) -> list[MemoryHit]: ...

    def find_duplicate(
        self,
        scope_id: str,
        *,
        content_hash: str,
        text: str,
    ) -> MemoryRecord | None: ...

    def count(self, scope_id: str) -> int: ...


@dataclass(slots=True)
class _ScopeIndex:
    records: list[MemoryRecord]
    matrix: np.ndarray
    created: np.ndarray
    row_count: int

    @classmethod
    def build(cls, records: list[MemoryRecord], dimensions: int, row_count: int) -> _ScopeIndex:
        if records:
            matrix = np.asarray([record.vector for record in records], dtype=np.float32)
        else:
            matrix = np.zeros((0, dimensions), dtype=np.float32)
        created = np.asarray(
            [record.created_at.timestamp() for record in records],
            dtype=np.float64,
        )
        return cls(records=records, matrix=matrix, created=created, row_count=row_count)

    def search(self, query: Sequence[float], top_k: int) -> list[MemoryHit]:
        if not self.records or top_k <= 0:
            return []
        scores = self.matrix @ np.asarray(query, dtype=np.float32)
        positions = np.arange(len(self.records))
        # lexsort uses the last key as primary: score, then recency, then insertion order.
        order = np.lexsort((-positions, -self.created, -scores))[:top_k]
        return [
            MemoryHit(score=float(scores[index]), record=self.records[index])
            for index in order
        ]


class SqlMemoryBackend:
    """SQLite persistence with a per-scope NumPy inner-product index."""

    name = "sql"

    def __init__(self, engine: Engine, *, dimensions: int) -> None:
        self.engine = engine
        self.dimensions = dimensions
        self._indexes: dict[str, _ScopeIndex] = {}
        self._lock = threading.Lock()

    def insert(self, record: MemoryRecord) -> None:
        try:
            with Session(self.engine) as session:
                session.add(
                    MemoryRecordRow(
                        record_id=record.id,
                        scope_id=record.scope_id,
                        text=record.text,
                        content_hash=record.content_hash,
                        metadata_json=dump_json(record.metadata),
                        embedding_dim=len(record.vector),
                        embedding_blob=pack_vector(list(record.vector)),
                        created_at=to_db_datetime(record.created_at),
                    ),
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "insert", exc) from exc
        with self._lock:
            self._indexes.pop(record.scope_id, None)

    def list_records(self, scope_id: str) -> list[MemoryRecord]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(MemoryRecordRow)
                    .where(MemoryRecordRow.scope_id == scope_id)
                    .order_by(col(MemoryRecordRow.id).asc()),
                ).all()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "list", exc) from exc
        return [record for record in (self._to_record(row) for row in rows) if record is not None]

    def search(self, scope_id: str, query: Sequence[float], top_k: int) -> list[MemoryHit]:
        return self._index_for(scope_id).search(query, top_k)

    def find_duplicate(
        self,
        scope_id: str,
        *,
        content_hash: str,
        text: str,
    ) -> MemoryRecord | None:
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(MemoryRecordRow)
                    .where(
                        MemoryRecordRow.scope_id == scope_id,
                        or_(
                            col(MemoryRecordRow.content_hash) == content_hash,
                            col(MemoryRecordRow.text) == text,
                        ),
                    )
                    .order_by(col(MemoryRecordRow.id).asc())
                    .limit(1),
                ).first()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "find_duplicate", exc) from exc
        return self._to_record(row) if row is not None else None

    def count(self, scope_id: str) -> int:
        try:
            with Session(self.engine) as session:
                value = session.exec(
                    select(func.count())
                    .select_from(MemoryRecordRow)
                    .where(MemoryRecordRow.scope_id == scope_id),
                ).one()
        except SQLAlchemyError as exc:
            raise BackendUnavailable(self.name, "count", exc) from exc
        return int(value)

    def _index_for(self, scope_id: str) -> _ScopeIndex:
        # Rows written by another process change the count and force a rebuild.
        expected = self.count(scope_id)
        with self._lock:
            cached = self._indexes.get(scope_id)
        if cached is not None and cached.row_count == expected:
            return cached
        index = _ScopeIndex.build(self.list_records(scope_id), self.dimensions, expected)
        with self._lock:
            self._indexes[scope_id] = index
        return index

    def _to_record(self, row: MemoryRecordRow) -> MemoryRecord | None:
        if row.embedding_dim != self.dimensions:
            logger.warning(
                "Skipping memory record %s: stored dimension %d, expected %d",
                row.record_id,
                row.embedding_dim,
                self.dimensions,
            )
            return None
        try:
            vector = unpack_vector(row.embedding_blob, row.embedding_dim)
        except struct.error as exc:
            raise BackendUnavailable(self.name, "decode", exc) from exc
        return MemoryRecord(
            id=row.record_id,
            scope_id=row.scope_id,
            text=row.text,
            vector=tuple(vector),
            created_at=to_utc_aware_datetime(row.created_at),
            metadata=load_json_object(row.metadata_json),
        )


class LinearScanMemoryBackend:
    """In-process records scanned linearly; the degraded tier.

    Every query costs O(n) in the scope size. That is a scalability ceiling,
    not a correctness issue: results are ranked exactly like the primary tier.
    """

    name = "linear-scan"

    def __init__(self, snapshot_path: Path | None = None) -> None:
        self.snapshot_path = snapshot_path
        self._records: dict[str, list[MemoryRecord]] = {}
        self._lock = threading.Lock()
        if snapshot_path is not None and snapshot_path.exists():
            self._load_snapshot(snapshot_path)

    def insert(self, record: MemoryRecord) -> None:
        with self._lock:
            self._records.setdefault(record.scope_id, []).append(record)
            if self.snapshot_path is not None:
                self._write_snapshot(self.snapshot_path)

    def list_records(self, scope_id: str) -> list[MemoryRecord]:
        with self._lock:
            return list(self._records.get(scope_id, []))

    def search(self, scope_id: str, query: Sequence[float], top_k: int) -> list[MemoryHit]:
        if top_k <= 0:
            return []
        records = self.list_records(scope_id)
        scored = [
            (cosine_similarity(record.vector, query), position, record)
            for position, record in enumerate(records)
            if len(record.vector) == len(query)
        ]
        scored.sort(key=lambda item: (-item[0], -item[2].created_at.timestamp(), -item[1]))
        return [MemoryHit(score=score, record=record) for score, _, record in scored[:top_k]]

    def find_duplicate(
        self,
        scope_id: str,
        *,
        content_hash: str,
        text: str,
    ) -> MemoryRecord | None:
        for record in self.list_records(scope_id):
            if record.content_hash == content_hash or record.text == text:
                return record
        return None

    def count(self, scope_id: str) -> int:
        with self._lock:
            return len(self._records.get(scope_id, []))

    def _load_snapshot(self, path: Path) -> None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable memory snapshot %s: %s", path, exc)
            return
        for item in payload.get("records", []):
            record = MemoryRecord(
                id=str(item["id"]),
                scope_id=str(item["scope_id"]),
                text=str(item["text"]),
                vector=tuple(float(value) for value in item["vector"]),
                created_at=from_iso(str(item["created_at"])),
                metadata=dict(item.get("metadata") or {}),
            )
            self._records.setdefault(record.scope_id, []).append(record)

    def _write_snapshot(self, path: Path) -> None:
        payload = {
            "records": [
                record.to_dict() for records in self._records.values() for record in records
            ],
        }
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            logger.warning("Failed to write memory snapshot %s: %s", path, exc)
