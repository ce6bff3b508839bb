"""SQLModel ORM tables for memory, graph and queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    Text,
)
from sqlmodel import Field, SQLModel


class MemoryRecordRow(SQLModel, table=True):
    __tablename__ = "memory_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_memory_records_scope_time", "scope_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    record_id: str = Field(unique=True, index=True)
    scope_id: str = Field(index=True)
    text: str = Field(sa_column=Column(Text, nullable=False))
    content_hash: str | None = Field(default=None, index=True)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    embedding_dim: int
    embedding_blob: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GraphEdgeRow(SQLModel, table=True):
    __tablename__ = "graph_edges"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_graph_edges_from", "from_type", "from_id"),
        Index("idx_graph_edges_to", "to_type", "to_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    edge_id: str = Field(unique=True, index=True)
    from_type: str
    from_id: str
    to_type: str
    to_id: str
    relation: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "task_type", "status", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(unique=True, index=True)
    scope_id: str = Field(index=True)
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
