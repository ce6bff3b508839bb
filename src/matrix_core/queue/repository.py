"""Persistent claim-based task queue backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from matrix_core.queue.models import TaskEventView, TaskStatus, TaskView
from matrix_core.storage.alembic_runner import upgrade_head
from matrix_core.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from matrix_core.storage.sqlmodel_models import TaskEventRow, TaskRow

logger = logging.getLogger(__name__)


class TaskQueue:
    """FIFO queue per task type with atomic claim and terminal no-op transitions."""

    def __init__(self, db_path: Path, *, engine: Engine | None = None) -> None:
        self.db_path = db_path
        self.engine = engine or build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        scope_id: str,
        task_type: str,
        payload: dict[str, Any] | None = None,
    ) -> TaskView:
        """Create a queued task."""

        task_type = task_type.strip()
        if not task_type:
            raise ValueError("Task type must be a non-empty string.")
        now = utc_now()
        task_id = uuid4().hex
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                scope_id=scope_id,
                task_type=task_type,
                status=TaskStatus.QUEUED.value,
                payload_json=dump_json(payload),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={"task_type": task_type, "scope_id": scope_id},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim(self, task_type: str) -> TaskView | None:
        """Atomically move the oldest queued task of ``task_type`` to in_progress."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(TaskRow)
                    .where(
                        TaskRow.task_type == task_type,
                        TaskRow.status == TaskStatus.QUEUED.value,
                    )
                    .order_by(col(TaskRow.created_at).asc(), col(TaskRow.id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == candidate.task_id,
                        col(TaskRow.status) == TaskStatus.QUEUED.value,
                    )
                    .values(
                        status=TaskStatus.IN_PROGRESS.value,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    # Another claimer won the race for this row; look again.
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=candidate.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.IN_PROGRESS,
                    details={},
                )
                session.commit()
                claimed = session.exec(
                    select(TaskRow).where(TaskRow.task_id == candidate.task_id),
                ).one()
                return _to_task_view(claimed)

    def complete(self, task_id: str) -> bool:
        """Mark an in-progress task completed; no-op returning False otherwise."""

        return self._finish(task_id, status=TaskStatus.COMPLETED, error=None)

    def fail(self, task_id: str, error: str) -> bool:
        """Mark an in-progress task failed; no-op returning False otherwise."""

        return self._finish(task_id, status=TaskStatus.FAILED, error=error)

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list(self, scope_id: str | None = None, *, limit: int | None = None) -> list[TaskView]:
        """Tasks oldest first, optionally filtered by scope."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(
                col(TaskRow.created_at).asc(),
                col(TaskRow.id).asc(),
            )
            if scope_id is not None:
                statement = statement.where(TaskRow.scope_id == scope_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_events(self, task_id: str) -> list[TaskEventView]:
        """Audit trail of one task, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.id).asc()),
            ).all()
        return [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in rows
        ]

    def counts_by_status(self, scope_id: str | None = None) -> dict[TaskStatus, int]:
        counts = dict.fromkeys(TaskStatus, 0)
        with Session(self.engine) as session:
            statement = select(TaskRow.status, func.count()).group_by(TaskRow.status)
            if scope_id is not None:
                statement = statement.where(TaskRow.scope_id == scope_id)
            for status, count in session.exec(statement).all():
                counts[TaskStatus(status)] = int(count)
        return counts

    def _finish(self, task_id: str, *, status: TaskStatus, error: str | None) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(
                    status=status.value,
                    error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Ignoring %s for task %s: not in progress", status.value, task_id)
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=status.value,
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status,
                details={"error": error} if error is not None else {},
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        id=row.task_id,
        scope_id=row.scope_id,
        type=row.task_type,
        payload=load_json_object(row.payload_json),
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        error=row.error,
    )
