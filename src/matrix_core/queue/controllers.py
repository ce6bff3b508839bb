"""Controllers for task queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from matrix_core.config import Settings
from matrix_core.queue.repository import TaskQueue


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    scope_id: str
    task_type: str
    payload: dict[str, Any]


@dataclass(slots=True)
class QueueClaimCommand:
    db_path: Path | None
    task_type: str


@dataclass(slots=True)
class QueueFinishCommand:
    """CLI input for complete/fail transitions."""

    db_path: Path | None
    task_id: str
    error: str | None = None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    scope_id: str | None
    limit: int


@dataclass(slots=True)
class QueueInspectCommand:
    db_path: Path | None
    task_id: str


class QueueCliController:
    """Drive task lifecycle transitions by hand."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            task = queue.enqueue(command.scope_id, command.task_type, command.payload)
        return [f"Task enqueued: task_id={task.id} type={task.type} status={task.status.value}"]

    def claim(self, command: QueueClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            task = queue.claim(command.task_type)
        if task is None:
            return [f"No queued tasks of type {command.task_type}"]
        return [
            f"Task claimed: task_id={task.id} scope={task.scope_id} "
            f"payload={json.dumps(task.payload, sort_keys=True)}",
        ]

    def complete(self, command: QueueFinishCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            changed = queue.complete(command.task_id)
        if not changed:
            return [f"Task not in progress, unchanged: {command.task_id}"]
        return [f"Task completed: {command.task_id}"]

    def fail(self, command: QueueFinishCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            changed = queue.fail(command.task_id, command.error or "failed")
        if not changed:
            return [f"Task not in progress, unchanged: {command.task_id}"]
        return [f"Task failed: {command.task_id}"]

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            tasks = queue.list(command.scope_id, limit=command.limit)
            counts = queue.counts_by_status(command.scope_id)

        totals = " ".join(f"{status.value}={count}" for status, count in counts.items())
        lines = [f"Tasks: {len(tasks)} ({totals or 'empty'})"]
        for task in tasks:
            lines.append(
                f"  {task.id} scope={task.scope_id} type={task.type} "
                f"status={task.status.value} created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: QueueInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            task = queue.get(command.task_id)
            events = queue.get_events(command.task_id) if task is not None else []
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.id}",
            f"Scope: {task.scope_id}",
            f"Type: {task.type}",
            f"Status: {task.status.value}",
            f"Error: {task.error or '-'}",
            f"Payload: {json.dumps(task.payload, sort_keys=True)}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines


@contextmanager
def _queue(settings: Settings) -> Iterator[TaskQueue]:
    queue = TaskQueue(settings.db_path)
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()
