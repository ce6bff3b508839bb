"""Durable claim-based task queue."""

from matrix_core.queue.models import TaskEventView, TaskStatus, TaskView
from matrix_core.queue.repository import TaskQueue

__all__ = ["TaskEventView", "TaskQueue", "TaskStatus", "TaskView"]
