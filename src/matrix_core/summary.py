"""Deterministic per-scope status summary, optionally stored back into memory."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from matrix_core.graph.models import GraphRef, NodeType
from matrix_core.graph.store import GraphStore
from matrix_core.memory.models import MemoryHit, MemoryRecord
from matrix_core.memory.store import MemoryStore
from matrix_core.queue.models import TaskStatus
from matrix_core.queue.repository import TaskQueue

logger = logging.getLogger(__name__)

SUMMARY_KIND = "summary"
HIGHLIGHT_QUERY = "summary runtime-log"
HIGHLIGHT_TOP_K = 3
SNIPPET_CHARS = 140
RECENT_TASKS = 5

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class ScopeSummary:
    scope_id: str
    task_counts: dict[str, int]
    memory_count: int
    graph_edges: int
    recent_tasks: list[tuple[str, str, str]] = field(default_factory=list)
    highlights: list[MemoryHit] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, Any]:
        return {
            "tasks": dict(self.task_counts),
            "memory": self.memory_count,
            "graph_edges": self.graph_edges,
        }

    @property
    def text(self) -> str:
        tasks = ", ".join(f"{status}={count}" for status, count in self.task_counts.items())
        lines = [
            f"Scope {self.scope_id} summary",
            f"Tasks: {tasks}",
            f"Memory: {self.memory_count}, Graph edges: {self.graph_edges}",
        ]
        if self.recent_tasks:
            lines.append("Recent tasks:")
            lines.extend(
                f"- {task_id} {task_type} [{status}]"
                for task_id, task_type, status in self.recent_tasks
            )
        if self.highlights:
            lines.append("Memory highlights:")
            for hit in self.highlights:
                snippet = _WHITESPACE_RE.sub(" ", hit.record.text[:SNIPPET_CHARS])
                lines.append(f"- ({hit.score:.3f}) {snippet}")
        return "\n".join(lines)


def build_scope_summary(
    scope_id: str,
    *,
    memory: MemoryStore,
    queue: TaskQueue,
    graph: GraphStore | None = None,
) -> ScopeSummary:
    """Collect task counts, memory size, graph degree and memory highlights for a scope."""

    counts = queue.counts_by_status(scope_id)
    tasks = queue.list(scope_id)
    recent = sorted(tasks, key=lambda task: task.updated_at, reverse=True)[:RECENT_TASKS]

    edges = 0
    if graph is not None:
        node_type = NodeType.ORG if scope_id == memory.org_scope_id else NodeType.PROJECT
        edges = len(graph.neighbors(GraphRef(node_type, scope_id)))

    return ScopeSummary(
        scope_id=scope_id,
        task_counts={status.value: counts.get(status, 0) for status in TaskStatus},
        memory_count=memory.count(scope_id),
        graph_edges=edges,
        recent_tasks=[(task.id, task.type, task.status.value) for task in recent],
        highlights=memory.search(scope_id, HIGHLIGHT_QUERY, HIGHLIGHT_TOP_K),
    )


def store_scope_summary(
    scope_id: str,
    *,
    memory: MemoryStore,
    queue: TaskQueue,
    graph: GraphStore | None = None,
) -> tuple[ScopeSummary, MemoryRecord | None]:
    """Build the summary and add it to memory unless an identical one is already there."""

    summary = build_scope_summary(scope_id, memory=memory, queue=queue, graph=graph)
    try:
        record = memory.add_unique(
            scope_id,
            summary.text,
            {"kind": SUMMARY_KIND, "counts": summary.counts},
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to add scope summary to memory for %s: %s", scope_id, exc)
        record = None
    return summary, record
