"""Background worker loops: one per task type, each claiming from its queue lane."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from matrix_core.errors import AgentExecutionError
from matrix_core.graph.models import GraphRef, NodeType
from matrix_core.graph.store import GraphStore
from matrix_core.memory.store import MemoryStore
from matrix_core.orchestrator.agents import AgentRegistry
from matrix_core.orchestrator.models import AgentContext, AgentKind, RelatedMemory
from matrix_core.queue.models import TaskView
from matrix_core.queue.repository import TaskQueue
from matrix_core.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

PRODUCED = "PRODUCED"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.idle_polls += other.idle_polls


class AgentWorker:
    """Claims tasks of one type and drives one workflow run or agent call per task."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_type: str,
        queue: TaskQueue,
        agents: AgentRegistry,
        memory: MemoryStore | None = None,
        graph: GraphStore | None = None,
        workflows: WorkflowEngine | None = None,
        poll_interval_seconds: float = 0.4,
        pause_after_task_seconds: float = 0.2,
        hint_query: str = "summary runtime-log",
        hint_top_k: int = 2,
        agent_timeout_seconds: float = 120.0,
    ) -> None:
        self.task_type = task_type
        self.queue = queue
        self.agents = agents
        self.memory = memory
        self.graph = graph
        self.workflows = workflows
        self.poll_interval_seconds = poll_interval_seconds
        self.pause_after_task_seconds = pause_after_task_seconds
        self.hint_query = hint_query
        self.hint_top_k = hint_top_k
        self.agent_timeout_seconds = agent_timeout_seconds
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def run_once(self) -> WorkerRunSummary:
        """Process at most one task from this worker's lane."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        task = await asyncio.to_thread(self.queue.claim, self.task_type)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            await self._process(task)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Task %s (%s) failed: %s", task.id, task.type, exc)
            await asyncio.to_thread(self.queue.fail, task.id, str(exc) or type(exc).__name__)
            summary.failed = 1
            return summary

        await asyncio.to_thread(self.queue.complete, task.id)
        summary.succeeded = 1
        return summary

    async def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped, ``max_tasks`` are processed or ``max_idle_polls`` in a row."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while not self.stop_requested:
            if max_tasks is not None and aggregate.processed >= max_tasks:
                break
            try:
                summary = await self.run_once()
            except Exception:
                logger.exception("Worker %s poll failed", self.task_type)
                summary = WorkerRunSummary(idle_polls=1)
            aggregate.add(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                await self._sleep_with_stop(self.poll_interval_seconds)
                continue

            consecutive_idle = 0
            await self._sleep_with_stop(self.pause_after_task_seconds)
        return aggregate

    async def _process(self, task: TaskView) -> None:
        workflow_id = task.payload.get("workflow_id")
        if workflow_id:
            await self._run_workflow(str(workflow_id))
            return

        try:
            kind = AgentKind(task.type)
        except ValueError as exc:
            raise AgentExecutionError(f"No agent kind for task type {task.type!r}") from exc

        context = AgentContext(
            scope_id=task.scope_id,
            goal=str(task.payload.get("goal") or ""),
            agent_kind=kind,
            related_memory=await self._memory_hints(task.scope_id),
            extra={"task_id": task.id, "payload": dict(task.payload)},
        )
        response = await asyncio.wait_for(
            self.agents.get(kind).process(context),
            timeout=self.agent_timeout_seconds,
        )
        output = response.output if response.output is not None else response.reasoning
        text = output if isinstance(output, str) else json.dumps(output, default=str)
        if text.strip():
            await asyncio.to_thread(self._store_output, task, text)

    async def _run_workflow(self, workflow_id: str) -> None:
        if self.workflows is None:
            raise RuntimeError("No workflow engine configured")
        result = await self.workflows.execute(workflow_id)
        if not result.success:
            raise RuntimeError(result.error or f"Workflow {workflow_id} failed")

    async def _memory_hints(self, scope_id: str) -> list[RelatedMemory]:
        if self.memory is None or self.hint_top_k <= 0:
            return []
        try:
            hits = await asyncio.to_thread(
                self.memory.search,
                scope_id,
                self.hint_query,
                self.hint_top_k,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Memory hints unavailable for scope %s: %s", scope_id, exc)
            return []
        return [RelatedMemory(text=hit.record.text, score=hit.score) for hit in hits]

    def _store_output(self, task: TaskView, text: str) -> None:
        if self.memory is None:
            return
        record = self.memory.add(task.scope_id, text, {"kind": task.type, "task_id": task.id})
        if self.graph is None:
            return
        try:
            self.graph.link(
                GraphRef(NodeType.TASK, task.id),
                PRODUCED,
                GraphRef(NodeType.MEMORY, record.id),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to link task %s output into graph: %s", task.id, exc)

    async def _sleep_with_stop(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            return


async def run_workers(
    workers: Sequence[AgentWorker],
    *,
    max_tasks: int | None = None,
    max_idle_polls: int | None = None,
    handle_signals: bool = False,
) -> dict[str, WorkerRunSummary]:
    """Run every worker loop concurrently and return summaries by task type.

    With ``handle_signals`` SIGINT/SIGTERM request a stop on every worker; the
    task in flight finishes before the loops return.
    """

    loops = (
        worker.run_loop(max_tasks=max_tasks, max_idle_polls=max_idle_polls) for worker in workers
    )
    if handle_signals:
        with _signal_handlers(workers):
            summaries = await asyncio.gather(*loops)
    else:
        summaries = await asyncio.gather(*loops)
    return {worker.task_type: summary for worker, summary in zip(workers, summaries, strict=True)}


@contextmanager
def _signal_handlers(workers: Sequence[AgentWorker]) -> Iterator[None]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _handler(signum: signal.Signals) -> None:
        logger.info("Received %s, stopping %d workers", signum.name, len(workers))
        for worker in workers:
            worker.request_stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _handler, signum)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not supported on this platform or outside the main thread.
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
