"""Wire stores, queue, agents, orchestrator and workflow engine from ``Settings``."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from matrix_core.config import Settings
from matrix_core.graph.backends import InMemoryGraphBackend, SqlGraphBackend
from matrix_core.graph.store import GraphStore
from matrix_core.memory.backends import LinearScanMemoryBackend, SqlMemoryBackend
from matrix_core.memory.embedder import Embedder, build_embedder
from matrix_core.memory.store import MemoryStore
from matrix_core.orchestrator.agents import Agent, AgentRegistry, CommandAgent, EchoAgent
from matrix_core.orchestrator.engine import AgentOrchestrator
from matrix_core.orchestrator.tools import ToolRegistry, register_builtin_tools
from matrix_core.queue.repository import TaskQueue
from matrix_core.storage.alembic_runner import upgrade_head
from matrix_core.storage.common import build_sqlite_engine
from matrix_core.storage.selector import BackendSelector
from matrix_core.worker import AgentWorker
from matrix_core.workflow.engine import WorkflowEngine
from matrix_core.workflow.steps import Integration, build_executors

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Fully wired core components sharing one SQLite engine."""

    settings: Settings
    engine: Engine
    embedder: Embedder
    graph: GraphStore
    memory: MemoryStore
    queue: TaskQueue
    tools: ToolRegistry
    agents: AgentRegistry
    orchestrator: AgentOrchestrator
    workflows: WorkflowEngine

    def build_workers(self, task_types: tuple[str, ...] | None = None) -> list[AgentWorker]:
        worker_settings = self.settings.worker
        return [
            AgentWorker(
                task_type=task_type,
                queue=self.queue,
                agents=self.agents,
                memory=self.memory,
                graph=self.graph,
                workflows=self.workflows,
                poll_interval_seconds=worker_settings.poll_interval_seconds,
                pause_after_task_seconds=worker_settings.pause_after_task_seconds,
                hint_query=self.settings.orchestrator.memory_hint_query,
                hint_top_k=worker_settings.context_hint_top_k,
                agent_timeout_seconds=self.settings.orchestrator.agent_timeout_seconds,
            )
            for task_type in (task_types or worker_settings.task_types)
        ]

    def close(self) -> None:
        close_embedder = getattr(self.embedder, "close", None)
        if callable(close_embedder):
            close_embedder()
        self.engine.dispose()


def build_runtime(
    settings: Settings,
    *,
    agent: Agent | None = None,
    integrations: Mapping[str, Integration] | None = None,
) -> Runtime:
    """Migrate the database and build every component.

    Without an explicit ``agent`` the configured command agent is used, or the
    built-in echo agent when no command is configured.
    """

    settings.validate()
    upgrade_head(settings.db_path)
    engine = build_sqlite_engine(
        db_path=settings.db_path,
        busy_timeout_ms=settings.storage.busy_timeout_ms,
    )
    embedder = build_embedder(settings.embedding)

    graph = GraphStore(
        primary=SqlGraphBackend(engine),
        secondary=InMemoryGraphBackend(settings.storage.graph_snapshot_path),
        selector=_selector("graph", forced=settings.storage.force_secondary_graph),
    )
    memory = MemoryStore(
        primary=SqlMemoryBackend(engine, dimensions=embedder.dimensions),
        secondary=LinearScanMemoryBackend(settings.storage.memory_snapshot_path),
        embedder=embedder,
        selector=_selector("memory", forced=settings.storage.force_secondary_memory),
        graph=graph,
        org_scope_id=settings.memory.org_scope_id,
        default_top_k=settings.memory.default_top_k,
    )
    queue = TaskQueue(settings.db_path, engine=engine)

    tools = ToolRegistry(timeout_seconds=settings.orchestrator.tool_timeout_seconds)
    register_builtin_tools(tools, memory=memory, graph=graph, queue=queue)
    agents = AgentRegistry.uniform(agent or _default_agent(settings))
    orchestrator = AgentOrchestrator(
        agents=agents,
        tools=tools,
        memory=memory,
        settings=settings.orchestrator,
    )
    workflows = WorkflowEngine(
        executors=build_executors(
            orchestrator=orchestrator,
            queue=queue,
            integrations=integrations,
        ),
        settings=settings.workflow,
    )
    if settings.workflow.definitions_dir is not None:
        loaded = workflows.load_directory(settings.workflow.definitions_dir)
        logger.info(
            "Loaded %d workflow definitions from %s",
            len(loaded),
            settings.workflow.definitions_dir,
        )

    return Runtime(
        settings=settings,
        engine=engine,
        embedder=embedder,
        graph=graph,
        memory=memory,
        queue=queue,
        tools=tools,
        agents=agents,
        orchestrator=orchestrator,
        workflows=workflows,
    )


@contextmanager
def open_runtime(settings: Settings, *, agent: Agent | None = None) -> Iterator[Runtime]:
    runtime = build_runtime(settings, agent=agent)
    try:
        yield runtime
    finally:
        runtime.close()


def _selector(name: str, *, forced: bool) -> BackendSelector:
    if forced:
        return BackendSelector.forced_secondary(name)
    return BackendSelector(name=name)


def _default_agent(settings: Settings) -> Agent:
    if settings.orchestrator.agent_command:
        return CommandAgent(settings.orchestrator.agent_command)
    return EchoAgent()
