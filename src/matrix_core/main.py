"""CLI entrypoint for matrix-core."""

import json
import logging
import os
from pathlib import Path
from typing import Any

import rich_click as click

from matrix_core import __version__
from matrix_core.graph.controllers import (
    GraphCliController,
    GraphLinkCommand,
    GraphNeighborsCommand,
    GraphSummaryCommand,
)
from matrix_core.graph.models import GraphRef
from matrix_core.memory.controllers import (
    MemoryAddCommand,
    MemoryCliController,
    MemoryListCommand,
    MemorySearchCommand,
    ScopeSummaryCommand,
)
from matrix_core.orchestrator.controllers import (
    OrchestrateCommand,
    OrchestratorCliController,
    PlanCommand,
    WorkerCommand,
    WorkflowRunCommand,
)
from matrix_core.queue.controllers import (
    QueueClaimCommand,
    QueueCliController,
    QueueEnqueueCommand,
    QueueFinishCommand,
    QueueInspectCommand,
    QueueListCommand,
)

click.rich_click.USE_MARKDOWN = True
MEMORY_CONTROLLER = MemoryCliController()
GRAPH_CONTROLLER = GraphCliController()
QUEUE_CONTROLLER = QueueCliController()
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

DB_PATH_HELP = "SQLite DB path. Defaults to MATRIX_CORE_DB_PATH."


@click.group()
@click.version_option(version=__version__, prog_name="matrix-core")
def matrix_core() -> None:
    """Task and agent orchestration core."""

    logging.basicConfig(
        level=os.getenv("MATRIX_CORE_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@matrix_core.group()
def memory() -> None:
    """Semantic memory commands."""


@memory.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option("--text", required=True, help="Text to remember.")
@click.option("--kind", default=None, help="Optional metadata kind, for example runtime-log.")
@click.option(
    "--unique/--allow-duplicates",
    default=False,
    show_default=True,
    help="Skip the write when identical text already exists in the scope.",
)
def memory_add(
    db_path: Path | None,
    scope_id: str,
    text: str,
    kind: str | None,
    unique: bool,
) -> None:
    """Embed and store one memory record."""

    _emit_lines(
        MEMORY_CONTROLLER.add(
            MemoryAddCommand(
                db_path=db_path,
                scope_id=scope_id,
                text=text,
                kind=kind,
                unique=unique,
            ),
        ),
    )


@memory.command("search")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option("--query", required=True, help="Search text.")
@click.option(
    "--top-k",
    type=click.IntRange(min=0, max=100),
    default=5,
    show_default=True,
    help="Max hits to print.",
)
def memory_search(db_path: Path | None, scope_id: str, query: str, top_k: int) -> None:
    """Rank scope memory by similarity to a query."""

    _emit_lines(
        MEMORY_CONTROLLER.search(
            MemorySearchCommand(db_path=db_path, scope_id=scope_id, query=query, top_k=top_k),
        ),
    )


@memory.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Print at most this many of the newest records.",
)
def memory_list(db_path: Path | None, scope_id: str, limit: int) -> None:
    """List scope memory records, oldest first."""

    _emit_lines(
        MEMORY_CONTROLLER.list_records(
            MemoryListCommand(db_path=db_path, scope_id=scope_id, limit=limit),
        ),
    )


@matrix_core.group()
def graph() -> None:
    """Graph link commands. Nodes are written as `Type:id`, for example `Project:p1`."""


@graph.command("link")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--from", "from_ref", required=True, callback=lambda _c, _p, v: _graph_ref(v))
@click.option("--relation", required=True, help="Edge relation, for example DEPENDS_ON.")
@click.option("--to", "to_ref", required=True, callback=lambda _c, _p, v: _graph_ref(v))
def graph_link(db_path: Path | None, from_ref: GraphRef, relation: str, to_ref: GraphRef) -> None:
    """Create one typed edge."""

    _emit_lines(
        GRAPH_CONTROLLER.link(
            GraphLinkCommand(
                db_path=db_path,
                from_ref=from_ref,
                relation=relation,
                to_ref=to_ref,
            ),
        ),
    )


@graph.command("neighbors")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--node", "ref", required=True, callback=lambda _c, _p, v: _graph_ref(v))
def graph_neighbors(db_path: Path | None, ref: GraphRef) -> None:
    """List edges where the node is either end."""

    _emit_lines(GRAPH_CONTROLLER.neighbors(GraphNeighborsCommand(db_path=db_path, ref=ref)))


@graph.command("summary")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def graph_summary(db_path: Path | None) -> None:
    """Count edges by relation and nodes by type."""

    _emit_lines(GRAPH_CONTROLLER.summary(GraphSummaryCommand(db_path=db_path)))


@matrix_core.group()
def queue() -> None:
    """Task queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option("--type", "task_type", required=True, help="Task type, for example coding.")
@click.option("--payload", default="{}", show_default=True, help="JSON object payload.")
def queue_enqueue(db_path: Path | None, scope_id: str, task_type: str, payload: str) -> None:
    """Add a queued task."""

    _emit_lines(
        QUEUE_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                scope_id=scope_id,
                task_type=task_type,
                payload=_json_object(payload),
            ),
        ),
    )


@queue.command("claim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--type", "task_type", required=True, help="Task type to claim.")
def queue_claim(db_path: Path | None, task_type: str) -> None:
    """Claim the oldest queued task of a type."""

    _emit_lines(QUEUE_CONTROLLER.claim(QueueClaimCommand(db_path=db_path, task_type=task_type)))


@queue.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def queue_complete(db_path: Path | None, task_id: str) -> None:
    """Mark an in-progress task completed."""

    _emit_lines(QUEUE_CONTROLLER.complete(QueueFinishCommand(db_path=db_path, task_id=task_id)))


@queue.command("fail")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option("--error", default="failed", show_default=True, help="Error message to record.")
def queue_fail(db_path: Path | None, task_id: str, error: str) -> None:
    """Mark an in-progress task failed."""

    _emit_lines(
        QUEUE_CONTROLLER.fail(QueueFinishCommand(db_path=db_path, task_id=task_id, error=error)),
    )


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", default=None, help="Optional scope filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def queue_list(db_path: Path | None, scope_id: str | None, limit: int) -> None:
    """List tasks, oldest first."""

    _emit_lines(
        QUEUE_CONTROLLER.list_tasks(
            QueueListCommand(db_path=db_path, scope_id=scope_id, limit=limit),
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def queue_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its event history."""

    _emit_lines(
        QUEUE_CONTROLLER.inspect_task(QueueInspectCommand(db_path=db_path, task_id=task_id)),
    )


@matrix_core.command("plan")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option("--goal", required=True, help="Goal text used to select plan steps.")
def plan(db_path: Path | None, scope_id: str, goal: str) -> None:
    """Show the plan for a goal without running it."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.plan(PlanCommand(db_path=db_path, scope_id=scope_id, goal=goal)),
    )


@matrix_core.command("orchestrate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option("--goal", required=True, help="Goal text.")
def orchestrate(db_path: Path | None, scope_id: str, goal: str) -> None:
    """Plan and run a goal through the configured agents."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.orchestrate(
            OrchestrateCommand(db_path=db_path, scope_id=scope_id, goal=goal),
        ),
    )


@matrix_core.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--task-type",
    "task_types",
    multiple=True,
    help="Task type lane to serve. Repeat for several; defaults to MATRIX_CORE_WORKER_TASK_TYPES.",
)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle per lane or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks per lane in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop a lane after this many empty polls in a row.",
)
@click.option("--forever", is_flag=True, default=False, help="Ignore --max-idle-polls.")
def worker(  # noqa: PLR0913
    db_path: Path | None,
    task_types: tuple[str, ...],
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    forever: bool,
) -> None:
    """Run background worker lanes."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                task_types=tuple(task_type.strip().lower() for task_type in task_types),
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=None if forever else max_idle_polls,
            ),
        ),
    )


@matrix_core.command("summary")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
def summary(db_path: Path | None, scope_id: str) -> None:
    """Build a scope status summary and store it in memory."""

    _emit_lines(
        MEMORY_CONTROLLER.summary(ScopeSummaryCommand(db_path=db_path, scope_id=scope_id)),
    )


@matrix_core.group()
def workflow() -> None:
    """Workflow commands."""


@workflow.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument(
    "definition_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def workflow_run(db_path: Path | None, definition_path: Path) -> None:
    """Register a JSON workflow definition and run it once."""

    result = ORCHESTRATOR_CONTROLLER.run_workflow(
        WorkflowRunCommand(db_path=db_path, definition_path=definition_path),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Workflow did not complete.")


def _graph_ref(value: str) -> GraphRef:
    try:
        return GraphRef.parse(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _json_object(value: str) -> dict[str, Any]:
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"Invalid JSON: {exc}", param_hint="--payload") from exc
    if not isinstance(payload, dict):
        raise click.BadParameter("Payload must be a JSON object.", param_hint="--payload")
    return payload


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    matrix_core()
