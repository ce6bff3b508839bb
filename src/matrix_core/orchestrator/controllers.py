"""Controllers for planning, orchestration, worker and workflow CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

from matrix_core.config import Settings
from matrix_core.errors import WorkflowDefinitionError
from matrix_core.orchestrator.models import OrchestrationResult
from matrix_core.runtime import open_runtime
from matrix_core.worker import AgentWorker, WorkerRunSummary, run_workers


@dataclass(slots=True)
class PlanCommand:
    db_path: Path | None
    scope_id: str
    goal: str


@dataclass(slots=True)
class OrchestrateCommand:
    """CLI input for a one-shot plan + orchestrate run."""

    db_path: Path | None
    scope_id: str
    goal: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    task_types: tuple[str, ...]
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class WorkflowRunCommand:
    """CLI input for running a workflow definition file."""

    db_path: Path | None
    definition_path: Path


@dataclass(slots=True)
class WorkflowCliResult:
    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Plan goals, run orchestrations, workers and workflows."""

    def plan(self, command: PlanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            plan = runtime.orchestrator.create_plan(command.scope_id, command.goal)
        lines = [f"Plan steps: {len(plan)}"]
        for step in sorted(plan, key=lambda item: item.priority, reverse=True):
            depends = ",".join(kind.value for kind in step.dependencies) or "-"
            tools = ",".join(call.name for call in step.tool_calls) or "-"
            lines.append(
                f"  {step.agent_kind.value} priority={step.priority} "
                f"depends_on={depends} tools={tools}",
            )
        return lines

    def orchestrate(self, command: OrchestrateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            result = asyncio.run(runtime.orchestrator.run_goal(command.scope_id, command.goal))
        return _render_orchestration(result)

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            workers = runtime.build_workers(command.task_types or None)
            if command.once:
                summaries = asyncio.run(_run_once(workers))
            else:
                summaries = asyncio.run(
                    run_workers(
                        workers,
                        max_tasks=command.max_tasks,
                        max_idle_polls=command.max_idle_polls,
                        handle_signals=True,
                    ),
                )

        lines = []
        for task_type, summary in summaries.items():
            lines.append(
                f"Worker summary [{task_type}]: "
                f"processed={summary.processed} succeeded={summary.succeeded} "
                f"failed={summary.failed} idle_polls={summary.idle_polls}",
            )
        return lines

    def run_workflow(self, command: WorkflowRunCommand) -> WorkflowCliResult:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            payload = json.loads(command.definition_path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            return WorkflowCliResult(
                lines=[f"Cannot read workflow file {command.definition_path}: {exc}"],
                success=False,
            )
        if not isinstance(payload, dict):
            return WorkflowCliResult(
                lines=[f"Workflow file {command.definition_path} must hold a JSON object"],
                success=False,
            )

        with open_runtime(settings) as runtime:
            try:
                definition = runtime.workflows.create_from_dict(payload)
            except WorkflowDefinitionError as exc:
                return WorkflowCliResult(lines=[f"Invalid workflow: {exc}"], success=False)
            result = asyncio.run(runtime.workflows.execute(definition.id))

        lines = [f"Workflow: {definition.id} ({definition.name})"]
        execution = result.execution
        if execution is not None:
            lines.append(
                f"Execution: {execution.id} status={execution.status.value} "
                f"transitions={execution.transitions}",
            )
            for step_id, outcome in execution.results.items():
                status = "ok" if outcome.success else f"failed: {outcome.error}"
                lines.append(f"  {step_id} {status} ({outcome.duration_ms} ms)")
        if result.error:
            lines.append(f"Error: {result.error}")
        return WorkflowCliResult(lines=lines, success=result.success)


async def _run_once(workers: list[AgentWorker]) -> dict[str, WorkerRunSummary]:
    summaries = await asyncio.gather(*(worker.run_once() for worker in workers))
    return {worker.task_type: summary for worker, summary in zip(workers, summaries, strict=True)}


def _render_orchestration(result: OrchestrationResult) -> list[str]:
    lines = [
        f"Orchestration: succeeded={result.succeeded} cancelled={result.cancelled} "
        f"duration_ms={result.duration_ms}",
    ]
    for record in result.executions:
        output = record.response.output
        rendered = output if isinstance(output, str) else json.dumps(output, default=str)
        lines.append(
            f"  ran {record.agent_kind.value} action={record.response.action} "
            f"tools={len(record.tools_used)} output={rendered}",
        )
    for error in result.errors:
        lines.append(f"  error {error.agent_kind.value}: {error.error}")
    for skipped in result.skipped:
        missing = ",".join(kind.value for kind in skipped.missing_dependencies)
        lines.append(f"  skipped {skipped.agent_kind.value}: missing={missing} ({skipped.reason})")
    return lines
