from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any

import allure
import pytest

from matrix_core.cancellation import CancelToken
from matrix_core.config import WorkflowSettings
from matrix_core.errors import WorkflowDefinitionError
from matrix_core.queue.models import TaskStatus
from matrix_core.queue.repository import TaskQueue
from matrix_core.workflow import (
    StepKind,
    StepState,
    WorkflowEngine,
    WorkflowStatus,
    WorkflowStep,
    build_executors,
)

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Step State Machine"),
]


def _engine(
    *,
    integrations: dict[str, Any] | None = None,
    queue: TaskQueue | None = None,
    settings: WorkflowSettings | None = None,
) -> WorkflowEngine:
    return WorkflowEngine(
        executors=build_executors(integrations=integrations, queue=queue),
        settings=settings,
    )


def _failing(params: dict[str, Any]) -> Any:
    raise RuntimeError(params.get("message", "integration broke"))


@pytest.mark.asyncio
async def test_failure_edge_routes_to_recovery_step() -> None:
    calls: list[str] = []

    def _notify(params: dict[str, Any]) -> dict[str, Any]:
        calls.append(params["channel"])
        return {"sent": True}

    engine = _engine(integrations={"deploy": _failing, "notify": _notify})
    workflow = engine.create_workflow(
        "deploy",
        "deploy with rollback notice",
        [
            {"id": "a", "kind": "integration", "config": {"name": "deploy"}, "on_success": "b",
             "on_failure": "c"},
            {"id": "b", "kind": "delay", "config": {"seconds": 0}},
            {"id": "c", "kind": "integration", "config": {"name": "notify",
             "params": {"channel": "ops"}}},
        ],
    )

    result = await engine.execute(workflow.id)

    assert result.success is True
    execution = result.execution
    assert execution is not None
    assert execution.status is WorkflowStatus.COMPLETED
    assert execution.step_states == {
        "a": StepState.FAILED,
        "b": StepState.PENDING,
        "c": StepState.SUCCEEDED,
    }
    assert execution.results["a"].error == "integration broke"
    assert execution.results["c"].result == {"sent": True}
    assert execution.transitions == 2
    assert calls == ["ops"]


@pytest.mark.asyncio
async def test_failed_step_without_failure_edge_fails_execution() -> None:
    engine = _engine(integrations={"deploy": _failing})
    workflow = engine.create_workflow(
        "deploy",
        "",
        [{"id": "a", "kind": "integration", "config": {"name": "deploy",
          "params": {"message": "cluster down"}}}],
    )

    result = await engine.execute(workflow.id)

    assert result.success is False
    assert result.execution is not None
    assert result.execution.status is WorkflowStatus.FAILED
    assert result.error == "cluster down"
    assert result.execution.completed_at is not None


@pytest.mark.asyncio
async def test_condition_step_reads_accumulated_results() -> None:
    async def _build(params: dict[str, Any]) -> dict[str, Any]:
        return {"artifacts": params["count"]}

    engine = _engine(integrations={"build": _build})
    workflow = engine.create_workflow(
        "gate",
        "",
        [
            {"id": "build", "kind": "integration", "config": {"name": "build",
             "params": {"count": 3}}, "on_success": "check"},
            {"id": "check", "kind": "condition",
             "config": {"condition": "build.success && build.result.artifacts >= 3"},
             "on_success": "publish", "on_failure": "abort"},
            {"id": "publish", "kind": "delay", "config": {"delay_ms": 0}},
            {"id": "abort", "kind": "condition", "config": {"condition": "false"}},
        ],
    )

    result = await engine.execute(workflow.id)

    assert result.success is True
    assert result.execution is not None
    assert result.execution.results["check"].result == {
        "condition": "build.success && build.result.artifacts >= 3",
        "result": True,
    }
    assert result.execution.step_states["publish"] is StepState.SUCCEEDED
    assert result.execution.step_states["abort"] is StepState.PENDING


@pytest.mark.asyncio
async def test_invalid_condition_fails_step_instead_of_raising() -> None:
    engine = _engine()
    workflow = engine.create_workflow(
        "bad",
        "",
        [{"id": "check", "kind": "condition", "config": {"condition": "__import__('os') =="}}],
    )

    result = await engine.execute(workflow.id)

    assert result.success is False
    assert "Invalid condition" in (result.error or "")


@pytest.mark.asyncio
async def test_cycles_stop_at_transition_budget() -> None:
    engine = _engine(settings=WorkflowSettings(max_transitions=5))
    workflow = engine.create_workflow(
        "loop",
        "",
        [{"id": "spin", "kind": "condition", "config": {"condition": "true"},
          "on_success": "spin"}],
    )

    result = await engine.execute(workflow.id)

    assert result.success is False
    assert result.execution is not None
    assert result.execution.transitions == 5
    assert "budget" in (result.error or "")


@pytest.mark.asyncio
async def test_step_timeout_becomes_failed_outcome() -> None:
    engine = _engine()
    workflow = engine.create_workflow(
        "slow",
        "",
        [{"id": "wait", "kind": "delay", "config": {"seconds": 5}, "timeout_seconds": 0.05}],
    )

    result = await engine.execute(workflow.id)

    assert result.success is False
    assert "timed out" in (result.error or "")


@pytest.mark.asyncio
async def test_delay_steps_of_concurrent_workflows_overlap() -> None:
    engine = _engine()
    first = engine.create_workflow(
        "first",
        "",
        [{"id": "wait", "kind": "delay", "config": {"seconds": 0.2}}],
    )
    second = engine.create_workflow(
        "second",
        "",
        [{"id": "wait", "kind": "delay", "config": {"seconds": 0.2}}],
    )

    started = time.monotonic()
    results = await asyncio.gather(engine.execute(first.id), engine.execute(second.id))
    elapsed = time.monotonic() - started

    assert [result.success for result in results] == [True, True]
    assert elapsed < 0.35


@pytest.mark.asyncio
async def test_cancellation_is_checked_between_steps() -> None:
    token = CancelToken()

    def _cancel(params: dict[str, Any]) -> str:  # noqa: ARG001
        token.cancel("operator abort")
        return "cancel requested"

    engine = _engine(integrations={"cancel": _cancel})
    workflow = engine.create_workflow(
        "cancellable",
        "",
        [
            {"id": "first", "kind": "integration", "config": {"name": "cancel"},
             "on_success": "second"},
            {"id": "second", "kind": "delay", "config": {"seconds": 0}},
        ],
    )

    result = await engine.execute(workflow.id, cancel_token=token)

    assert result.success is False
    assert result.execution is not None
    assert result.execution.status is WorkflowStatus.CANCELLED
    assert result.error == "operator abort"
    assert result.execution.step_states["first"] is StepState.SUCCEEDED
    assert result.execution.step_states["second"] is StepState.PENDING


@pytest.mark.asyncio
async def test_unknown_step_at_runtime_fails_execution() -> None:
    engine = _engine()
    workflow = engine.create_workflow(
        "broken",
        "",
        [{"id": "a", "kind": "delay", "config": {"seconds": 0}}],
    )
    workflow.steps[0] = WorkflowStep(
        id="a",
        kind=StepKind.DELAY,
        config={"seconds": 0},
        on_success="ghost",
    )

    result = await engine.execute(workflow.id)

    assert result.success is False
    assert result.error == "Unknown step: ghost"


@pytest.mark.asyncio
async def test_missing_disabled_and_empty_workflows_are_not_started() -> None:
    engine = _engine()
    disabled = engine.create_workflow(
        "off",
        "",
        [{"id": "a", "kind": "delay", "config": {"seconds": 0}}],
        enabled=False,
    )
    empty = engine.create_workflow("empty", "", [])

    missing = await engine.execute("workflow-missing")
    off = await engine.execute(disabled.id)
    nothing = await engine.execute(empty.id)

    assert missing.error == "Workflow not found: workflow-missing"
    assert off.error == f"Workflow is disabled: {disabled.id}"
    assert nothing.error == f"Workflow has no steps: {empty.id}"
    assert all(item.execution is None for item in (missing, off, nothing))
    assert engine.list_executions() == []

    assert engine.set_enabled(disabled.id, True) is True
    assert (await engine.execute(disabled.id)).success is True
    assert engine.set_enabled("workflow-missing", True) is False


@pytest.mark.asyncio
async def test_task_step_enqueues_into_queue(task_queue: TaskQueue) -> None:
    engine = _engine(queue=task_queue)
    workflow = engine.create_workflow(
        "handoff",
        "",
        [{"id": "enqueue", "kind": "task", "config": {
            "scope_id": "p1",
            "task_type": "coding",
            "payload": {"goal": "implement search"},
        }}],
    )

    result = await engine.execute(workflow.id)

    assert result.success is True
    [task] = task_queue.list("p1")
    assert task.type == "coding"
    assert task.status is TaskStatus.QUEUED
    assert task.payload == {"goal": "implement search"}
    assert result.execution is not None
    assert result.execution.results["enqueue"].result["id"] == task.id


@pytest.mark.asyncio
async def test_steps_without_collaborators_fail_cleanly() -> None:
    engine = _engine()
    workflow = engine.create_workflow(
        "orphans",
        "",
        [
            {"id": "agent", "kind": "agent", "config": {"goal": "x", "scope_id": "p1"},
             "on_failure": "task"},
            {"id": "task", "kind": "task", "config": {"task_type": "coding"},
             "on_failure": "integration"},
            {"id": "integration", "kind": "integration", "config": {"name": "nothing"}},
        ],
    )

    result = await engine.execute(workflow.id)

    assert result.execution is not None
    errors = {step_id: outcome.error for step_id, outcome in result.execution.results.items()}
    assert errors == {
        "agent": "No orchestrator configured for agent steps",
        "task": "No task queue configured for task steps",
        "integration": "Unknown integration: 'nothing'",
    }


def test_create_workflow_validates_step_graph() -> None:
    engine = _engine()

    with pytest.raises(WorkflowDefinitionError, match="Duplicate step id"):
        engine.create_workflow(
            "dup",
            "",
            [{"id": "a", "kind": "delay"}, {"id": "a", "kind": "delay"}],
        )
    with pytest.raises(WorkflowDefinitionError, match="unknown step 'z'"):
        engine.create_workflow("dangling", "", [{"id": "a", "kind": "delay", "on_success": "z"}])
    with pytest.raises(WorkflowDefinitionError, match="unknown kind"):
        engine.create_workflow("kind", "", [{"id": "a", "kind": "teleport"}])
    with pytest.raises(WorkflowDefinitionError, match="non-empty 'id'"):
        engine.create_workflow("id", "", [{"kind": "delay"}])
    assert engine.list_workflows() == []


def test_load_directory_registers_json_definitions(tmp_path: Path) -> None:
    (tmp_path / "b.json").write_text(
        json.dumps({"id": "wf-b", "name": "second", "steps": [{"id": "s", "type": "delay"}]}),
        encoding="utf-8",
    )
    (tmp_path / "a.json").write_text(
        json.dumps({"id": "wf-a", "name": "first", "steps": [
            {"id": "s", "type": "condition", "config": {"condition": "true"},
             "onSuccess": "t"},
            {"id": "t", "type": "delay"},
        ]}),
        encoding="utf-8",
    )
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    engine = _engine()

    loaded = engine.load_directory(tmp_path)

    assert [definition.id for definition in loaded] == ["wf-a", "wf-b"]
    first = engine.get_workflow("wf-a")
    assert first is not None
    assert first.steps[0].on_success == "t"


def test_load_directory_rejects_invalid_json(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(WorkflowDefinitionError, match="Invalid workflow file"):
        _engine().load_directory(tmp_path)


@pytest.mark.asyncio
async def test_execution_history_is_bounded_and_newest_first() -> None:
    engine = _engine(settings=WorkflowSettings(execution_history_capacity=2))
    workflow = engine.create_workflow(
        "tiny",
        "",
        [{"id": "a", "kind": "delay", "config": {"seconds": 0}}],
    )

    runs = [await engine.execute(workflow.id) for _ in range(3)]

    executions = engine.list_executions(workflow.id)
    assert [execution.id for execution in executions] == [
        runs[2].execution.id,  # type: ignore[union-attr]
        runs[1].execution.id,  # type: ignore[union-attr]
    ]
    assert engine.get_execution(runs[0].execution.id) is None  # type: ignore[union-attr]
    assert engine.list_executions("other") == []
