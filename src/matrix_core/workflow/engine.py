"""Workflow engine: definitions registry and the step state machine."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any
from uuid import uuid4

from matrix_core.cancellation import CancelToken
from matrix_core.config import WorkflowSettings
from matrix_core.errors import WorkflowDefinitionError
from matrix_core.storage.common import utc_now
from matrix_core.workflow.models import (
    StepKind,
    StepOutcome,
    StepState,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowRunResult,
    WorkflowStatus,
    WorkflowStep,
)
from matrix_core.workflow.steps import StepExecutor, build_executors

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Walk a workflow's step graph following ``on_success``/``on_failure`` edges.

    Runs start at the first step. When the edge for an outcome is missing the
    run ends: ``completed`` if that last step succeeded, ``failed`` otherwise.
    Cancellation is checked between steps only.
    """

    def __init__(
        self,
        *,
        executors: Mapping[StepKind, StepExecutor] | None = None,
        settings: WorkflowSettings | None = None,
    ) -> None:
        self.settings = settings or WorkflowSettings()
        self.executors = dict(executors or build_executors())
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._executions: OrderedDict[str, WorkflowExecution] = OrderedDict()
        self._lock = threading.Lock()

    def create_workflow(
        self,
        name: str,
        description: str,
        steps: Sequence[WorkflowStep | dict[str, Any]],
        *,
        enabled: bool = True,
        workflow_id: str | None = None,
    ) -> WorkflowDefinition:
        """Validate and register a definition; raises ``WorkflowDefinitionError``."""

        parsed = [
            step if isinstance(step, WorkflowStep) else WorkflowStep.from_dict(step)
            for step in steps
        ]
        _validate_steps(parsed)
        now = utc_now()
        definition = WorkflowDefinition(
            id=workflow_id or f"workflow-{uuid4().hex[:12]}",
            name=name,
            description=description,
            steps=parsed,
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._workflows[definition.id] = definition
        logger.info("Workflow created: %s (%s, %d steps)", definition.id, name, len(parsed))
        return definition

    def create_from_dict(self, payload: Mapping[str, Any]) -> WorkflowDefinition:
        """Register a definition in its JSON shape (``name``, ``steps``, optional ``id``)."""

        steps = payload.get("steps")
        if not isinstance(steps, list):
            raise WorkflowDefinitionError("Workflow definition requires a 'steps' list.")
        return self.create_workflow(
            str(payload.get("name") or "unnamed"),
            str(payload.get("description") or ""),
            steps,
            enabled=bool(payload.get("enabled", True)),
            workflow_id=payload.get("id"),
        )

    def load_directory(self, directory: Path) -> list[WorkflowDefinition]:
        """Register every ``*.json`` definition in ``directory``, sorted by file name."""

        loaded = []
        for path in sorted(directory.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise WorkflowDefinitionError(f"Invalid workflow file {path}: {exc}") from exc
            if not isinstance(payload, dict):
                raise WorkflowDefinitionError(f"Workflow file {path} must hold a JSON object.")
            loaded.append(self.create_from_dict(payload))
        return loaded

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        with self._lock:
            return self._workflows.get(workflow_id)

    def list_workflows(self) -> list[WorkflowDefinition]:
        with self._lock:
            return list(self._workflows.values())

    def set_enabled(self, workflow_id: str, enabled: bool) -> bool:
        with self._lock:
            definition = self._workflows.get(workflow_id)
            if definition is None:
                return False
            definition.enabled = enabled
            definition.updated_at = utc_now()
        logger.info("Workflow %s %s", workflow_id, "enabled" if enabled else "disabled")
        return True

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            return self._executions.get(execution_id)

    def list_executions(
        self,
        workflow_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowExecution]:
        """Newest first."""

        with self._lock:
            executions = [
                execution
                for execution in reversed(self._executions.values())
                if workflow_id is None or execution.workflow_id == workflow_id
            ]
        return executions[:limit]

    async def execute(
        self,
        workflow_id: str,
        cancel_token: CancelToken | None = None,
    ) -> WorkflowRunResult:
        """Run a workflow to completion; never raises for step failures."""

        definition = self.get_workflow(workflow_id)
        if definition is None:
            return WorkflowRunResult(success=False, error=f"Workflow not found: {workflow_id}")
        if not definition.enabled:
            return WorkflowRunResult(success=False, error=f"Workflow is disabled: {workflow_id}")
        if not definition.steps:
            return WorkflowRunResult(success=False, error=f"Workflow has no steps: {workflow_id}")

        execution = WorkflowExecution(
            id=f"exec-{uuid4().hex[:12]}",
            workflow_id=workflow_id,
            status=WorkflowStatus.RUNNING,
            current_step=definition.steps[0].id,
            started_at=utc_now(),
            step_states={step.id: StepState.PENDING for step in definition.steps},
        )
        self._store_execution(execution)
        logger.info("Workflow execution started: %s (%s)", execution.id, workflow_id)

        await self._run(definition, execution, cancel_token)

        execution.completed_at = utc_now()
        logger.info(
            "Workflow execution finished: %s status=%s steps=%d",
            execution.id,
            execution.status.value,
            execution.transitions,
        )
        return WorkflowRunResult(
            success=execution.status is WorkflowStatus.COMPLETED,
            execution=execution,
            error=execution.error,
        )

    async def _run(
        self,
        definition: WorkflowDefinition,
        execution: WorkflowExecution,
        cancel_token: CancelToken | None,
    ) -> None:
        step_id: str | None = definition.steps[0].id
        while step_id is not None:
            if cancel_token is not None and cancel_token.cancelled:
                execution.status = WorkflowStatus.CANCELLED
                execution.error = cancel_token.reason
                return
            if execution.transitions >= self.settings.max_transitions:
                execution.status = WorkflowStatus.FAILED
                execution.error = (
                    f"Step budget of {self.settings.max_transitions} transitions exhausted"
                )
                return
            step = definition.step(step_id)
            if step is None:
                execution.status = WorkflowStatus.FAILED
                execution.error = f"Unknown step: {step_id}"
                return

            execution.current_step = step.id
            execution.transitions += 1
            execution.step_states[step.id] = StepState.RUNNING
            outcome = await self._run_step(step, execution)
            execution.results[step.id] = outcome
            execution.step_states[step.id] = (
                StepState.SUCCEEDED if outcome.success else StepState.FAILED
            )
            if not outcome.success:
                logger.warning("Workflow step %s failed: %s", step.id, outcome.error)

            next_step = step.on_success if outcome.success else step.on_failure
            if next_step is None:
                execution.status = (
                    WorkflowStatus.COMPLETED if outcome.success else WorkflowStatus.FAILED
                )
                if not outcome.success:
                    execution.error = outcome.error
                return
            step_id = next_step

    async def _run_step(self, step: WorkflowStep, execution: WorkflowExecution) -> StepOutcome:
        executor = self.executors.get(step.kind)
        if executor is None:
            return StepOutcome(success=False, error=f"No executor for step kind {step.kind.value}")
        config = dict(step.config)
        if step.action:
            config.setdefault("action", step.action)
        timeout = step.timeout_seconds or self.settings.step_timeout_seconds
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                executor.execute(config, execution.results_view()),
                timeout=timeout,
            )
        except TimeoutError:
            outcome = StepOutcome(success=False, error=f"Step timed out after {timeout}s")
        except Exception as exc:  # noqa: BLE001
            outcome = StepOutcome(success=False, error=str(exc) or type(exc).__name__)
        return StepOutcome(
            success=outcome.success,
            result=outcome.result,
            error=outcome.error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _store_execution(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._executions[execution.id] = execution
            while len(self._executions) > self.settings.execution_history_capacity:
                self._executions.popitem(last=False)


def _validate_steps(steps: list[WorkflowStep]) -> None:
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise WorkflowDefinitionError(f"Duplicate step id: {step.id}")
        seen.add(step.id)
    for step in steps:
        for target in (step.on_success, step.on_failure):
            if target is not None and target not in seen:
                raise WorkflowDefinitionError(
                    f"Step {step.id} references unknown step {target!r}",
                )
        if step.timeout_seconds is not None and step.timeout_seconds <= 0:
            raise WorkflowDefinitionError(f"Step {step.id} timeout_seconds must be > 0")
