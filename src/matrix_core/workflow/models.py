"""Domain models for workflow definitions and executions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from matrix_core.errors import WorkflowDefinitionError


class StepKind(str, Enum):
    """Closed set of step executors."""

    TASK = "task"
    AGENT = "agent"
    INTEGRATION = "integration"
    CONDITION = "condition"
    DELAY = "delay"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class WorkflowStep:
    """One node of the step graph with optional outcome edges."""

    id: str
    kind: StepKind
    config: dict[str, Any] = field(default_factory=dict)
    action: str = ""
    on_success: str | None = None
    on_failure: str | None = None
    timeout_seconds: float | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowStep:
        step_id = str(payload.get("id") or "").strip()
        if not step_id:
            raise WorkflowDefinitionError("Workflow step requires a non-empty 'id'.")
        raw_kind = payload.get("kind") or payload.get("type")
        try:
            kind = StepKind(str(raw_kind).strip().lower())
        except ValueError as exc:
            raise WorkflowDefinitionError(
                f"Step {step_id!r} has unknown kind {raw_kind!r}; expected one of "
                f"{', '.join(item.value for item in StepKind)}.",
            ) from exc
        config = payload.get("config") or {}
        if not isinstance(config, dict):
            raise WorkflowDefinitionError(f"Step {step_id!r} config must be an object.")
        timeout = payload.get("timeout_seconds")
        return cls(
            id=step_id,
            kind=kind,
            config=dict(config),
            action=str(payload.get("action") or ""),
            on_success=payload.get("on_success") or payload.get("onSuccess"),
            on_failure=payload.get("on_failure") or payload.get("onFailure"),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )


@dataclass(slots=True)
class WorkflowDefinition:
    id: str
    name: str
    description: str
    steps: list[WorkflowStep]
    enabled: bool
    created_at: datetime
    updated_at: datetime

    def step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """Result envelope every step executor returns."""

    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "result": self.result, "error": self.error}


@dataclass(slots=True)
class WorkflowExecution:
    id: str
    workflow_id: str
    status: WorkflowStatus
    current_step: str | None
    started_at: datetime
    step_states: dict[str, StepState] = field(default_factory=dict)
    results: dict[str, StepOutcome] = field(default_factory=dict)
    transitions: int = 0
    error: str | None = None
    completed_at: datetime | None = None

    def results_view(self) -> dict[str, dict[str, Any]]:
        """Accumulated results as plain mappings, the shape conditions read."""

        return {step_id: outcome.to_dict() for step_id, outcome in self.results.items()}


@dataclass(frozen=True, slots=True)
class WorkflowRunResult:
    """Outcome of ``execute``: an execution, or the reason none was started."""

    success: bool
    execution: WorkflowExecution | None = None
    error: str | None = None
