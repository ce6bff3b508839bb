"""Workflow step executor: definitions, step kinds and the run state machine."""

from matrix_core.workflow.engine import WorkflowEngine
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
from matrix_core.workflow.steps import build_executors

__all__ = [
    "StepKind",
    "StepOutcome",
    "StepState",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "WorkflowRunResult",
    "WorkflowStatus",
    "WorkflowStep",
    "build_executors",
]
