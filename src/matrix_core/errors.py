"""Exception taxonomy shared across matrix-core components."""

from __future__ import annotations


class MatrixCoreError(Exception):
    """Base class for matrix-core errors."""


class BackendUnavailable(MatrixCoreError):
    """Primary storage backend failed; callers degrade to the secondary backend."""

    def __init__(self, backend: str, operation: str, cause: BaseException | None = None) -> None:
        self.backend = backend
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{backend} backend unavailable during {operation}{detail}")


class ExpressionError(MatrixCoreError):
    """Condition expression could not be parsed."""


class WorkflowDefinitionError(MatrixCoreError):
    """Workflow definition is structurally invalid."""


class AgentExecutionError(MatrixCoreError):
    """Agent collaborator failed or is not registered."""
