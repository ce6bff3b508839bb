"""Step executors, one per ``StepKind``.

Each executor implements ``execute(config, results) -> StepOutcome`` and turns
collaborator errors into failed outcomes instead of raising.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from matrix_core.errors import ExpressionError
from matrix_core.expressions import evaluate_condition
from matrix_core.orchestrator.engine import AgentOrchestrator
from matrix_core.queue.repository import TaskQueue
from matrix_core.workflow.models import StepKind, StepOutcome

logger = logging.getLogger(__name__)

Integration = Callable[[dict[str, Any]], Any]


class StepExecutor(Protocol):
    async def execute(self, config: Mapping[str, Any], results: Mapping[str, Any]) -> StepOutcome:
        """Run one step against the results accumulated so far."""


class DelayStep:
    """Cooperative sleep; other workflows keep running meanwhile."""

    async def execute(self, config: Mapping[str, Any], results: Mapping[str, Any]) -> StepOutcome:
        try:
            seconds = _delay_seconds(config)
        except (TypeError, ValueError) as exc:
            return StepOutcome(success=False, error=f"Invalid delay: {exc}")
        await asyncio.sleep(seconds)
        return StepOutcome(success=True, result={"seconds": seconds})


class ConditionStep:
    """Succeeds when the restricted expression holds over accumulated results."""

    async def execute(self, config: Mapping[str, Any], results: Mapping[str, Any]) -> StepOutcome:
        condition = str(config.get("condition") or "true")
        try:
            value = evaluate_condition(condition, results)
        except ExpressionError as exc:
            return StepOutcome(success=False, error=f"Invalid condition {condition!r}: {exc}")
        return StepOutcome(success=value, result={"condition": condition, "result": value})


class AgentStep:
    """Plan and orchestrate a goal; succeeds only if every planned step ran."""

    def __init__(self, orchestrator: AgentOrchestrator | None) -> None:
        self.orchestrator = orchestrator

    async def execute(self, config: Mapping[str, Any], results: Mapping[str, Any]) -> StepOutcome:
        if self.orchestrator is None:
            return StepOutcome(success=False, error="No orchestrator configured for agent steps")
        goal = str(config.get("goal") or config.get("action") or "").strip()
        scope_id = str(config.get("scope_id") or "").strip()
        if not goal or not scope_id:
            return StepOutcome(success=False, error="Agent step requires 'goal' and 'scope_id'")
        try:
            outcome = await self.orchestrator.run_goal(scope_id, goal)
        except Exception as exc:  # noqa: BLE001
            return StepOutcome(success=False, error=str(exc) or type(exc).__name__)
        summary = outcome.summary()
        if outcome.succeeded:
            return StepOutcome(success=True, result=summary)
        return StepOutcome(success=False, result=summary, error="Orchestration did not succeed")


class TaskStep:
    """Enqueue work for a worker lane."""

    def __init__(self, queue: TaskQueue | None) -> None:
        self.queue = queue

    async def execute(self, config: Mapping[str, Any], results: Mapping[str, Any]) -> StepOutcome:
        if self.queue is None:
            return StepOutcome(success=False, error="No task queue configured for task steps")
        payload = config.get("payload") or {}
        if not isinstance(payload, dict):
            return StepOutcome(success=False, error="Task step 'payload' must be an object")
        try:
            task = await asyncio.to_thread(
                self.queue.enqueue,
                str(config.get("scope_id") or ""),
                str(config.get("task_type") or ""),
                payload,
            )
        except Exception as exc:  # noqa: BLE001
            return StepOutcome(success=False, error=str(exc) or type(exc).__name__)
        return StepOutcome(success=True, result=task.to_dict())


class IntegrationStep:
    """Call a named integration callable (sync or async) with ``config["params"]``."""

    def __init__(self, integrations: Mapping[str, Integration] | None = None) -> None:
        self.integrations = dict(integrations or {})

    async def execute(self, config: Mapping[str, Any], results: Mapping[str, Any]) -> StepOutcome:
        name = str(config.get("name") or config.get("action") or "")
        integration = self.integrations.get(name)
        if integration is None:
            return StepOutcome(success=False, error=f"Unknown integration: {name!r}")
        params = config.get("params") or {}
        try:
            if inspect.iscoroutinefunction(integration):
                value = await integration(dict(params))
            else:
                value = await asyncio.to_thread(integration, dict(params))
                if inspect.isawaitable(value):
                    value = await value
        except Exception as exc:  # noqa: BLE001
            logger.warning("Integration %s failed: %s", name, exc)
            return StepOutcome(success=False, error=str(exc) or type(exc).__name__)
        return StepOutcome(success=True, result=value)


def build_executors(
    *,
    orchestrator: AgentOrchestrator | None = None,
    queue: TaskQueue | None = None,
    integrations: Mapping[str, Integration] | None = None,
) -> dict[StepKind, StepExecutor]:
    """One executor per kind; the mapping is exhaustive over ``StepKind``."""

    return {
        StepKind.DELAY: DelayStep(),
        StepKind.CONDITION: ConditionStep(),
        StepKind.AGENT: AgentStep(orchestrator),
        StepKind.TASK: TaskStep(queue),
        StepKind.INTEGRATION: IntegrationStep(integrations),
    }


def _delay_seconds(config: Mapping[str, Any]) -> float:
    if config.get("seconds") is not None:
        seconds = float(config["seconds"])
    elif config.get("delay_ms") is not None:
        seconds = float(config["delay_ms"]) / 1000.0
    elif config.get("delay") is not None:
        seconds = float(config["delay"]) / 1000.0
    else:
        seconds = 1.0
    if seconds < 0:
        raise ValueError("delay must be >= 0")
    return seconds
