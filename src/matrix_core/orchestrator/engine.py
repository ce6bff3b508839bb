"""Multi-agent orchestration: priority plans, dependency gating and tool memoization."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any

from matrix_core.cancellation import CancelToken
from matrix_core.config import OrchestratorSettings
from matrix_core.errors import ExpressionError
from matrix_core.expressions import evaluate_condition
from matrix_core.memory.store import MemoryStore
from matrix_core.orchestrator.agents import AgentRegistry
from matrix_core.orchestrator.history import ExecutionHistory, ToolCallCache
from matrix_core.orchestrator.models import (
    AgentContext,
    AgentKind,
    AgentResponse,
    AgentStats,
    ExecutionRecord,
    HistoryInsights,
    OrchestrationResult,
    PlanStep,
    RelatedMemory,
    SkippedStep,
    StepError,
    ToolCall,
    ToolUse,
)
from matrix_core.orchestrator.planner import KeywordPlanner, PlanningStrategy
from matrix_core.orchestrator.tools import ToolRegistry
from matrix_core.storage.common import utc_now

logger = logging.getLogger(__name__)

AGENT_MEMORY_KIND = "agent-memory"
DEFAULT_TOOL_SCORE = 0.5
LOW_SUCCESS_RATE = 0.8
LOW_SUCCESS_MIN_RUNS = 5
INVALID_RESPONSE = "invalid agent response"


class AgentOrchestrator:
    """Run plan steps sequentially against agents, tools and scope memory.

    ``orchestrate`` never raises for step-level problems: agent failures land
    in ``errors``, unmet dependencies in ``skipped`` and tool failures in the
    tool's own result entry.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        agents: AgentRegistry,
        tools: ToolRegistry | None = None,
        memory: MemoryStore | None = None,
        planner: PlanningStrategy | None = None,
        history: ExecutionHistory | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.agents = agents
        self.tools = tools or ToolRegistry(timeout_seconds=self.settings.tool_timeout_seconds)
        self.memory = memory
        self.planner = planner or KeywordPlanner()
        self._history = history or ExecutionHistory(
            capacity=self.settings.history_capacity,
            max_keys=self.settings.history_max_keys,
        )

    def create_plan(self, scope_id: str, goal: str) -> list[PlanStep]:
        return self.planner.create_plan(scope_id, goal)

    async def run_goal(
        self,
        scope_id: str,
        goal: str,
        cancel_token: CancelToken | None = None,
    ) -> OrchestrationResult:
        """Plan and orchestrate ``goal`` in one call."""

        plan = self.create_plan(scope_id, goal)
        context = AgentContext(scope_id=scope_id, goal=goal)
        return await self.orchestrate(plan, context, cancel_token)

    async def orchestrate(
        self,
        plan: Sequence[PlanStep],
        context: AgentContext,
        cancel_token: CancelToken | None = None,
    ) -> OrchestrationResult:
        started = time.monotonic()
        timestamp = utc_now()
        executions: list[ExecutionRecord] = []
        tools_used: list[ToolUse] = []
        errors: list[StepError] = []
        skipped: list[SkippedStep] = []
        completed: dict[AgentKind, ExecutionRecord] = {}
        cancelled = False
        cache = ToolCallCache()

        run_context = context.copy()
        run_context.related_memory.extend(await self._retrieve_memory(run_context))
        self._trim(run_context.related_memory)

        for step in sorted(plan, key=lambda item: item.priority, reverse=True):
            if cancel_token is not None and cancel_token.cancelled:
                logger.warning(
                    "Orchestration for scope %s cancelled before %s",
                    context.scope_id,
                    step.agent_kind.value,
                )
                cancelled = True
                break

            missing = tuple(dep for dep in step.dependencies if dep not in completed)
            if missing:
                reason = _skip_reason(missing, errors=errors, skipped=skipped)
                logger.warning("Skipping %s: %s", step.agent_kind.value, reason)
                skipped.append(SkippedStep(step.agent_kind, missing, reason))
                continue

            step_started = time.monotonic()
            step_context = self._step_context(run_context, step, completed)
            try:
                raw_response = await asyncio.wait_for(
                    self.agents.get(step.agent_kind).process(step_context),
                    timeout=self.settings.agent_timeout_seconds,
                )
            except TimeoutError:
                message = f"Agent timed out after {self.settings.agent_timeout_seconds}s"
                logger.warning("Agent %s failed: %s", step.agent_kind.value, message)
                errors.append(StepError(step.agent_kind, message))
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("Agent %s failed: %s", step.agent_kind.value, exc)
                errors.append(StepError(step.agent_kind, str(exc) or type(exc).__name__))
                continue

            response = _coerce_response(raw_response)
            if response is None:
                logger.warning(
                    "Agent %s returned %s instead of a response",
                    step.agent_kind.value,
                    type(raw_response).__name__,
                )
                errors.append(StepError(step.agent_kind, INVALID_RESPONSE))
                continue

            try:
                step_tools = await self._run_tools(step, step_context, response, cache)
                for use in step_tools:
                    self._fold_tool_result(run_context, use)
                record = ExecutionRecord(
                    agent_kind=step.agent_kind,
                    scope_id=context.scope_id,
                    context_snapshot=step_context.snapshot(),
                    response=response,
                    tools_used=tuple(step_tools),
                    duration_ms=int((time.monotonic() - step_started) * 1000),
                    timestamp=utc_now(),
                )
                self._history.append(record)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Step %s failed after the agent call: %s",
                    step.agent_kind.value,
                    exc,
                )
                errors.append(StepError(step.agent_kind, str(exc) or type(exc).__name__))
                continue
            executions.append(record)
            tools_used.extend(step_tools)
            completed[step.agent_kind] = record
            await self._remember(record)

        result = OrchestrationResult(
            executions=tuple(executions),
            tools_used=tuple(tools_used),
            errors=tuple(errors),
            skipped=tuple(skipped),
            duration_ms=int((time.monotonic() - started) * 1000),
            timestamp=timestamp,
            cancelled=cancelled,
        )
        logger.info(
            "Orchestration completed for scope %s: %d executed, %d failed, %d skipped, %d tools",
            context.scope_id,
            len(executions),
            len(errors),
            len(skipped),
            len(tools_used),
        )
        return result

    def history(self, scope_id: str, agent_kind: AgentKind | None = None) -> list[ExecutionRecord]:
        return self._history.get(scope_id, agent_kind)

    def clear_history(self, scope_id: str | None = None) -> None:
        self._history.clear(scope_id)
        logger.info("Orchestrator history cleared for %s", scope_id or "all scopes")

    def agent_stats(self, scope_id: str, agent_kind: AgentKind | None = None) -> AgentStats:
        """Aggregate the retained history window; older executions are not counted."""

        records = self._history.get(scope_id, agent_kind)
        succeeded = sum(1 for record in records if record.succeeded)
        tool_usage = Counter(use.tool for record in records for use in record.tools_used)
        average = sum(record.duration_ms for record in records) / len(records) if records else 0.0
        return AgentStats(
            total=len(records),
            succeeded=succeeded,
            failed=len(records) - succeeded,
            average_duration_ms=average,
            tool_usage=dict(sorted(tool_usage.items())),
        )

    def learn_from_history(
        self,
        scope_id: str,
        agent_kind: AgentKind | None = None,
    ) -> HistoryInsights:
        """Derive tool and success patterns from the retained history window.

        A low success rate is only reported once more than
        ``LOW_SUCCESS_MIN_RUNS`` executions are retained.
        """

        records = self._history.get(scope_id, agent_kind)
        patterns: Counter[str] = Counter()
        for record in records:
            for use in record.tools_used:
                patterns[f"tool:{use.tool}"] += 1
            patterns[f"success:{str(record.succeeded).lower()}"] += 1

        improvements: list[str] = []
        if len(records) > LOW_SUCCESS_MIN_RUNS:
            success_rate = sum(1 for record in records if record.succeeded) / len(records)
            if success_rate < LOW_SUCCESS_RATE:
                improvements.append(
                    "Success rate is below 80%, review agent prompts and tool usage",
                )

        recommendations: list[str] = []
        tool_counts = sorted(
            (name.removeprefix("tool:"), count)
            for name, count in patterns.items()
            if name.startswith("tool:")
        )
        if tool_counts:
            most_used, _ = max(tool_counts, key=lambda item: item[1])
            recommendations.append(
                f"Most used tool: {most_used}, consider optimizing its usage",
            )
        return HistoryInsights(
            patterns=dict(sorted(patterns.items())),
            improvements=improvements,
            recommendations=recommendations,
        )

    async def _retrieve_memory(self, context: AgentContext) -> list[RelatedMemory]:
        if self.memory is None or self.settings.memory_hint_top_k <= 0:
            return []
        query = context.goal.strip() or self.settings.memory_hint_query
        try:
            hits = await asyncio.to_thread(
                self.memory.search,
                context.scope_id,
                query,
                self.settings.memory_hint_top_k,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Memory retrieval failed for scope %s: %s", context.scope_id, exc)
            return []
        return [RelatedMemory(text=hit.record.text, score=hit.score) for hit in hits]

    def _step_context(
        self,
        run_context: AgentContext,
        step: PlanStep,
        completed: dict[AgentKind, ExecutionRecord],
    ) -> AgentContext:
        step_context = run_context.copy()
        step_context.agent_kind = step.agent_kind
        for dependency in step.dependencies:
            output = completed[dependency].response.output
            if output is None or output == "":
                continue
            text = output if isinstance(output, str) else _encode_output(output)
            step_context.related_memory.append(
                RelatedMemory(text=text, score=1.0, source=f"dependency:{dependency.value}"),
            )
        self._trim(step_context.related_memory)
        return step_context

    async def _run_tools(
        self,
        step: PlanStep,
        step_context: AgentContext,
        response: AgentResponse,
        cache: ToolCallCache,
    ) -> list[ToolUse]:
        variables = {
            "execution": {"agent_kind": step.agent_kind.value, "response": response.to_dict()},
            "context": step_context.snapshot(),
        }
        eligible = [call for call in step.tool_calls if _condition_allows(call, variables)]

        async def run_one(call: ToolCall) -> ToolUse:
            result, cached = await cache.get_or_run(
                _cache_key(call),
                lambda: self.tools.execute(call.name, dict(call.params), step_context),
            )
            return ToolUse(tool=call.name, params=dict(call.params), result=result, cached=cached)

        if self.settings.parallel_tools:
            return list(await asyncio.gather(*(run_one(call) for call in eligible)))
        return [await run_one(call) for call in eligible]

    def _fold_tool_result(self, run_context: AgentContext, use: ToolUse) -> None:
        if not use.result.success:
            return
        payload = use.result.result
        run_context.tool_results[use.tool] = payload
        if isinstance(payload, dict) and isinstance(payload.get("results"), list):
            for item in payload["results"]:
                text = item.get("text") if isinstance(item, dict) else None
                score = item.get("score") if isinstance(item, dict) else None
                run_context.related_memory.append(
                    RelatedMemory(
                        text=str(text) if text else json.dumps(item, default=str),
                        score=_as_score(score),
                        source=f"tool:{use.tool}",
                    ),
                )
            self._trim(run_context.related_memory)

    def _trim(self, related: list[RelatedMemory]) -> None:
        overflow = len(related) - self.settings.max_related_memory
        if overflow > 0:
            del related[:overflow]

    async def _remember(self, record: ExecutionRecord) -> None:
        if self.memory is None or not self.settings.remember_executions:
            return
        response = record.response
        summary = response.reasoning or (
            response.output if isinstance(response.output, str) else ""
        )
        text = f"[{record.agent_kind.value}] {response.action}: {summary}".strip()
        metadata: dict[str, Any] = {
            "kind": AGENT_MEMORY_KIND,
            "agent_kind": record.agent_kind.value,
            "success": record.succeeded,
            "tools_used": [use.tool for use in record.tools_used],
            "duration_ms": record.duration_ms,
            "timestamp": record.timestamp.isoformat(),
        }
        try:
            await asyncio.to_thread(self.memory.add, record.scope_id, text, metadata)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to store %s execution in memory: %s",
                record.agent_kind.value,
                exc,
            )


def _coerce_response(raw: Any) -> AgentResponse | None:
    if isinstance(raw, AgentResponse):
        return raw
    if isinstance(raw, Mapping):
        try:
            return AgentResponse.from_dict(dict(raw))
        except (TypeError, ValueError):
            return None
    return None


def _cache_key(call: ToolCall) -> tuple[str, str]:
    try:
        encoded = json.dumps(call.params, sort_keys=True, default=str)
    except (TypeError, ValueError):
        encoded = repr(sorted(call.params.items(), key=repr))
    return call.name, encoded


def _encode_output(output: Any) -> str:
    try:
        return json.dumps(output, default=str)
    except (TypeError, ValueError):
        return repr(output)


def _as_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TOOL_SCORE
    return score if math.isfinite(score) else DEFAULT_TOOL_SCORE


def _condition_allows(call: ToolCall, variables: dict[str, Any]) -> bool:
    if not call.condition:
        return True
    try:
        return evaluate_condition(call.condition, variables)
    except ExpressionError as exc:
        logger.warning("Tool %s condition %r is invalid: %s", call.name, call.condition, exc)
        return False


def _skip_reason(
    missing: tuple[AgentKind, ...],
    *,
    errors: list[StepError],
    skipped: list[SkippedStep],
) -> str:
    failed = {item.agent_kind for item in errors}
    skipped_kinds = {item.agent_kind for item in skipped}
    parts = []
    for dependency in missing:
        if dependency in failed:
            parts.append(f"{dependency.value} failed")
        elif dependency in skipped_kinds:
            parts.append(f"{dependency.value} was skipped")
        else:
            parts.append(f"{dependency.value} did not run")
    return "dependencies not met: " + ", ".join(parts)
