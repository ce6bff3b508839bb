"""Planning strategies that turn a goal into ordered plan steps."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from matrix_core.orchestrator.models import AgentKind, PlanStep, ToolCall

_WORD_PATTERN = re.compile(r"[a-z0-9_]+")


class PlanningStrategy(Protocol):
    def create_plan(self, scope_id: str, goal: str) -> list[PlanStep]:
        """Return plan steps for ``goal``; order is not significant."""


@dataclass(frozen=True, slots=True)
class _KeywordRule:
    kind: AgentKind
    keywords: frozenset[str]
    priority: int
    dependencies: tuple[AgentKind, ...]
    tool_calls: tuple[ToolCall, ...]


class KeywordPlanner:
    """Heuristic planner: goal words select agent kinds with fixed priorities.

    A replaceable default, not a correctness-critical algorithm. Goals that
    match nothing fall back to a single analysis step.
    """

    def create_plan(self, scope_id: str, goal: str) -> list[PlanStep]:
        words = set(_WORD_PATTERN.findall(goal.lower()))
        steps = [
            PlanStep(
                agent_kind=rule.kind,
                priority=rule.priority,
                dependencies=rule.dependencies,
                tool_calls=rule.tool_calls,
            )
            for rule in _rules(scope_id, goal)
            if words & rule.keywords
        ]
        if steps:
            return steps
        return [
            PlanStep(
                agent_kind=AgentKind.ANALYSIS,
                priority=10,
                tool_calls=(ToolCall("search_memory", {"query": goal, "top_k": 5}),),
            ),
        ]


def _rules(scope_id: str, goal: str) -> tuple[_KeywordRule, ...]:
    scope_info = ToolCall("get_scope_info", {"scope_id": scope_id})
    return (
        _KeywordRule(
            kind=AgentKind.ANALYSIS,
            keywords=frozenset({"analyze", "analyse", "analysis", "review", "research"}),
            priority=10,
            dependencies=(),
            tool_calls=(ToolCall("search_memory", {"query": goal, "top_k": 5}),),
        ),
        _KeywordRule(
            kind=AgentKind.ARCHITECTURE,
            keywords=frozenset({"architecture", "design", "plan"}),
            priority=9,
            dependencies=(AgentKind.ANALYSIS,),
            tool_calls=(scope_info,),
        ),
        _KeywordRule(
            kind=AgentKind.CODING,
            keywords=frozenset({"code", "implement", "build", "coding"}),
            priority=8,
            dependencies=(AgentKind.ARCHITECTURE,),
            tool_calls=(
                scope_info,
                ToolCall("search_memory", {"query": "code implementation", "top_k": 3}),
            ),
        ),
        _KeywordRule(
            kind=AgentKind.TESTING,
            keywords=frozenset({"test", "testing", "tests", "verify"}),
            priority=7,
            dependencies=(AgentKind.CODING,),
            tool_calls=(ToolCall("search_memory", {"query": "test code", "top_k": 3}),),
        ),
        _KeywordRule(
            kind=AgentKind.VISUAL,
            keywords=frozenset({"visual", "ui", "ux", "screenshot"}),
            priority=6,
            dependencies=(),
            tool_calls=(scope_info,),
        ),
    )
