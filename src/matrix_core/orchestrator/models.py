"""Domain models for plans, agent contexts and orchestration results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentKind(str, Enum):
    """Closed set of agent roles a plan step can invoke."""

    ANALYSIS = "analysis"
    ARCHITECTURE = "architecture"
    CODING = "coding"
    TESTING = "testing"
    VISUAL = "visual"


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Tool invocation attached to a plan step."""

    name: str
    params: dict[str, Any] = field(default_factory=dict)
    condition: str | None = None


@dataclass(frozen=True, slots=True)
class PlanStep:
    agent_kind: AgentKind
    priority: int
    dependencies: tuple[AgentKind, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True, slots=True)
class RelatedMemory:
    """One retrieved or synthetic memory entry handed to an agent."""

    text: str
    score: float
    source: str = "memory"

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "score": self.score, "source": self.source}


@dataclass(slots=True)
class AgentContext:
    """Input handed to ``Agent.process``."""

    scope_id: str
    goal: str = ""
    agent_kind: AgentKind | None = None
    related_memory: list[RelatedMemory] = field(default_factory=list)
    tool_results: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> AgentContext:
        return AgentContext(
            scope_id=self.scope_id,
            goal=self.goal,
            agent_kind=self.agent_kind,
            related_memory=list(self.related_memory),
            tool_results=dict(self.tool_results),
            extra=dict(self.extra),
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "goal": self.goal,
            "agent_kind": self.agent_kind.value if self.agent_kind is not None else None,
            "related_memory": [item.to_dict() for item in self.related_memory],
            "tool_results": dict(self.tool_results),
            "extra": dict(self.extra),
        }


@dataclass(frozen=True, slots=True)
class AgentResponse:
    action: str
    reasoning: str
    output: Any = None
    suggestions: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentResponse:
        suggestions = payload.get("suggestions") or ()
        if not isinstance(suggestions, list | tuple):
            raise TypeError("'suggestions' must be a list of strings")
        return cls(
            action=str(payload.get("action") or ""),
            reasoning=str(payload.get("reasoning") or ""),
            output=payload.get("output"),
            suggestions=tuple(str(item) for item in suggestions),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "reasoning": self.reasoning,
            "output": self.output,
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True, slots=True)
class ToolResult:
    success: bool
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "result": self.result, "error": self.error}


@dataclass(frozen=True, slots=True)
class ToolUse:
    tool: str
    params: dict[str, Any]
    result: ToolResult
    cached: bool = False


@dataclass(frozen=True, slots=True)
class ExecutionRecord:
    """One agent step that actually ran."""

    agent_kind: AgentKind
    scope_id: str
    context_snapshot: dict[str, Any]
    response: AgentResponse
    tools_used: tuple[ToolUse, ...]
    duration_ms: int
    timestamp: datetime

    @property
    def succeeded(self) -> bool:
        return all(use.result.success for use in self.tools_used)


@dataclass(frozen=True, slots=True)
class StepError:
    agent_kind: AgentKind
    error: str


@dataclass(frozen=True, slots=True)
class SkippedStep:
    """Step not executed because a dependency did not complete in this run."""

    agent_kind: AgentKind
    missing_dependencies: tuple[AgentKind, ...]
    reason: str


@dataclass(frozen=True, slots=True)
class OrchestrationResult:
    executions: tuple[ExecutionRecord, ...]
    tools_used: tuple[ToolUse, ...]
    errors: tuple[StepError, ...]
    skipped: tuple[SkippedStep, ...]
    duration_ms: int
    timestamp: datetime
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        """True only when every planned step ran without error."""

        return not self.errors and not self.skipped and not self.cancelled

    def summary(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "cancelled": self.cancelled,
            "executions": [record.agent_kind.value for record in self.executions],
            "errors": [
                {"agent_kind": item.agent_kind.value, "error": item.error} for item in self.errors
            ],
            "skipped": [
                {
                    "agent_kind": item.agent_kind.value,
                    "missing_dependencies": [dep.value for dep in item.missing_dependencies],
                    "reason": item.reason,
                }
                for item in self.skipped
            ],
            "tools_used": len(self.tools_used),
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True, slots=True)
class AgentStats:
    total: int
    succeeded: int
    failed: int
    average_duration_ms: float
    tool_usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class HistoryInsights:
    """Patterns and suggestions derived from retained executions."""

    patterns: dict[str, int] = field(default_factory=dict)
    improvements: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
