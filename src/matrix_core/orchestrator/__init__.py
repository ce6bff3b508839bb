"""Multi-agent orchestration: plans, agents, tools and bounded history."""

from matrix_core.orchestrator.agents import Agent, AgentRegistry, CommandAgent, EchoAgent
from matrix_core.orchestrator.engine import AgentOrchestrator
from matrix_core.orchestrator.models import (
    AgentContext,
    AgentKind,
    AgentResponse,
    ExecutionRecord,
    HistoryInsights,
    OrchestrationResult,
    PlanStep,
    SkippedStep,
    StepError,
    ToolCall,
)
from matrix_core.orchestrator.planner import KeywordPlanner, PlanningStrategy
from matrix_core.orchestrator.tools import ToolRegistry, register_builtin_tools

__all__ = [
    "Agent",
    "AgentContext",
    "AgentKind",
    "AgentOrchestrator",
    "AgentRegistry",
    "AgentResponse",
    "CommandAgent",
    "EchoAgent",
    "ExecutionRecord",
    "HistoryInsights",
    "KeywordPlanner",
    "OrchestrationResult",
    "PlanStep",
    "PlanningStrategy",
    "SkippedStep",
    "StepError",
    "ToolCall",
    "ToolRegistry",
    "register_builtin_tools",
]
