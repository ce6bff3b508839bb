"""Agent collaborators and the kind-to-agent registry."""

from __future__ import annotations

import asyncio
import json
import os
import shlex
from collections.abc import Mapping
from typing import Protocol

from matrix_core.errors import AgentExecutionError
from matrix_core.orchestrator.models import AgentContext, AgentKind, AgentResponse


class Agent(Protocol):
    """Protocol implemented by every agent kind."""

    async def process(self, context: AgentContext) -> AgentResponse:
        """Handle one enriched context and return the agent's response."""


class EchoAgent:
    """Deterministic local agent used for demos and tests."""

    async def process(self, context: AgentContext) -> AgentResponse:
        kind = context.agent_kind.value if context.agent_kind is not None else "agent"
        goal = context.goal.strip() or "no goal"
        return AgentResponse(
            action="respond",
            reasoning=f"{kind} handled goal with {len(context.related_memory)} related memories",
            output=f"{kind}: {goal}",
        )


class CommandAgent:
    """Run an external agent command per call.

    The context snapshot is written to stdin as JSON; stdout must be one JSON
    object with ``action``, ``reasoning`` and optional ``output`` and
    ``suggestions``. ``{agent}`` in the template is replaced by the agent kind.
    """

    def __init__(self, command_template: str) -> None:
        stripped = command_template.strip()
        if not stripped:
            raise ValueError("Agent command template is empty.")
        self.command_template = stripped

    def build_args(self, kind: AgentKind | None) -> list[str]:
        try:
            rendered = self.command_template.format(
                agent=shlex.quote(kind.value if kind is not None else ""),
            )
        except KeyError as error:
            raise AgentExecutionError(
                f"Unsupported command template placeholder: {error}",
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise AgentExecutionError("Agent command template rendered empty command.")
        return argv

    async def process(self, context: AgentContext) -> AgentResponse:
        argv = self.build_args(context.agent_kind)
        env = os.environ.copy()
        if context.agent_kind is not None:
            env["MATRIX_CORE_AGENT_KIND"] = context.agent_kind.value
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as error:
            raise AgentExecutionError(f"Agent command not found: {argv[0]}") from error
        except OSError as error:
            raise AgentExecutionError(f"Agent command failed to start: {error}") from error

        payload = json.dumps(context.snapshot(), ensure_ascii=False, default=str).encode("utf-8")
        try:
            stdout, stderr = await process.communicate(payload)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise AgentExecutionError(
                f"Agent command exited with code {process.returncode}: {tail}",
            )
        try:
            parsed = json.loads(stdout.decode("utf-8"))
            if not isinstance(parsed, dict):
                raise TypeError("agent output must be a JSON object")
            return AgentResponse.from_dict(parsed)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as error:
            raise AgentExecutionError(f"Agent command returned invalid output: {error}") from error


class AgentRegistry:
    """Maps each ``AgentKind`` to the agent that handles it."""

    def __init__(self, agents: Mapping[AgentKind, Agent] | None = None) -> None:
        self._agents: dict[AgentKind, Agent] = dict(agents or {})

    @classmethod
    def uniform(cls, agent: Agent) -> AgentRegistry:
        """Registry where every kind is served by the same agent."""

        return cls(dict.fromkeys(AgentKind, agent))

    def register(self, kind: AgentKind, agent: Agent) -> None:
        self._agents[kind] = agent

    def get(self, kind: AgentKind) -> Agent:
        agent = self._agents.get(kind)
        if agent is None:
            raise AgentExecutionError(f"No agent registered for kind {kind.value!r}")
        return agent

    def kinds(self) -> list[AgentKind]:
        return [kind for kind in AgentKind if kind in self._agents]
