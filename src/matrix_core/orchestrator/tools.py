"""Tool registry and the built-in memory, graph and queue tools."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from matrix_core.graph.models import GraphRef
from matrix_core.graph.store import GraphStore
from matrix_core.memory.store import MemoryStore
from matrix_core.orchestrator.models import AgentContext, ToolResult
from matrix_core.queue.repository import TaskQueue

logger = logging.getLogger(__name__)

ToolFunc = Callable[[dict[str, Any], AgentContext], Any | Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    func: ToolFunc


class ToolRegistry:
    """Named tools; ``execute`` never raises."""

    def __init__(self, *, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._tools: dict[str, ToolSpec] = {}

    def register(self, name: str, func: ToolFunc, description: str = "") -> None:
        self._tools[name] = ToolSpec(name=name, description=description, func=func)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> list[ToolSpec]:
        return [self._tools[name] for name in self.names()]

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        context: AgentContext,
    ) -> ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")
        try:
            result = await asyncio.wait_for(
                self._invoke(spec.func, params, context),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning("Tool %s timed out after %ss", name, self.timeout_seconds)
            return ToolResult(success=False, error=f"Tool {name} timed out")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolResult(success=False, error=str(exc) or type(exc).__name__)
        return ToolResult(success=True, result=result)

    @staticmethod
    async def _invoke(func: ToolFunc, params: dict[str, Any], context: AgentContext) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(params, context)
        # Built-in tools hit SQLite; keep them off the event loop.
        result = await asyncio.to_thread(func, params, context)
        if inspect.isawaitable(result):
            return await result
        return result


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    memory: MemoryStore | None = None,
    graph: GraphStore | None = None,
    queue: TaskQueue | None = None,
) -> ToolRegistry:
    """Register the tools backed by whichever stores are available."""

    if memory is not None:
        registry.register(
            "search_memory",
            _search_memory(memory),
            "Semantic search over scope memory. params: query, top_k, scope_id",
        )
        registry.register(
            "add_memory",
            _add_memory(memory),
            "Store text in scope memory. params: text, metadata, scope_id",
        )
    if graph is not None:
        registry.register(
            "get_neighbors",
            _get_neighbors(graph),
            "Edges touching a node. params: type, id",
        )
        registry.register(
            "link_nodes",
            _link_nodes(graph),
            "Create a typed edge. params: from (Type:id), relation, to (Type:id)",
        )
    registry.register(
        "get_scope_info",
        _get_scope_info(memory=memory, queue=queue),
        "Memory count and task status counts for a scope. params: scope_id",
    )
    if queue is not None:
        registry.register(
            "enqueue_task",
            _enqueue_task(queue),
            "Queue work for a worker lane. params: task_type, payload, scope_id",
        )
    return registry


def _scope(params: dict[str, Any], context: AgentContext) -> str:
    return str(params.get("scope_id") or context.scope_id)


def _search_memory(memory: MemoryStore) -> ToolFunc:
    def tool(params: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        query = str(params.get("query") or context.goal)
        top_k = int(params.get("top_k", params.get("topK", memory.default_top_k)))
        hits = memory.search(_scope(params, context), query, top_k)
        return {
            "results": [
                {"id": hit.record.id, "text": hit.record.text, "score": hit.score}
                for hit in hits
            ],
        }

    return tool


def _add_memory(memory: MemoryStore) -> ToolFunc:
    def tool(params: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        text = str(params.get("text") or "").strip()
        if not text:
            raise ValueError("add_memory requires non-empty 'text'")
        metadata = params.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("add_memory 'metadata' must be an object")
        record = memory.add(_scope(params, context), text, metadata)
        return {"id": record.id, "scope_id": record.scope_id}

    return tool


def _get_neighbors(graph: GraphStore) -> ToolFunc:
    def tool(params: dict[str, Any], _context: AgentContext) -> dict[str, Any]:
        ref = GraphRef.parse(f"{params.get('type', '')}:{params.get('id', '')}")
        return {"edges": [edge.to_dict() for edge in graph.neighbors(ref)]}

    return tool


def _link_nodes(graph: GraphStore) -> ToolFunc:
    def tool(params: dict[str, Any], _context: AgentContext) -> dict[str, Any]:
        edge = graph.link(
            GraphRef.parse(str(params.get("from", ""))),
            str(params.get("relation", "")),
            GraphRef.parse(str(params.get("to", ""))),
        )
        return edge.to_dict()

    return tool


def _get_scope_info(*, memory: MemoryStore | None, queue: TaskQueue | None) -> ToolFunc:
    def tool(params: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        scope_id = _scope(params, context)
        info: dict[str, Any] = {"scope_id": scope_id}
        if memory is not None:
            info["memory_count"] = memory.count(scope_id)
        if queue is not None:
            info["tasks"] = {
                status.value: count
                for status, count in queue.counts_by_status(scope_id).items()
            }
        return info

    return tool


def _enqueue_task(queue: TaskQueue) -> ToolFunc:
    def tool(params: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        payload = params.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("enqueue_task 'payload' must be an object")
        task = queue.enqueue(_scope(params, context), str(params.get("task_type", "")), payload)
        return task.to_dict()

    return tool
