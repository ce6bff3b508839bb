"""Bounded execution history and the per-run tool cache."""

from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable

from matrix_core.orchestrator.models import AgentKind, ExecutionRecord, ToolResult

HistoryKey = tuple[str, AgentKind]


class ExecutionHistory:
    """Ring buffer of executions per ``(scope_id, agent_kind)``.

    Each buffer keeps the newest ``capacity`` records. The number of keys is
    capped as well: when a new key would exceed ``max_keys`` the least
    recently appended key is dropped.
    """

    def __init__(self, *, capacity: int = 10, max_keys: int = 256) -> None:
        if capacity <= 0 or max_keys <= 0:
            raise ValueError("History capacity and max_keys must be > 0")
        self.capacity = capacity
        self.max_keys = max_keys
        self._buffers: OrderedDict[HistoryKey, deque[ExecutionRecord]] = OrderedDict()
        self._lock = threading.Lock()

    def append(self, record: ExecutionRecord) -> None:
        key = (record.scope_id, record.agent_kind)
        with self._lock:
            buffer = self._buffers.get(key)
            if buffer is None:
                buffer = deque(maxlen=self.capacity)
                self._buffers[key] = buffer
            buffer.append(record)
            self._buffers.move_to_end(key)
            while len(self._buffers) > self.max_keys:
                self._buffers.popitem(last=False)

    def get(self, scope_id: str, agent_kind: AgentKind | None = None) -> list[ExecutionRecord]:
        """Records oldest first for one kind, or newest first across all kinds of a scope."""

        with self._lock:
            if agent_kind is not None:
                return list(self._buffers.get((scope_id, agent_kind), ()))
            records = [
                record
                for (key_scope, _), buffer in self._buffers.items()
                if key_scope == scope_id
                for record in buffer
            ]
        return sorted(records, key=lambda record: record.timestamp, reverse=True)

    def clear(self, scope_id: str | None = None) -> None:
        with self._lock:
            if scope_id is None:
                self._buffers.clear()
                return
            for key in [key for key in self._buffers if key[0] == scope_id]:
                del self._buffers[key]


class ToolCallCache:
    """Per-run memo of tool results keyed by ``(name, serialized params)``.

    Check-then-insert happens under one lock, and concurrent callers for the
    same key share the in-flight call instead of invoking the tool twice.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], asyncio.Task[ToolResult]] = {}
        self._lock = asyncio.Lock()

    async def get_or_run(
        self,
        key: tuple[str, str],
        factory: Callable[[], Awaitable[ToolResult]],
    ) -> tuple[ToolResult, bool]:
        async with self._lock:
            task = self._entries.get(key)
            cached = task is not None
            if task is None:
                task = asyncio.ensure_future(factory())
                self._entries[key] = task
        return await asyncio.shield(task), cached

    def __len__(self) -> int:
        return len(self._entries)
