"""Semantic memory store with sticky primary/secondary degradation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar
from uuid import uuid4

from matrix_core.graph.models import GraphRef, NodeType
from matrix_core.graph.store import GraphStore
from matrix_core.memory.backends import MemoryBackend
from matrix_core.memory.embedder import Embedder
from matrix_core.memory.models import MemoryHit, MemoryRecord, content_hash
from matrix_core.storage.common import utc_now
from matrix_core.storage.selector import BackendSelector, run_with_fallback

logger = logging.getLogger(__name__)

T = TypeVar("T")

HAS_MEMORY = "HAS_MEMORY"


class MemoryStore:
    """Persist text with embeddings per scope and rank it by similarity.

    Backend failures never reach the caller: the first primary exception flips
    the injected selector and the same operation is replayed on the secondary
    backend. Records written to the primary before the flip are not visible
    to the secondary.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        primary: MemoryBackend,
        secondary: MemoryBackend,
        embedder: Embedder,
        selector: BackendSelector | None = None,
        graph: GraphStore | None = None,
        org_scope_id: str = "__org__",
        default_top_k: int = 5,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.embedder = embedder
        self.selector = selector or BackendSelector(name="memory")
        self.graph = graph
        self.org_scope_id = org_scope_id
        self.default_top_k = default_top_k
        self._unique_lock = threading.Lock()

    @property
    def backend_name(self) -> str:
        return self.secondary.name if self.selector.use_secondary else self.primary.name

    def add(
        self,
        scope_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """Embed and persist one record, then link it into the graph."""

        vector = self.embedder.embed(text)
        if len(vector) != self.embedder.dimensions:
            raise ValueError(
                f"Embedder {self.embedder.model_name} returned {len(vector)} dimensions, "
                f"expected {self.embedder.dimensions}.",
            )
        record = MemoryRecord(
            id=uuid4().hex,
            scope_id=scope_id,
            text=text,
            vector=tuple(vector),
            created_at=utc_now(),
            metadata=dict(metadata or {}),
        )
        self._run("add", lambda backend: backend.insert(record))
        self._link(record)
        return record

    def add_unique(
        self,
        scope_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """Idempotent add keyed by content hash or identical text within the scope."""

        digest = content_hash(text)
        with self._unique_lock:
            existing = self._run(
                "find_duplicate",
                lambda backend: backend.find_duplicate(scope_id, content_hash=digest, text=text),
            )
            if existing is not None:
                return existing
            return self.add(scope_id, text, {**(metadata or {}), "hash": digest})

    def search(self, scope_id: str, query: str, top_k: int | None = None) -> list[MemoryHit]:
        """Rank scope records by similarity, ties broken by most recent first."""

        limit = self.default_top_k if top_k is None else top_k
        if limit <= 0:
            return []
        vector = self.embedder.embed(query)
        return self._run("search", lambda backend: backend.search(scope_id, vector, limit))

    def list_records(self, scope_id: str) -> list[MemoryRecord]:
        """Scope records, oldest first."""

        return self._run("list", lambda backend: backend.list_records(scope_id))

    def count(self, scope_id: str) -> int:
        return self._run("count", lambda backend: backend.count(scope_id))

    def _run(self, operation: str, action: Callable[[MemoryBackend], T]) -> T:
        return run_with_fallback(
            self.selector,
            primary=self.primary,
            secondary=self.secondary,
            operation=f"memory.{operation}",
            action=action,
        )

    def _link(self, record: MemoryRecord) -> None:
        if self.graph is None:
            return
        owner_type = NodeType.ORG if record.scope_id == self.org_scope_id else NodeType.PROJECT
        try:
            self.graph.link(
                GraphRef(owner_type, record.scope_id),
                HAS_MEMORY,
                GraphRef(NodeType.MEMORY, record.id),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to link memory %s into graph: %s", record.id, exc)
