"""Graph link layer with its own sticky backend selector."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar
from uuid import uuid4

from matrix_core.graph.backends import GraphBackend
from matrix_core.graph.models import GraphEdge, GraphRef, GraphSummary
from matrix_core.storage.common import utc_now
from matrix_core.storage.selector import BackendSelector, run_with_fallback

T = TypeVar("T")


class GraphStore:
    """Create and query immutable typed edges.

    The selector is independent of the memory store's: a graph outage never
    moves memory to its secondary backend and vice versa.
    """

    def __init__(
        self,
        *,
        primary: GraphBackend,
        secondary: GraphBackend,
        selector: BackendSelector | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.selector = selector or BackendSelector(name="graph")

    @property
    def backend_name(self) -> str:
        return self.secondary.name if self.selector.use_secondary else self.primary.name

    def link(self, from_ref: GraphRef, relation: str, to_ref: GraphRef) -> GraphEdge:
        relation = relation.strip()
        if not relation:
            raise ValueError("Relation must be a non-empty string.")
        edge = GraphEdge(
            id=uuid4().hex,
            from_ref=from_ref,
            to_ref=to_ref,
            relation=relation,
            created_at=utc_now(),
        )
        self._run("link", lambda backend: backend.insert(edge))
        return edge

    def neighbors(self, ref: GraphRef) -> list[GraphEdge]:
        """Edges where ``ref`` is either endpoint, oldest first."""

        return self._run("neighbors", lambda backend: backend.neighbors(ref))

    def all(self) -> list[GraphEdge]:
        return self._run("all", lambda backend: backend.all())

    def summary(self) -> GraphSummary:
        return GraphSummary.from_edges(self.all())

    def _run(self, operation: str, action: Callable[[GraphBackend], T]) -> T:
        return run_with_fallback(
            self.selector,
            primary=self.primary,
            secondary=self.secondary,
            operation=f"graph.{operation}",
            action=action,
        )
