"""Typed graph edges between scope, task, job, artifact and memory nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NodeType(str, Enum):
    """Closed set of entity kinds that may appear at either end of an edge."""

    ORG = "Org"
    PROJECT = "Project"
    TASK = "Task"
    JOB = "Job"
    ARTIFACT = "Artifact"
    MEMORY = "Memory"


@dataclass(frozen=True, slots=True)
class GraphRef:
    """Reference to one graph node."""

    type: NodeType
    id: str

    def __str__(self) -> str:
        return f"{self.type.value}:{self.id}"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "id": self.id}

    @classmethod
    def parse(cls, value: str) -> GraphRef:
        """Parse ``Type:id`` as printed by ``str``; type names are case-insensitive."""

        type_name, sep, node_id = value.partition(":")
        if not sep or not node_id:
            raise ValueError(f"Invalid node reference {value!r}, expected Type:id")
        for node_type in NodeType:
            if node_type.value.lower() == type_name.strip().lower():
                return cls(node_type, node_id.strip())
        raise ValueError(
            f"Unknown node type {type_name!r}, expected one of "
            f"{', '.join(item.value for item in NodeType)}",
        )


@dataclass(frozen=True, slots=True)
class GraphEdge:
    """Immutable directed edge."""

    id: str
    from_ref: GraphRef
    to_ref: GraphRef
    relation: str
    created_at: datetime

    def touches(self, ref: GraphRef) -> bool:
        return self.from_ref == ref or self.to_ref == ref

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_ref.to_dict(),
            "to": self.to_ref.to_dict(),
            "relation": self.relation,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class GraphSummary:
    total_edges: int
    edge_count_by_relation: dict[str, int] = field(default_factory=dict)
    node_count_by_type: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_edges(cls, edges: list[GraphEdge]) -> GraphSummary:
        by_relation: dict[str, int] = {}
        nodes: set[GraphRef] = set()
        for edge in edges:
            by_relation[edge.relation] = by_relation.get(edge.relation, 0) + 1
            nodes.add(edge.from_ref)
            nodes.add(edge.to_ref)
        by_type: dict[str, int] = {}
        for node in nodes:
            by_type[node.type.value] = by_type.get(node.type.value, 0) + 1
        return cls(
            total_edges=len(edges),
            edge_count_by_relation=dict(sorted(by_relation.items())),
            node_count_by_type=dict(sorted(by_type.items())),
        )
