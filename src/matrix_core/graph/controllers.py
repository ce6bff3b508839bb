"""Controllers for graph CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from matrix_core.config import Settings
from matrix_core.graph.models import GraphRef
from matrix_core.runtime import open_runtime


@dataclass(slots=True)
class GraphLinkCommand:
    """CLI input for creating an edge."""

    db_path: Path | None
    from_ref: GraphRef
    relation: str
    to_ref: GraphRef


@dataclass(slots=True)
class GraphNeighborsCommand:
    db_path: Path | None
    ref: GraphRef


@dataclass(slots=True)
class GraphSummaryCommand:
    db_path: Path | None


class GraphCliController:
    """Link nodes and inspect the graph."""

    def link(self, command: GraphLinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            edge = runtime.graph.link(command.from_ref, command.relation, command.to_ref)
            backend = runtime.graph.backend_name
        return [
            f"Edge created: id={edge.id} {edge.from_ref} -{edge.relation}-> {edge.to_ref} "
            f"backend={backend}",
        ]

    def neighbors(self, command: GraphNeighborsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            edges = runtime.graph.neighbors(command.ref)
        lines = [f"Edges for {command.ref}: {len(edges)}"]
        for edge in edges:
            lines.append(f"  {edge.from_ref} -{edge.relation}-> {edge.to_ref}")
        return lines

    def summary(self, command: GraphSummaryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            summary = runtime.graph.summary()
        lines = [f"Total edges: {summary.total_edges}", "Relations:"]
        for relation, count in sorted(summary.edge_count_by_relation.items()):
            lines.append(f"  {relation}: {count}")
        lines.append("Nodes:")
        for node_type, count in sorted(summary.node_count_by_type.items()):
            lines.append(f"  {node_type}: {count}")
        return lines
