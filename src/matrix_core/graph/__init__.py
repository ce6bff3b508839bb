"""Typed links between scopes, tasks, jobs, artifacts and memory records."""

from matrix_core.graph.models import GraphEdge, GraphRef, GraphSummary, NodeType
from matrix_core.graph.store import GraphStore

__all__ = ["GraphEdge", "GraphRef", "GraphStore", "GraphSummary", "NodeType"]
