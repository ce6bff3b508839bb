"""Orchestration core: semantic memory, graph links, task queue, workflows and agents."""

__version__ = "0.1.0"
