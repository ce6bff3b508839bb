"""Semantic memory: embeddings, record persistence and similarity search."""

from matrix_core.memory.embedder import Embedder, HashingEmbedder, build_embedder
from matrix_core.memory.models import MemoryHit, MemoryRecord
from matrix_core.memory.store import MemoryStore

__all__ = [
    "Embedder",
    "HashingEmbedder",
    "MemoryHit",
    "MemoryRecord",
    "MemoryStore",
    "build_embedder",
]
