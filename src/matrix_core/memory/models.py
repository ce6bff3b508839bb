"""Domain models for semantic memory."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class MemoryRecord:
    """Stored text with its embedding; never mutated after creation."""

    id: str
    scope_id: str
    text: str
    vector: tuple[float, ...]
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str | None:
        value = self.metadata.get("hash")
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "scope_id": self.scope_id,
            "text": self.text,
            "vector": list(self.vector),
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class MemoryHit:
    """One ranked search result."""

    score: float
    record: MemoryRecord


def content_hash(text: str) -> str:
    """Stable SHA-1 digest used for idempotent writes."""

    return hashlib.sha1((text or "").encode("utf-8"), usedforsecurity=False).hexdigest()  # noqa: S324
