"""Controllers for memory and scope summary CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from matrix_core.config import Settings
from matrix_core.runtime import open_runtime
from matrix_core.summary import store_scope_summary


@dataclass(slots=True)
class MemoryAddCommand:
    """CLI input for adding a memory record."""

    db_path: Path | None
    scope_id: str
    text: str
    kind: str | None
    unique: bool


@dataclass(slots=True)
class MemorySearchCommand:
    """CLI input for similarity search."""

    db_path: Path | None
    scope_id: str
    query: str
    top_k: int


@dataclass(slots=True)
class MemoryListCommand:
    db_path: Path | None
    scope_id: str
    limit: int


@dataclass(slots=True)
class ScopeSummaryCommand:
    """CLI input for building and storing a scope summary."""

    db_path: Path | None
    scope_id: str


class MemoryCliController:
    """Add, search and list scope memory."""

    def add(self, command: MemoryAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        metadata = {"kind": command.kind} if command.kind else {}
        with open_runtime(settings) as runtime:
            if command.unique:
                record = runtime.memory.add_unique(command.scope_id, command.text, metadata)
            else:
                record = runtime.memory.add(command.scope_id, command.text, metadata)
            backend = runtime.memory.backend_name
        return [
            f"Memory stored: id={record.id} scope={record.scope_id} backend={backend}",
        ]

    def search(self, command: MemorySearchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            hits = runtime.memory.search(command.scope_id, command.query, command.top_k)
        lines = [f"Hits: {len(hits)}"]
        for hit in hits:
            lines.append(f"  {hit.score:.4f} {hit.record.id} {_snippet(hit.record.text)}")
        return lines

    def list_records(self, command: MemoryListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            records = runtime.memory.list_records(command.scope_id)
        lines = [f"Records: {len(records)}"]
        for record in records[-command.limit :]:
            kind = record.metadata.get("kind", "-")
            lines.append(
                f"  {record.created_at.isoformat()} {record.id} kind={kind} "
                f"{_snippet(record.text)}",
            )
        return lines

    def summary(self, command: ScopeSummaryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            summary, record = store_scope_summary(
                command.scope_id,
                memory=runtime.memory,
                queue=runtime.queue,
                graph=runtime.graph,
            )
        lines = summary.text.splitlines()
        lines.append(f"Stored as memory: {record.id if record is not None else '-'}")
        return lines


def _snippet(text: str, limit: int = 80) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= limit:
        return flattened
    return flattened[: limit - 3] + "..."
