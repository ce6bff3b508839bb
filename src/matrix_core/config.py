"""Runtime configuration for memory, graph, queue, workflows and agents."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_EMBEDDING_PROVIDERS = ("hashed", "http", "sentence-transformers")


@dataclass(slots=True)
class StorageSettings:
    """SQLite storage settings."""

    busy_timeout_ms: int = 5000
    force_secondary_memory: bool = False
    force_secondary_graph: bool = False
    memory_snapshot_path: Path | None = None
    graph_snapshot_path: Path | None = None


@dataclass(slots=True)
class EmbeddingSettings:
    """Embedding provider settings."""

    provider: str = "hashed"
    dimensions: int = 256
    http_url: str | None = None
    http_timeout_seconds: float = 10.0
    model_name: str = "intfloat/multilingual-e5-small"
    allow_model_fallback: bool = False


@dataclass(slots=True)
class MemorySettings:
    """Semantic memory settings."""

    default_top_k: int = 5
    org_scope_id: str = "__org__"


@dataclass(slots=True)
class OrchestratorSettings:
    """Multi-agent orchestration settings."""

    history_capacity: int = 10
    history_max_keys: int = 256
    max_related_memory: int = 20
    memory_hint_top_k: int = 5
    memory_hint_query: str = "summary runtime-log"
    agent_timeout_seconds: float = 120.0
    tool_timeout_seconds: float = 60.0
    parallel_tools: bool = False
    remember_executions: bool = True
    agent_command: str | None = None


@dataclass(slots=True)
class WorkflowSettings:
    """Workflow engine settings."""

    step_timeout_seconds: float = 300.0
    max_transitions: int = 1000
    execution_history_capacity: int = 100
    definitions_dir: Path | None = None


@dataclass(slots=True)
class WorkerSettings:
    """Background worker loop settings."""

    task_types: tuple[str, ...] = ("analysis", "architecture", "coding", "testing", "visual")
    poll_interval_seconds: float = 0.4
    pause_after_task_seconds: float = 0.2
    context_hint_top_k: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".matrix_core.db")
    log_level: str = "INFO"
    storage: StorageSettings = field(default_factory=StorageSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("MATRIX_CORE_DB_PATH", ".matrix_core.db")),
            log_level=os.getenv("MATRIX_CORE_LOG_LEVEL", "INFO").strip().upper(),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("MATRIX_CORE_BUSY_TIMEOUT_MS", "5000")),
                force_secondary_memory=_env_bool(
                    "MATRIX_CORE_FORCE_SECONDARY_MEMORY",
                    default=False,
                ),
                force_secondary_graph=_env_bool(
                    "MATRIX_CORE_FORCE_SECONDARY_GRAPH",
                    default=False,
                ),
                memory_snapshot_path=_env_path("MATRIX_CORE_MEMORY_SNAPSHOT_PATH"),
                graph_snapshot_path=_env_path("MATRIX_CORE_GRAPH_SNAPSHOT_PATH"),
            ),
            embedding=EmbeddingSettings(
                provider=os.getenv("MATRIX_CORE_EMBEDDING_PROVIDER", "hashed").strip().lower(),
                dimensions=int(os.getenv("MATRIX_CORE_EMBEDDING_DIMENSIONS", "256")),
                http_url=os.getenv("MATRIX_CORE_EMBEDDING_HTTP_URL") or None,
                http_timeout_seconds=float(
                    os.getenv("MATRIX_CORE_EMBEDDING_HTTP_TIMEOUT_SECONDS", "10.0"),
                ),
                model_name=os.getenv(
                    "MATRIX_CORE_EMBEDDING_MODEL_NAME",
                    "intfloat/multilingual-e5-small",
                ),
                allow_model_fallback=_env_bool(
                    "MATRIX_CORE_EMBEDDING_ALLOW_MODEL_FALLBACK",
                    default=False,
                ),
            ),
            memory=MemorySettings(
                default_top_k=int(os.getenv("MATRIX_CORE_MEMORY_TOP_K", "5")),
                org_scope_id=os.getenv("MATRIX_CORE_ORG_SCOPE_ID", "__org__"),
            ),
            orchestrator=OrchestratorSettings(
                history_capacity=int(os.getenv("MATRIX_CORE_HISTORY_CAPACITY", "10")),
                history_max_keys=int(os.getenv("MATRIX_CORE_HISTORY_MAX_KEYS", "256")),
                max_related_memory=int(os.getenv("MATRIX_CORE_MAX_RELATED_MEMORY", "20")),
                memory_hint_top_k=int(os.getenv("MATRIX_CORE_MEMORY_HINT_TOP_K", "5")),
                memory_hint_query=os.getenv(
                    "MATRIX_CORE_MEMORY_HINT_QUERY",
                    "summary runtime-log",
                ),
                agent_timeout_seconds=float(
                    os.getenv("MATRIX_CORE_AGENT_TIMEOUT_SECONDS", "120.0"),
                ),
                tool_timeout_seconds=float(
                    os.getenv("MATRIX_CORE_TOOL_TIMEOUT_SECONDS", "60.0"),
                ),
                parallel_tools=_env_bool("MATRIX_CORE_PARALLEL_TOOLS", default=False),
                remember_executions=_env_bool(
                    "MATRIX_CORE_REMEMBER_EXECUTIONS",
                    default=True,
                ),
                agent_command=os.getenv("MATRIX_CORE_AGENT_COMMAND") or None,
            ),
            workflow=WorkflowSettings(
                step_timeout_seconds=float(
                    os.getenv("MATRIX_CORE_WORKFLOW_STEP_TIMEOUT_SECONDS", "300.0"),
                ),
                max_transitions=int(os.getenv("MATRIX_CORE_WORKFLOW_MAX_TRANSITIONS", "1000")),
                execution_history_capacity=int(
                    os.getenv("MATRIX_CORE_WORKFLOW_EXECUTION_HISTORY", "100"),
                ),
                definitions_dir=_env_path("MATRIX_CORE_WORKFLOWS_DIR"),
            ),
            worker=WorkerSettings(
                task_types=_collect_task_types(),
                poll_interval_seconds=float(
                    os.getenv("MATRIX_CORE_WORKER_POLL_INTERVAL_SECONDS", "0.4"),
                ),
                pause_after_task_seconds=float(
                    os.getenv("MATRIX_CORE_WORKER_PAUSE_SECONDS", "0.2"),
                ),
                context_hint_top_k=int(os.getenv("MATRIX_CORE_WORKER_HINT_TOP_K", "2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range or inconsistent values."""

        if self.embedding.provider not in SUPPORTED_EMBEDDING_PROVIDERS:
            raise ValueError(
                "Unsupported MATRIX_CORE_EMBEDDING_PROVIDER: "
                f"{self.embedding.provider!r}. Expected one of "
                f"{', '.join(SUPPORTED_EMBEDDING_PROVIDERS)}.",
            )
        if self.embedding.dimensions <= 0:
            raise ValueError("MATRIX_CORE_EMBEDDING_DIMENSIONS must be > 0.")
        if self.embedding.provider == "http":
            _validate_http_url(self.embedding.http_url)
        if self.embedding.http_timeout_seconds <= 0:
            raise ValueError("MATRIX_CORE_EMBEDDING_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.memory.default_top_k <= 0:
            raise ValueError("MATRIX_CORE_MEMORY_TOP_K must be > 0.")
        if self.orchestrator.history_capacity <= 0:
            raise ValueError("MATRIX_CORE_HISTORY_CAPACITY must be > 0.")
        if self.orchestrator.history_max_keys <= 0:
            raise ValueError("MATRIX_CORE_HISTORY_MAX_KEYS must be > 0.")
        if self.orchestrator.max_related_memory < 0:
            raise ValueError("MATRIX_CORE_MAX_RELATED_MEMORY must be >= 0.")
        if self.orchestrator.agent_timeout_seconds <= 0:
            raise ValueError("MATRIX_CORE_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.orchestrator.tool_timeout_seconds <= 0:
            raise ValueError("MATRIX_CORE_TOOL_TIMEOUT_SECONDS must be > 0.")
        if self.workflow.step_timeout_seconds <= 0:
            raise ValueError("MATRIX_CORE_WORKFLOW_STEP_TIMEOUT_SECONDS must be > 0.")
        if self.workflow.max_transitions <= 0:
            raise ValueError("MATRIX_CORE_WORKFLOW_MAX_TRANSITIONS must be > 0.")
        if self.workflow.execution_history_capacity <= 0:
            raise ValueError("MATRIX_CORE_WORKFLOW_EXECUTION_HISTORY must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("MATRIX_CORE_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if not self.worker.task_types:
            raise ValueError("MATRIX_CORE_WORKER_TASK_TYPES must list at least one task type.")


def _collect_task_types() -> tuple[str, ...]:
    raw = os.getenv("MATRIX_CORE_WORKER_TASK_TYPES", "").strip()
    if not raw:
        return WorkerSettings().task_types
    deduped: list[str] = []
    for part in raw.split(","):
        normalized = part.strip().lower()
        if normalized and normalized not in deduped:
            deduped.append(normalized)
    return tuple(deduped)


def _validate_http_url(value: str | None) -> None:
    if not value:
        raise ValueError(
            "MATRIX_CORE_EMBEDDING_HTTP_URL is required when the embedding provider is 'http'.",
        )
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid embedding URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
