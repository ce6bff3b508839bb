from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from matrix_core.main import matrix_core

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Command Line"),
]

_TASK_ID_RE = re.compile(r"task_id=(\S+)")


@pytest.fixture(autouse=True)
def _offline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MATRIX_CORE_AGENT_COMMAND",
        "MATRIX_CORE_WORKFLOWS_DIR",
        "MATRIX_CORE_EMBEDDING_PROVIDER",
        "MATRIX_CORE_FORCE_SECONDARY_MEMORY",
        "MATRIX_CORE_FORCE_SECONDARY_GRAPH",
        "MATRIX_CORE_WORKER_TASK_TYPES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MATRIX_CORE_WORKER_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("MATRIX_CORE_WORKER_PAUSE_SECONDS", "0")


def _invoke(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = runner.invoke(matrix_core, [*args, "--db-path", str(db_path)])
    assert result.exit_code == 0, result.output
    return result.output


def test_memory_add_search_and_list(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    added = _invoke(
        runner,
        db_path,
        "memory",
        "add",
        "--scope",
        "p1",
        "--text",
        "deploy checklist for billing",
        "--kind",
        "runtime-log",
    )
    _invoke(runner, db_path, "memory", "add", "--scope", "p1", "--text", "ui color palette")
    unique = _invoke(
        runner,
        db_path,
        "memory",
        "add",
        "--scope",
        "p1",
        "--text",
        "deploy checklist for billing",
        "--unique",
    )
    searched = _invoke(
        runner,
        db_path,
        "memory",
        "search",
        "--scope",
        "p1",
        "--query",
        "billing deploy",
        "--top-k",
        "1",
    )
    listed = _invoke(runner, db_path, "memory", "list", "--scope", "p1")

    record_id = re.search(r"id=(\S+)", added).group(1)  # type: ignore[union-attr]
    assert "backend=sql" in added
    assert f"id={record_id}" in unique
    assert "Hits: 1" in searched
    assert record_id in searched
    assert "Records: 2" in listed
    assert "kind=runtime-log" in listed


def test_graph_link_neighbors_and_summary(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    linked = _invoke(
        runner,
        db_path,
        "graph",
        "link",
        "--from",
        "project:p1",
        "--relation",
        "HAS_TASK",
        "--to",
        "Task:t1",
    )
    neighbors = _invoke(runner, db_path, "graph", "neighbors", "--node", "Task:t1")
    summary = _invoke(runner, db_path, "graph", "summary")

    assert "Project:p1 -HAS_TASK-> Task:t1" in linked
    assert "Edges for Task:t1: 1" in neighbors
    assert "Total edges: 1" in summary
    assert "HAS_TASK: 1" in summary


def test_graph_link_rejects_malformed_node(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        matrix_core,
        [
            "graph",
            "link",
            "--from",
            "p1",
            "--relation",
            "HAS_TASK",
            "--to",
            "Task:t1",
            "--db-path",
            str(tmp_path / "cli.db"),
        ],
    )

    assert result.exit_code == 2
    assert "Type:id" in result.output


def test_queue_lifecycle_commands(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    enqueued = _invoke(
        runner,
        db_path,
        "queue",
        "enqueue",
        "--scope",
        "p1",
        "--type",
        "coding",
        "--payload",
        '{"goal": "add search"}',
    )
    task_id = _TASK_ID_RE.search(enqueued).group(1)  # type: ignore[union-attr]
    claimed = _invoke(runner, db_path, "queue", "claim", "--type", "coding")
    empty = _invoke(runner, db_path, "queue", "claim", "--type", "coding")
    completed = _invoke(runner, db_path, "queue", "complete", "--task-id", task_id)
    again = _invoke(runner, db_path, "queue", "fail", "--task-id", task_id, "--error", "late")
    listed = _invoke(runner, db_path, "queue", "list", "--scope", "p1")
    inspected = _invoke(runner, db_path, "queue", "inspect", "--task-id", task_id)
    missing = _invoke(runner, db_path, "queue", "inspect", "--task-id", "nope")

    assert "status=queued" in enqueued
    assert f"Task claimed: task_id={task_id}" in claimed
    assert '{"goal": "add search"}' in claimed
    assert "No queued tasks of type coding" in empty
    assert f"Task completed: {task_id}" in completed
    assert f"Task not in progress, unchanged: {task_id}" in again
    assert "Tasks: 1" in listed
    assert "Status: completed" in inspected
    assert "Events: 3" in inspected
    assert "Task not found: nope" in missing


def test_queue_enqueue_rejects_non_object_payload(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        matrix_core,
        [
            "queue",
            "enqueue",
            "--scope",
            "p1",
            "--type",
            "coding",
            "--payload",
            "[1, 2]",
            "--db-path",
            str(tmp_path / "cli.db"),
        ],
    )

    assert result.exit_code == 2
    assert "--payload" in result.output


def test_plan_and_orchestrate_with_default_agent(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    planned = _invoke(runner, db_path, "plan", "--scope", "p1", "--goal", "design and implement")
    ran = _invoke(runner, db_path, "orchestrate", "--scope", "p1", "--goal", "analyze and design")

    assert "Plan steps: 2" in planned
    assert "architecture priority=9 depends_on=analysis tools=get_scope_info" in planned
    assert "coding priority=8 depends_on=architecture" in planned
    assert "Orchestration: succeeded=True" in ran
    assert "ran analysis action=respond" in ran
    assert "ran architecture action=respond" in ran


def test_orchestrate_reports_skipped_dependents(tmp_path: Path) -> None:
    output = _invoke(
        CliRunner(),
        tmp_path / "cli.db",
        "orchestrate",
        "--scope",
        "p1",
        "--goal",
        "write the tests",
    )

    assert "Orchestration: succeeded=False" in output
    assert "skipped testing: missing=coding" in output


def test_worker_processes_queued_task_once(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    enqueued = _invoke(
        runner,
        db_path,
        "queue",
        "enqueue",
        "--scope",
        "p1",
        "--type",
        "coding",
        "--payload",
        '{"goal": "add search"}',
    )
    task_id = _TASK_ID_RE.search(enqueued).group(1)  # type: ignore[union-attr]

    worked = _invoke(runner, db_path, "worker", "--task-type", "coding", "--task-type", "testing")
    inspected = _invoke(runner, db_path, "queue", "inspect", "--task-id", task_id)
    memory = _invoke(runner, db_path, "memory", "list", "--scope", "p1")
    neighbors = _invoke(runner, db_path, "graph", "neighbors", "--node", f"Task:{task_id}")

    assert "Worker summary [coding]: processed=1 succeeded=1 failed=0 idle_polls=0" in worked
    assert "Worker summary [testing]: processed=0 succeeded=0 failed=0 idle_polls=1" in worked
    assert "Status: completed" in inspected
    assert "coding: add search" in memory
    assert "-PRODUCED-> Memory:" in neighbors


def test_worker_loop_drains_lane(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    for _ in range(2):
        _invoke(runner, db_path, "queue", "enqueue", "--scope", "p1", "--type", "analysis")

    output = _invoke(runner, db_path, "worker", "--task-type", "analysis", "--loop")

    assert "Worker summary [analysis]: processed=2 succeeded=2 failed=0 idle_polls=1" in output


def test_summary_command_stores_summary(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _invoke(runner, db_path, "queue", "enqueue", "--scope", "p1", "--type", "coding")

    output = _invoke(runner, db_path, "summary", "--scope", "p1")
    listed = _invoke(runner, db_path, "memory", "list", "--scope", "p1")

    assert "Scope p1 summary" in output
    assert "Tasks: queued=1, in_progress=0, completed=0, failed=0" in output
    assert "Stored as memory: " in output
    assert "kind=summary" in listed


def test_workflow_run_executes_definition(tmp_path: Path) -> None:
    definition = tmp_path / "release.json"
    definition.write_text(
        json.dumps(
            {
                "name": "release",
                "steps": [
                    {
                        "id": "handoff",
                        "kind": "task",
                        "config": {"scope_id": "p1", "task_type": "testing"},
                        "on_success": "gate",
                    },
                    {
                        "id": "gate",
                        "kind": "condition",
                        "config": {"condition": "handoff.result.status == 'queued'"},
                    },
                ],
            },
        ),
        encoding="utf-8",
    )
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    output = _invoke(runner, db_path, "workflow", "run", str(definition))
    listed = _invoke(runner, db_path, "queue", "list", "--scope", "p1")

    assert "(release)" in output
    assert "status=completed transitions=2" in output
    assert "  gate ok" in output
    assert "type=testing" in listed


def test_workflow_run_fails_on_failed_step(tmp_path: Path) -> None:
    definition = tmp_path / "gate.json"
    definition.write_text(
        json.dumps(
            {
                "name": "gate",
                "steps": [{"id": "gate", "kind": "condition", "config": {"condition": "false"}}],
            },
        ),
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        matrix_core,
        ["workflow", "run", str(definition), "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 1
    assert "status=failed" in result.output
    assert "Workflow did not complete." in result.output
