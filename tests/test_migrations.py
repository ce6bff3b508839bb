from pathlib import Path

import allure
from sqlalchemy import inspect, text

from matrix_core.storage.alembic_runner import upgrade_head
from matrix_core.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    upgrade_head(db_path)
    upgrade_head(db_path)

    engine = build_sqlite_engine(db_path=db_path)
    try:
        with engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version"),
            ).scalar_one()
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()

    assert version == "20261018_0001"
    assert {"memory_records", "graph_edges", "tasks", "task_events"} <= tables
