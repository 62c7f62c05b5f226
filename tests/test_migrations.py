import sqlite3
from pathlib import Path

import allure
import pytest

from spider_queue.orchestrator.repository import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    store = TaskStore(db_path)
    store.init_schema()
    store.init_schema()
    store.close()

    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    try:
        row = connection.execute("SELECT version_num FROM alembic_version LIMIT 1").fetchone()
        assert row is not None
        assert str(row["version_num"]) == "20261018_0001"

        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'alembic%' AND name NOT LIKE 'sqlite%'
            ORDER BY name
            """
        ).fetchall()
        assert [str(row["name"]) for row in tables] == [
            "app_settings",
            "queue_items",
            "task_logs",
            "tasks",
        ]

        single_running = connection.execute(
            """
            SELECT name, sql
            FROM sqlite_master
            WHERE type = 'index' AND name LIKE 'uq_%'
            ORDER BY name
            """
        ).fetchall()
        assert [str(row["name"]) for row in single_running] == [
            "uq_queue_items_single_running",
            "uq_tasks_single_running",
        ]
        for row in single_running:
            assert "WHERE status = 'running'" in str(row["sql"])
    finally:
        connection.close()


def test_single_running_index_rejects_second_running_task(tmp_path: Path) -> None:
    db_path = tmp_path / "index.db"
    TaskStore(db_path).init_schema()

    connection = sqlite3.connect(db_path)
    try:
        insert = (
            "INSERT INTO tasks (task_type, params_json, status, started_at, result_count) "
            "VALUES ('notes', '{}', ?, '2026-10-18 00:00:00', 0)"
        )
        connection.execute(insert, ("completed",))
        connection.execute(insert, ("completed",))
        connection.execute(insert, ("running",))
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(insert, ("running",))
    finally:
        connection.close()
