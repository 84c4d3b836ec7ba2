from pathlib import Path

import allure
from sqlalchemy import inspect, text

from task_relay.storage.alembic_runner import head_revision
from task_relay.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == head_revision(tmp_path / "migrations.db") == "20261019_0001"

    inspector = inspect(repository.engine)
    task_columns = {column["name"] for column in inspector.get_columns("tasks")}
    assert {"task_id", "parent_id", "input_json", "run_after", "abort_requested_at"} <= task_columns
    indexed = {tuple(index["column_names"]) for index in inspector.get_indexes("tasks")}
    assert ("tenant", "parent_id") in indexed
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    first = TaskRepository(db_path)
    first.init_schema()
    first.close()

    second = TaskRepository(db_path)
    second.init_schema()
    assert second.list_tasks() == []
    second.close()
