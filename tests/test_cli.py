from __future__ import annotations

import functools
import json
import re
from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner, Result

from task_relay.imports.download import build_download_definition
from task_relay.main import task_relay
from task_relay.tasks import controllers

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("TASK_RELAY_ELASTICSEARCH_URL", raising=False)
    monkeypatch.setenv("TASK_RELAY_MODEL_IDS", "category")
    monkeypatch.setenv("TASK_RELAY_DOWNLOAD_DIR", str(tmp_path / "downloads"))


def _invoke(*args: str) -> Result:
    return CliRunner().invoke(task_relay, list(args))


def _create(db_path: Path, definition: str, task_input: dict[str, object]) -> str:
    result = _invoke(
        "tasks",
        "create",
        "--db-path",
        str(db_path),
        "--definition",
        definition,
        "--input",
        json.dumps(task_input),
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_bulk_task_lifecycle_through_cli(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _create(db_path, "bulkEntryCreator", {"totalAmount": 3})

    dispatched = _invoke("dispatch", "task", "--db-path", str(db_path), task_id)
    inspected = _invoke("tasks", "inspect", "--db-path", str(db_path), task_id)
    aborted = _invoke("tasks", "abort", "--db-path", str(db_path), task_id)
    listed = _invoke("tasks", "list", "--db-path", str(db_path), "--status", "success")

    assert dispatched.exit_code == 0, dispatched.output
    assert f"Task {task_id} finished: status=done" in dispatched.output
    assert "Created 3 records." in dispatched.output
    assert inspected.exit_code == 0, inspected.output
    assert "Status: success" in inspected.output
    assert "result_done" in inspected.output
    assert f"Task already finished: {task_id} status=success" in aborted.output
    assert "Tasks: 1" in listed.output


def test_import_controller_reports_unknown_files(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _create(
        db_path,
        "importFromUrlController",
        {"modelId": "category", "files": [{"key": "notes.txt", "type": "unknown"}]},
    )

    result = _invoke("dispatch", "task", "--db-path", str(db_path), task_id)

    assert result.exit_code == 0, result.output
    assert "iteration 1: continue" in result.output
    assert f"Task {task_id} finished: status=done" in result.output
    assert '"invalid": ["notes.txt"]' in result.output


def test_import_controller_settles_once_its_downloads_finish(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    body = b"id,title\n1,first\n"
    monkeypatch.setattr(
        controllers,
        "build_download_definition",
        functools.partial(
            build_download_definition,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)),
        ),
    )
    db_path = tmp_path / "cli.db"
    task_id = _create(
        db_path,
        "importFromUrlController",
        {
            "modelId": "category",
            "files": [
                {"key": "file-1.zip", "type": "entries", "get": "https://files.local/file-1.zip"},
            ],
        },
    )

    result = _invoke("dispatch", "task", "--db-path", str(db_path), task_id)

    assert result.exit_code == 0, result.output
    assert f"Task {task_id} finished: status=done" in result.output
    assert '"state": "success"' in result.output
    assert (tmp_path / "downloads" / task_id / "file-1.zip").read_bytes() == body


def test_dispatch_run_drains_queue(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _create(db_path, "bulkEntryCreator", {"totalAmount": 2})
    _create(db_path, "importFromUrlController", {})

    result = _invoke("dispatch", "run", "--db-path", str(db_path))

    assert result.exit_code == 0, result.output
    assert "invocations=2 done=1 continued=0 failed=1" in result.output


def test_abort_pending_task(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _create(db_path, "bulkEntryCreator", {"totalAmount": 2})

    aborted = _invoke("tasks", "abort", "--db-path", str(db_path), task_id)
    dispatched = _invoke("dispatch", "task", "--db-path", str(db_path), task_id)

    assert f"Abort requested: {task_id}" in aborted.output
    assert "status=aborted" in dispatched.output


def test_create_rejects_unknown_definition_and_bad_input(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    unknown = _invoke(
        "tasks", "create", "--db-path", str(db_path), "--definition", "nope"
    )
    invalid = _invoke(
        "tasks",
        "create",
        "--db-path",
        str(db_path),
        "--definition",
        "bulkEntryCreator",
        "--input",
        "{not json",
    )
    not_object = _invoke(
        "tasks",
        "create",
        "--db-path",
        str(db_path),
        "--definition",
        "bulkEntryCreator",
        "--input",
        "[1, 2]",
    )

    assert unknown.exit_code != 0
    assert "Unknown task definition: nope" in unknown.output
    assert "not valid JSON" in invalid.output
    assert "must be a JSON object" in not_object.output


def test_inspect_missing_task_fails(tmp_path: Path) -> None:
    result = _invoke("tasks", "inspect", "--db-path", str(tmp_path / "cli.db"), "missing")

    assert result.exit_code != 0
    assert "Task not found: missing" in result.output


def test_health_check_without_elasticsearch_is_open(tmp_path: Path) -> None:
    result = _invoke("health", "check", "--db-path", str(tmp_path / "cli.db"))

    assert result.exit_code == 0, result.output
    assert "Health: status=GREEN cpu=0.0% ram=0.0%" in result.output
    assert "Gate: open" in result.output
