from __future__ import annotations

from collections.abc import Callable
from typing import Any

import allure
import pytest

from task_relay.imports.controller import (
    CONTROLLER_DEFINITION_ID,
    DOWNLOAD_DEFINITION_ID,
    build_controller_definition,
)
from task_relay.imports.models import StaticModelRegistry
from task_relay.tasks.dispatcher import TaskDispatcher
from task_relay.tasks.models import TaskCreate, TaskStatus, TaskUpdate
from task_relay.tasks.repository import TaskRepository
from task_relay.tasks.response import InvocationResult, ResultStatus

from conftest import CountdownTimer

pytestmark = [
    allure.epic("Import From URL"),
    allure.feature("Controller"),
]

Dispatcher = Callable[..., TaskDispatcher]

FILES = [
    {"key": "file-1.zip", "type": "entries", "get": "https://files.local/file-1.zip"},
    {"key": "file-2.zip", "type": "assets", "get": "https://files.local/file-2.zip"},
    {"key": "something-unknown.zip", "type": "unknown"},
]


def _controller_dispatcher(make_dispatcher: Dispatcher, **kwargs: Any) -> TaskDispatcher:
    registry = StaticModelRegistry.from_ids(["category", "article"])
    return make_dispatcher(build_controller_definition(registry), **kwargs)


def _create(repository: TaskRepository, task_input: dict[str, Any]) -> str:
    return repository.create_task(
        TaskCreate(
            definition_id=CONTROLLER_DEFINITION_ID,
            name="Import from URL Controller",
            input=task_input,
        ),
    ).task_id


def _settle_children(repository: TaskRepository, parent_id: str, *statuses: TaskStatus) -> None:
    children = repository.list_tasks(parent_id=parent_id)
    for child, status in zip(children, statuses, strict=True):
        repository.update_task(task_id=child.task_id, update=TaskUpdate(status=status))


@pytest.mark.parametrize(
    ("task_input", "code", "message"),
    [
        ({}, "MISSING_MODEL_ID", 'Missing "modelId" in the input.'),
        ({"modelId": "category"}, "NO_FILES_FOUND", "No files found in the provided data."),
        (
            {"modelId": "nonExistingModelId", "files": FILES},
            "MODEL_NOT_FOUND",
            'Model "nonExistingModelId" not found.',
        ),
    ],
)
def test_invalid_input_fails_without_children(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
    task_input: dict[str, Any],
    code: str,
    message: str,
) -> None:
    task_id = _create(repository, task_input)

    invocation = _controller_dispatcher(make_dispatcher).invoke(task_id)

    assert invocation.to_payload() == {
        "status": "error",
        "tenant": "root",
        "locale": "en-US",
        "webinyTaskId": task_id,
        "webinyTaskDefinitionId": CONTROLLER_DEFINITION_ID,
        "error": {"code": code, "message": message, "data": {"input": task_input}},
    }
    assert repository.list_tasks(parent_id=task_id) == []


def test_duplicate_file_keys_are_rejected(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
) -> None:
    files = [FILES[0], {**FILES[0], "type": "assets"}]
    task_id = _create(repository, {"modelId": "category", "files": files})

    invocation = _controller_dispatcher(make_dispatcher).invoke(task_id)

    error = invocation.to_payload()["error"]
    assert error["code"] == "DUPLICATE_FILE_KEY"
    assert "file-1.zip" in error["message"]


def test_dispatches_known_files_and_reports_unknown_ones(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
) -> None:
    task_id = _create(repository, {"modelId": "category", "files": FILES})
    continues: list[InvocationResult] = []

    def on_continue(iteration: int, invocation: InvocationResult) -> None:
        continues.append(invocation)
        payload = invocation.to_payload()
        assert iteration == 1
        assert payload["delay"] == -1
        assert payload["input"]["steps"] == {"download": {"triggered": True}}
        assert payload["input"]["modelId"] == "category"
        children = repository.list_tasks(parent_id=task_id)
        assert [child.definition_id for child in children] == [DOWNLOAD_DEFINITION_ID] * 2
        assert [child.input["file"]["key"] for child in children] == ["file-1.zip", "file-2.zip"]
        assert children[0].input["downloadedBytes"] == 0
        assert children[0].name == "Import from URL - download file-1.zip"
        _settle_children(repository, task_id, TaskStatus.SUCCESS, TaskStatus.SUCCESS)

    result = _controller_dispatcher(make_dispatcher).run_until_settled(
        task_id,
        on_continue=on_continue,
    )

    children = repository.list_tasks(parent_id=task_id)
    child_ids = [child.task_id for child in children]
    assert len(continues) == 1
    assert result.status is ResultStatus.DONE
    output = result.to_payload()["output"]
    assert output["done"] == child_ids
    assert output["failed"] == []
    assert output["aborted"] == []
    assert output["invalid"] == ["something-unknown.zip"]
    assert output["files"] == [
        {"key": "file-1.zip", "type": "entries", "state": "success", "taskId": child_ids[0]},
        {"key": "file-2.zip", "type": "assets", "state": "success", "taskId": child_ids[1]},
        {"key": "something-unknown.zip", "type": "unknown", "state": "invalid", "taskId": None},
    ]
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status is TaskStatus.SUCCESS


def test_failed_and_aborted_children_land_in_their_buckets(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
) -> None:
    task_id = _create(repository, {"modelId": "category", "files": FILES})
    dispatcher = _controller_dispatcher(make_dispatcher)
    dispatcher.invoke(task_id)
    _settle_children(repository, task_id, TaskStatus.FAILURE, TaskStatus.ABORTED)
    first, second = repository.list_tasks(parent_id=task_id)

    invocation = dispatcher.invoke(task_id)

    output = invocation.to_payload()["output"]
    assert output["done"] == []
    assert output["failed"] == [first.task_id]
    assert output["aborted"] == [second.task_id]
    assert [item["state"] for item in output["files"]] == ["failure", "aborted", "invalid"]


@pytest.mark.parametrize(
    "statuses",
    [
        (TaskStatus.SUCCESS, TaskStatus.SUCCESS),
        (TaskStatus.SUCCESS, TaskStatus.FAILURE),
        (TaskStatus.ABORTED, TaskStatus.FAILURE),
        (TaskStatus.ABORTED, TaskStatus.ABORTED),
    ],
)
def test_every_file_is_accounted_for_exactly_once(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
    statuses: tuple[TaskStatus, TaskStatus],
) -> None:
    task_id = _create(repository, {"modelId": "category", "files": FILES})
    dispatcher = _controller_dispatcher(make_dispatcher)
    dispatcher.invoke(task_id)
    _settle_children(repository, task_id, *statuses)

    output = dispatcher.invoke(task_id).to_payload()["output"]

    settled = output["done"] + output["failed"] + output["aborted"] + output["invalid"]
    assert len(settled) == len(FILES)
    assert len(set(settled)) == len(FILES)


def test_waits_while_children_are_running(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
) -> None:
    task_id = _create(repository, {"modelId": "category", "files": FILES})
    dispatcher = _controller_dispatcher(make_dispatcher)
    dispatched = dispatcher.invoke(task_id).to_payload()
    _settle_children(repository, task_id, TaskStatus.SUCCESS, TaskStatus.PENDING)

    waiting = dispatcher.invoke(task_id).to_payload()

    assert waiting["status"] == "continue"
    assert waiting["input"] == dispatched["input"]
    assert waiting["delay"] == -1
    assert len(repository.list_tasks(parent_id=task_id)) == 2


def test_dispatch_resumes_after_timeout_without_duplicates(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
) -> None:
    task_id = _create(repository, {"modelId": "category", "files": FILES})
    dispatcher = _controller_dispatcher(make_dispatcher, timers=[CountdownTimer(1)])

    partial = dispatcher.invoke(task_id).to_payload()

    assert partial["status"] == "continue"
    assert "steps" not in partial["input"]
    assert len(repository.list_tasks(parent_id=task_id)) == 1

    complete = dispatcher.invoke(task_id).to_payload()

    children = repository.list_tasks(parent_id=task_id)
    assert complete["input"]["steps"] == {"download": {"triggered": True}}
    assert [child.input["file"]["key"] for child in children] == ["file-1.zip", "file-2.zip"]


def test_abort_is_propagated_to_unfinished_children(
    repository: TaskRepository,
    make_dispatcher: Dispatcher,
) -> None:
    task_id = _create(repository, {"modelId": "category", "files": FILES})
    dispatcher = _controller_dispatcher(make_dispatcher)
    dispatcher.invoke(task_id)
    _settle_children(repository, task_id, TaskStatus.SUCCESS, TaskStatus.PENDING)
    repository.request_abort(task_id=task_id)

    invocation = dispatcher.invoke(task_id)

    assert invocation.status is ResultStatus.ABORTED
    finished, running = repository.list_tasks(parent_id=task_id)
    assert not finished.abort_requested
    assert running.abort_requested
    assert running.status is TaskStatus.PENDING
