from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect
from sqlmodel import Session

from task_relay.storage.sqlmodel_models import TaskRecord
from task_relay.tasks.models import (
    TaskCreate,
    TaskNotFoundError,
    TaskStateError,
    TaskStatus,
    TaskUpdate,
)
from task_relay.tasks.repository import TaskRepository
from task_relay.tasks.response import (
    AbortedResult,
    ContinueResult,
    DoneResult,
    ErrorPayload,
    ErrorResult,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Store"),
]


def _create(repository: TaskRepository, **overrides: object) -> str:
    payload = TaskCreate(
        definition_id=str(overrides.pop("definition_id", "demo")),
        name=str(overrides.pop("name", "Demo")),
        **overrides,  # type: ignore[arg-type]
    )
    return repository.create_task(payload).task_id


def test_init_schema_creates_tables(db_path: Path, repository: TaskRepository) -> None:
    tables = set(inspect(repository.engine).get_table_names())

    assert {"tasks", "task_events", "entries", "alembic_version"} <= tables


def test_create_task_starts_pending_with_scope(repository: TaskRepository) -> None:
    task_id = _create(repository, input={"totalAmount": 3})

    task = repository.get_task(task_id=task_id)

    assert task is not None
    assert task.status is TaskStatus.PENDING
    assert task.input == {"totalAmount": 3}
    assert task.tenant == "root"
    assert task.locale == "en-US"
    assert task.iterations == 0
    assert task.output is None


def test_children_inherit_parent_locale(db_path: Path) -> None:
    german = TaskRepository(db_path, locale="de-DE")
    german.init_schema()
    parent_id = _create(german)
    german.close()

    english = TaskRepository(db_path)
    child = english.create_task(TaskCreate(definition_id="child", name="c", parent_id=parent_id))
    english.close()

    assert child.locale == "de-DE"
    assert child.parent_id == parent_id


def test_claim_is_exclusive_and_counts_iterations(repository: TaskRepository) -> None:
    task_id = _create(repository)

    claimed = repository.claim_task(task_id=task_id)

    assert claimed is not None
    assert claimed.status is TaskStatus.RUNNING
    assert claimed.iterations == 1
    assert repository.claim_task(task_id=task_id) is None


def test_continue_result_returns_task_to_pending(repository: TaskRepository) -> None:
    task_id = _create(repository, input={"createdAmount": 0})
    repository.claim_task(task_id=task_id)
    before = datetime.now(tz=UTC)

    task = repository.apply_result(
        task_id=task_id,
        result=ContinueResult(input={"createdAmount": 50}, wait_seconds=30),
    )

    assert task.status is TaskStatus.PENDING
    assert task.input == {"createdAmount": 50}
    assert task.run_after >= before + timedelta(seconds=29)
    assert repository.next_ready_task() is None


def test_done_result_records_output(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_task(task_id=task_id)

    task = repository.apply_result(
        task_id=task_id,
        result=DoneResult(message="Created 3 records.", output={"createdAmount": 3}),
    )

    assert task.status is TaskStatus.SUCCESS
    assert task.output == {"createdAmount": 3}
    assert task.message == "Created 3 records."
    assert task.finished_at is not None


def test_error_and_aborted_results_are_terminal(repository: TaskRepository) -> None:
    failed_id = _create(repository)
    aborted_id = _create(repository)
    repository.claim_task(task_id=failed_id)
    repository.claim_task(task_id=aborted_id)

    failed = repository.apply_result(
        task_id=failed_id,
        result=ErrorResult(error=ErrorPayload(code="E", message="boom", data={"input": {}})),
    )
    aborted = repository.apply_result(task_id=aborted_id, result=AbortedResult())

    assert failed.status is TaskStatus.FAILURE
    assert failed.error == {"code": "E", "message": "boom", "data": {"input": {}}}
    assert aborted.status is TaskStatus.ABORTED


def test_apply_result_requires_running_task(repository: TaskRepository) -> None:
    task_id = _create(repository)

    with pytest.raises(TaskStateError, match="is not running"):
        repository.apply_result(task_id=task_id, result=DoneResult())


def test_terminal_status_never_reverts(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.update_task(task_id=task_id, update=TaskUpdate(status=TaskStatus.SUCCESS))

    with pytest.raises(TaskStateError, match="is terminal"):
        repository.update_task(task_id=task_id, update=TaskUpdate(status=TaskStatus.PENDING))
    with pytest.raises(TaskStateError, match="read-only"):
        repository.update_task(task_id=task_id, update=TaskUpdate(input={"x": 1}))

    assert repository.claim_task(task_id=task_id) is None


def test_abort_request_is_ignored_for_terminal_task(repository: TaskRepository) -> None:
    active_id = _create(repository)
    done_id = _create(repository)
    repository.update_task(task_id=done_id, update=TaskUpdate(status=TaskStatus.SUCCESS))

    repository.request_abort(task_id=active_id)
    repository.request_abort(task_id=done_id)

    assert repository.is_abort_requested(task_id=active_id)
    assert not repository.is_abort_requested(task_id=done_id)


def test_list_tasks_filters_children_in_creation_order(repository: TaskRepository) -> None:
    parent_id = _create(repository)
    first = _create(repository, definition_id="child", parent_id=parent_id)
    second = _create(repository, definition_id="child", parent_id=parent_id)
    _create(repository)

    children = repository.list_tasks(parent_id=parent_id)

    assert [child.task_id for child in children] == [first, second]
    assert len(repository.list_tasks(status=TaskStatus.PENDING)) == 4


def test_recover_stale_running_tasks(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_task(task_id=task_id)
    with Session(repository.engine) as session:
        row = session.get(TaskRecord, task_id)
        assert row is not None
        row.updated_at = datetime(2020, 1, 1)
        session.add(row)
        session.commit()

    recovered = repository.recover_stale_running_tasks(stale_after=timedelta(minutes=30))

    assert recovered == [task_id]
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status is TaskStatus.PENDING


def test_task_details_include_event_trail(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_task(task_id=task_id)
    repository.apply_result(task_id=task_id, result=ContinueResult(input={}))

    details = repository.get_task_details(task_id=task_id)

    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "invocation_started",
        "result_continue",
    ]
    assert details.events[1].details == {"iteration": 1}


def test_unknown_task_raises(repository: TaskRepository) -> None:
    assert repository.get_task(task_id="missing") is None
    with pytest.raises(TaskNotFoundError):
        repository.request_abort(task_id="missing")


def test_invocation_events_record_each_claimed_iteration(repository: TaskRepository) -> None:
    task_id = _create(repository)
    for _ in range(2):
        repository.claim_task(task_id=task_id)
        repository.apply_result(task_id=task_id, result=ContinueResult(input={}))
    claimed = repository.claim_task(task_id=task_id)

    details = repository.get_task_details(task_id=task_id)

    assert claimed is not None
    assert claimed.iterations == 3
    assert details is not None
    assert [
        event.details["iteration"]
        for event in details.events
        if event.event_type == "invocation_started"
    ] == [1, 2, 3]
