"""Narrow task-store interface consumed by work functions."""

from __future__ import annotations

from typing import Any, Protocol

from task_relay.tasks.models import TaskCreate, TaskList, TaskNotFoundError, TaskUpdate, TaskView
from task_relay.tasks.repository import TaskRepository

CHILD_LIST_LIMIT = 1_000_000


class TaskStore(Protocol):
    """What a running invocation may do with task records."""

    def create_task(
        self,
        definition_id: str,
        input: dict[str, Any],  # noqa: A002
        name: str,
        *,
        parent_id: str | None = None,
    ) -> TaskView: ...

    def get_task(self) -> TaskView: ...

    def list_tasks(self, *, parent_id: str | None = None, limit: int = ...) -> TaskList: ...

    def update_task(self, task_id: str, update: TaskUpdate) -> TaskView: ...


class InvocationTaskStore:
    """Task store bound to the task of the current invocation."""

    def __init__(self, *, repository: TaskRepository, task_id: str) -> None:
        self.repository = repository
        self.task_id = task_id

    def create_task(
        self,
        definition_id: str,
        input: dict[str, Any],  # noqa: A002
        name: str,
        *,
        parent_id: str | None = None,
    ) -> TaskView:
        return self.repository.create_task(
            TaskCreate(
                definition_id=definition_id,
                name=name,
                input=input,
                parent_id=parent_id,
            ),
        )

    def get_task(self) -> TaskView:
        task = self.repository.get_task(task_id=self.task_id)
        if task is None:
            raise TaskNotFoundError(self.task_id)
        return task

    def list_tasks(
        self,
        *,
        parent_id: str | None = None,
        limit: int = CHILD_LIST_LIMIT,
    ) -> TaskList:
        return TaskList(items=self.repository.list_tasks(parent_id=parent_id, limit=limit))

    def update_task(self, task_id: str, update: TaskUpdate) -> TaskView:
        return self.repository.update_task(task_id=task_id, update=update)
