"""Domain models for task records and their audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCESS, TaskStatus.FAILURE, TaskStatus.ABORTED})


class TaskNotFoundError(RuntimeError):
    """Raised when a task id does not resolve within the current tenant."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskNotRunnableError(RuntimeError):
    """Raised when an invocation cannot claim the task."""

    def __init__(self, task_id: str, status: TaskStatus) -> None:
        super().__init__(f"Task {task_id} cannot be invoked from status={status.value}")
        self.task_id = task_id
        self.status = status


class TaskStateError(RuntimeError):
    """Raised on an attempt to mutate a task against its lifecycle rules."""


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task record."""

    definition_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    task_id: str | None = None
    run_after: datetime | None = None


@dataclass(slots=True)
class TaskUpdate:
    """Partial update applied through the task store."""

    name: str | None = None
    input: dict[str, Any] | None = None
    status: TaskStatus | None = None
    output: dict[str, Any] | None = None
    message: str | None = None
    abort_requested: bool | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for the runner, coordinator and CLI."""

    task_id: str
    tenant: str
    locale: str
    definition_id: str
    name: str
    parent_id: str | None
    status: TaskStatus
    input: dict[str, Any]
    output: dict[str, Any] | None
    message: str | None
    error: dict[str, Any] | None
    iterations: int
    run_after: datetime
    abort_requested_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def abort_requested(self) -> bool:
        return self.abort_requested_at is not None


@dataclass(slots=True)
class TaskList:
    """Result of a task listing."""

    items: list[TaskView]


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]
