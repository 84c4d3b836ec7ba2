"""Task definitions, the registry resolving them, and per-invocation run params."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from task_relay.tasks.checkpoints import Checkpoint, RawCheckpoint
from task_relay.tasks.models import TaskView
from task_relay.tasks.response import TaskResponse, TaskResult
from task_relay.tasks.store import TaskStore
from task_relay.tasks.timer import InvocationTimer

C = TypeVar("C", bound=Checkpoint)

InvocationLogger = logging.Logger | logging.LoggerAdapter[Any]


@dataclass(slots=True)
class RunParams(Generic[C]):
    """Everything one invocation of a work function may touch.

    ``is_aborted`` and ``is_close_to_timeout`` are the two cooperative
    signals; a work function checks both at every natural iteration boundary.
    """

    task: TaskView
    input: C
    response: TaskResponse
    store: TaskStore
    timer: InvocationTimer
    logger: InvocationLogger
    abort_check: Callable[[], bool] = field(repr=False, default=lambda: False)

    def is_aborted(self) -> bool:
        return self.abort_check()

    def is_close_to_timeout(self) -> bool:
        return self.timer.is_close_to_timeout()


WorkFunction = Callable[[RunParams[Any]], TaskResult]


@dataclass(slots=True, frozen=True)
class TaskDefinition:
    """Binds a definition id to its work function and checkpoint type."""

    definition_id: str
    title: str
    run: WorkFunction
    checkpoint_type: type[Checkpoint] = RawCheckpoint
    description: str = ""


class TaskRegistry:
    """In-process lookup of task definitions by id."""

    def __init__(self, definitions: tuple[TaskDefinition, ...] = ()) -> None:
        self._definitions: dict[str, TaskDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: TaskDefinition) -> None:
        if definition.definition_id in self._definitions:
            raise ValueError(f"Task definition '{definition.definition_id}' already registered")
        self._definitions[definition.definition_id] = definition

    def get(self, definition_id: str) -> TaskDefinition | None:
        return self._definitions.get(definition_id)

    def ids(self) -> list[str]:
        return sorted(self._definitions)
