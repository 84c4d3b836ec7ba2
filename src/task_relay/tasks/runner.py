"""Drives one invocation of a task's work function."""

from __future__ import annotations

import logging
from collections.abc import Callable, MutableMapping
from dataclasses import replace
from typing import Any

from task_relay.tasks.checkpoints import CheckpointError
from task_relay.tasks.definitions import RunParams, TaskRegistry
from task_relay.tasks.models import TaskNotFoundError, TaskNotRunnableError, TaskView
from task_relay.tasks.repository import TaskRepository
from task_relay.tasks.response import (
    AbortedResult,
    ErrorPayload,
    ErrorResult,
    InvocationResult,
    TaskResponse,
    TaskResult,
)
from task_relay.tasks.store import InvocationTaskStore
from task_relay.tasks.timer import InvocationTimer

logger = logging.getLogger(__name__)


class InvocationLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Prefixes records with the invocation identity and keeps it in ``extra``."""

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = self.extra or {}
        kwargs["extra"] = {**context, **(kwargs.get("extra") or {})}
        prefix = (
            f"[task={context.get('task_id')} definition={context.get('definition_id')} "
            f"iteration={context.get('iteration')}]"
        )
        return f"{prefix} {msg}", kwargs


class _AbortLatch:
    """Polls the abort flag until it is seen once, then stays set."""

    def __init__(self, check: Callable[[], bool]) -> None:
        self._check = check
        self.observed = False

    def __call__(self) -> bool:
        if not self.observed and self._check():
            self.observed = True
        return self.observed


class TaskRunner:
    """Claims a task, runs its work function once and returns the outcome.

    The runner never retries: any exception raised by the work function is
    converted into a terminal ``ErrorResult``. Persisting the outcome and
    deciding when to re-invoke is the dispatcher's job.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        registry: TaskRegistry,
        timer_factory: Callable[[], InvocationTimer] | None = None,
        response_factory: Callable[[], TaskResponse] = TaskResponse,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.timer_factory = timer_factory or (lambda: InvocationTimer(budget_seconds=900.0))
        self.response_factory = response_factory

    def run(self, task_id: str) -> InvocationResult:
        """Run one invocation of ``task_id``."""

        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        claimed = self.repository.claim_task(task_id=task_id)
        if claimed is None:
            current = self.repository.get_task(task_id=task_id) or task
            raise TaskNotRunnableError(task_id, current.status)

        invocation_logger = InvocationLoggerAdapter(
            logger,
            {
                "task_id": claimed.task_id,
                "definition_id": claimed.definition_id,
                "iteration": claimed.iterations,
            },
        )
        invocation_logger.info("Invocation started")
        result = self._execute(task=claimed, invocation_logger=invocation_logger)
        invocation_logger.info("Invocation finished with status=%s", result.status.value)
        return InvocationResult(
            task_id=claimed.task_id,
            definition_id=claimed.definition_id,
            tenant=claimed.tenant,
            locale=claimed.locale,
            result=result,
        )

    def _execute(self, *, task: TaskView, invocation_logger: InvocationLoggerAdapter) -> TaskResult:
        response = self.response_factory()
        definition = self.registry.get(task.definition_id)
        if definition is None:
            return response.error(
                ErrorPayload(
                    code="TASK_DEFINITION_NOT_FOUND",
                    message=f'Task definition "{task.definition_id}" not found.',
                    data={"input": task.input},
                ),
            )

        try:
            checkpoint = definition.checkpoint_type.from_payload(task.input)
        except CheckpointError as error:
            invocation_logger.warning("Checkpoint rejected: %s", error)
            return response.error(
                ErrorPayload(
                    code="INVALID_CHECKPOINT",
                    message=str(error),
                    data={"input": task.input},
                ),
            )

        abort_latch = _AbortLatch(
            lambda: self.repository.is_abort_requested(task_id=task.task_id),
        )
        params: RunParams[Any] = RunParams(
            task=task,
            input=checkpoint,
            response=response,
            store=InvocationTaskStore(repository=self.repository, task_id=task.task_id),
            timer=self.timer_factory(),
            logger=invocation_logger,
            abort_check=abort_latch,
        )

        try:
            result = definition.run(params)
        except Exception as error:  # noqa: BLE001
            invocation_logger.exception("Work function raised an unexpected error")
            result = response.error(error)

        if abort_latch.observed and not isinstance(result, AbortedResult):
            invocation_logger.warning(
                "Abort was observed; discarding %s result",
                getattr(result, "status", result),
            )
            return response.aborted()

        if not isinstance(result, TaskResult):
            return response.error(
                ErrorPayload(
                    code="INVALID_TASK_RESULT",
                    message=(
                        f'Task definition "{task.definition_id}" returned '
                        f"{type(result).__name__} instead of a task result."
                    ),
                    data={"input": task.input},
                ),
            )

        if isinstance(result, ErrorResult):
            return _with_input(result, task.input)
        return result


def _with_input(result: ErrorResult, task_input: dict[str, Any]) -> ErrorResult:
    data = dict(result.error.data or {})
    if "input" in data:
        return result
    data["input"] = task_input
    return ErrorResult(error=replace(result.error, data=data))
