"""Local dispatcher that re-invokes tasks until they settle."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from task_relay.tasks.models import TaskNotRunnableError
from task_relay.tasks.repository import TaskRepository
from task_relay.tasks.response import ContinueResult, InvocationResult, ResultStatus
from task_relay.tasks.runner import TaskRunner

logger = logging.getLogger(__name__)

ContinueCallback = Callable[[int, InvocationResult], None]


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    invocations: int = 0
    done: int = 0
    continued: int = 0
    failed: int = 0
    aborted: int = 0
    idle_polls: int = 0

    def add(self, other: DispatcherRunSummary) -> None:
        self.invocations += other.invocations
        self.done += other.done
        self.continued += other.continued
        self.failed += other.failed
        self.aborted += other.aborted
        self.idle_polls += other.idle_polls

    def record(self, status: ResultStatus) -> None:
        self.invocations += 1
        if status == ResultStatus.DONE:
            self.done += 1
        elif status == ResultStatus.CONTINUE:
            self.continued += 1
        elif status == ResultStatus.ERROR:
            self.failed += 1
        elif status == ResultStatus.ABORTED:
            self.aborted += 1


class IterationLimitError(RuntimeError):
    """Raised when a task is still continuing after the allowed invocations."""

    def __init__(self, task_id: str, max_iterations: int) -> None:
        super().__init__(f"Task {task_id} did not settle within {max_iterations} invocations")
        self.task_id = task_id
        self.max_iterations = max_iterations


class TaskDispatcher:
    """Plays the external dispatcher for one process.

    Each invocation is claimed atomically by the runner, so several local
    dispatchers may share one database without running a task twice at once.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        runner: TaskRunner,
        poll_interval_seconds: float = 2.0,
        stale_running_seconds: int = 1_800,
        max_iterations: int = 1_000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_running_seconds = stale_running_seconds
        self.max_iterations = max_iterations
        self._sleep = sleep
        self._stop_requested = False

    def invoke(self, task_id: str) -> InvocationResult:
        """Run one invocation of ``task_id`` and persist its outcome."""

        invocation = self.runner.run(task_id)
        task = self.repository.apply_result(task_id=task_id, result=invocation.result)
        logger.info(
            "Task %s (%s) -> %s, status=%s",
            task_id,
            invocation.definition_id,
            invocation.status.value,
            task.status.value,
        )
        return invocation

    def run_once(self) -> DispatcherRunSummary:
        """Invoke at most one ready task."""

        summary = DispatcherRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        self._recover_stale_tasks()
        task = self.repository.next_ready_task()
        if task is None:
            summary.idle_polls = 1
            return summary
        try:
            invocation = self.invoke(task.task_id)
        except TaskNotRunnableError:
            logger.info("Task %s was claimed elsewhere", task.task_id)
            summary.idle_polls = 1
            return summary
        summary.record(invocation.status)
        return summary

    def run_loop(
        self,
        *,
        max_invocations: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatcherRunSummary:
        """Invoke ready tasks until the queue stays idle or the limit is reached."""

        aggregate = DispatcherRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_invocations is not None and aggregate.invocations >= max_invocations:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.invocations == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def run_until_settled(
        self,
        task_id: str,
        *,
        max_iterations: int | None = None,
        on_continue: ContinueCallback | None = None,
        honor_delay: bool = False,
    ) -> InvocationResult:
        """Re-invoke one task until it returns a terminal result.

        ``on_continue`` receives the 1-based iteration and the continue
        result after it has been persisted. Between parent invocations the
        ready children of ``task_id`` are run, so a controller waiting on
        its children can settle. With ``honor_delay`` the dispatcher sleeps
        for the requested wait between invocations.
        """

        limit = max_iterations or self.max_iterations
        with self._signal_handlers():
            for iteration in range(1, limit + 1):
                invocation = self.invoke(task_id)
                if invocation.status != ResultStatus.CONTINUE:
                    return invocation
                if on_continue is not None:
                    on_continue(iteration, invocation)
                if self._stop_requested:
                    return invocation
                ran_children = self._run_ready_children(task_id, limit)
                if self._stop_requested:
                    return invocation
                result = invocation.result
                if honor_delay and isinstance(result, ContinueResult) and result.wait_seconds:
                    self._sleep_with_stop(result.wait_seconds)
                elif not ran_children and self.repository.has_unfinished_children(
                    parent_id=task_id,
                ):
                    self._sleep_with_stop(self.poll_interval_seconds)
        raise IterationLimitError(task_id, limit)

    def request_stop(self) -> None:
        self._stop_requested = True

    def _run_ready_children(self, parent_id: str, limit: int) -> int:
        invoked = 0
        while invoked < limit and not self._stop_requested:
            child = self.repository.next_ready_task(parent_id=parent_id)
            if child is None:
                break
            try:
                self.invoke(child.task_id)
            except TaskNotRunnableError:
                logger.info("Child task %s was claimed elsewhere", child.task_id)
                break
            invoked += 1
        return invoked

    def _recover_stale_tasks(self) -> None:
        if self.stale_running_seconds <= 0:
            return
        recovered = self.repository.recover_stale_running_tasks(
            stale_after=timedelta(seconds=self.stale_running_seconds),
        )
        for task_id in recovered:
            logger.warning("Recovered stale running task %s", task_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        remaining = seconds
        while not self._stop_requested and remaining > 0:
            step = min(0.1, remaining)
            self._sleep(step)
            remaining -= step

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning(
                "Received %s; stopping after the current invocation",
                signal.Signals(signum).name,
            )
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
