"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from task_relay.tasks.definitions import TaskDefinition, TaskRegistry
from task_relay.tasks.dispatcher import TaskDispatcher
from task_relay.tasks.repository import TaskRepository
from task_relay.tasks.runner import TaskRunner
from task_relay.tasks.timer import InvocationTimer


class FakeClock:
    """Wall clock and sleeper that only move when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.start = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        self.current = self.start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return (self.current - self.start).total_seconds()

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class CountdownTimer:
    """Timer that reports close-to-timeout after ``checks_left`` checks."""

    def __init__(self, checks_left: int) -> None:
        self.checks_left = checks_left
        self.checks = 0

    def is_close_to_timeout(self) -> bool:
        self.checks += 1
        return self.checks > self.checks_left

    def remaining_seconds(self) -> float:
        return 0.0 if self.checks > self.checks_left else 60.0


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tasks.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def make_dispatcher(
    repository: TaskRepository,
) -> Callable[..., TaskDispatcher]:
    """Build a dispatcher over ``repository`` with the given definitions.

    ``timers`` is consumed one per invocation; without it every invocation
    gets a generous real timer.
    """

    def _factory(
        *definitions: TaskDefinition,
        timers: list[object] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> TaskDispatcher:
        pending_timers = list(timers or [])

        def _timer() -> InvocationTimer:
            if pending_timers:
                return pending_timers.pop(0)  # type: ignore[return-value]
            return InvocationTimer(budget_seconds=900.0)

        runner = TaskRunner(
            repository=repository,
            registry=TaskRegistry(definitions),
            timer_factory=_timer,
        )
        return TaskDispatcher(
            repository=repository,
            runner=runner,
            poll_interval_seconds=0.0,
            sleep=sleep or (lambda _: None),
        )

    return _factory
