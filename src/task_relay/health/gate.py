"""Polling backoff that holds bulk work until a dependency reports healthy."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Protocol

from task_relay.config import HealthGateSettings
from task_relay.storage.common import utc_now


class HealthStatus(IntEnum):
    """Ordered cluster health levels."""

    RED = 0
    YELLOW = 1
    GREEN = 2

    @classmethod
    def parse(cls, raw: str) -> HealthStatus:
        try:
            return cls[raw.strip().upper()]
        except KeyError as error:
            raise ValueError(f"Unknown health status: {raw!r}") from error


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    status: HealthStatus
    processor_percent: float
    memory_percent: float


class HealthSourceError(RuntimeError):
    """Raised by a health source that could not produce a snapshot."""


class HealthSource(Protocol):
    def fetch_health(self) -> HealthSnapshot: ...


class StaticHealthSource:
    """Fixed snapshot, used when no cluster is configured."""

    def __init__(self, snapshot: HealthSnapshot | None = None) -> None:
        self.snapshot = snapshot or HealthSnapshot(
            status=HealthStatus.GREEN,
            processor_percent=0.0,
            memory_percent=0.0,
        )

    def fetch_health(self) -> HealthSnapshot:
        return self.snapshot


@dataclass(frozen=True, slots=True)
class HealthGateOptions:
    poll_interval_seconds: float = 20.0
    max_wait_seconds: float = 150.0
    min_acceptable_health: HealthStatus = HealthStatus.YELLOW
    max_processor_percent: float = 80.0
    max_memory_percent: float = 101.0


@dataclass(frozen=True, slots=True)
class UnhealthyReason:
    """Which check failed, with the observed value and its limit."""

    check: str
    observed: Any
    limit: Any

    def __str__(self) -> str:
        return f"{self.check}: observed={self.observed} limit={self.limit}"


@dataclass(frozen=True, slots=True)
class HealthWaitState:
    """Passed to ``on_unhealthy`` and ``on_timeout`` callbacks."""

    attempt: int
    started_at: datetime
    deadline: datetime
    poll_interval_seconds: float
    reason: UnhealthyReason


@dataclass(frozen=True, slots=True)
class HealthWaitResult:
    attempts: int
    waited_seconds: float


class HealthGateTimeoutError(RuntimeError):
    """The dependency stayed unhealthy past ``max_wait_seconds``."""

    def __init__(self, state: HealthWaitState) -> None:
        super().__init__(
            f"Dependency still unhealthy after {state.attempt} attempts ({state.reason}).",
        )
        self.state = state


class HealthGateAbortedError(RuntimeError):
    """An abort was observed at a poll boundary while waiting."""


HealthCallback = Callable[[HealthWaitState], None]


class HealthGate:
    """Admission control for bulk work against a dependency's live health.

    The gate is a heuristic, not a lock: two invocations may pass it at the
    same time. Sleeping is not interruptible; an abort is only noticed at
    the next poll boundary.
    """

    def __init__(
        self,
        source: HealthSource,
        options: HealthGateOptions | None = None,
        *,
        logger: logging.Logger | logging.LoggerAdapter[Any] | None = None,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.options = options or HealthGateOptions()
        self.logger = logger or logging.getLogger(__name__)
        self._now = now
        self._sleep = sleep

    def evaluate(self, snapshot: HealthSnapshot) -> UnhealthyReason | None:
        """Return why ``snapshot`` is unhealthy, or ``None`` if it passes."""

        options = self.options
        if snapshot.status < options.min_acceptable_health:
            return UnhealthyReason(
                check="status",
                observed=snapshot.status.name,
                limit=options.min_acceptable_health.name,
            )
        if snapshot.processor_percent > options.max_processor_percent:
            return UnhealthyReason(
                check="processor_percent",
                observed=snapshot.processor_percent,
                limit=options.max_processor_percent,
            )
        if snapshot.memory_percent > options.max_memory_percent:
            return UnhealthyReason(
                check="memory_percent",
                observed=snapshot.memory_percent,
                limit=options.max_memory_percent,
            )
        return None

    def wait(
        self,
        *,
        on_unhealthy: HealthCallback | None = None,
        on_timeout: HealthCallback | None = None,
        is_aborted: Callable[[], bool] | None = None,
    ) -> HealthWaitResult:
        """Block until healthy; raise ``HealthGateTimeoutError`` past the deadline."""

        options = self.options
        started_at = self._now()
        deadline = started_at + timedelta(seconds=options.max_wait_seconds)
        attempt = 0
        while True:
            if is_aborted is not None and is_aborted():
                raise HealthGateAbortedError("Abort requested while waiting for healthy dependency.")
            attempt += 1
            reason = self._check()
            elapsed = (self._now() - started_at).total_seconds()
            if reason is None:
                return HealthWaitResult(attempts=attempt, waited_seconds=elapsed)

            state = HealthWaitState(
                attempt=attempt,
                started_at=started_at,
                deadline=deadline,
                poll_interval_seconds=options.poll_interval_seconds,
                reason=reason,
            )
            if elapsed > options.max_wait_seconds:
                (on_timeout or self._log_timeout)(state)
                raise HealthGateTimeoutError(state)
            (on_unhealthy or self._log_unhealthy)(state)
            self._sleep(options.poll_interval_seconds)

    def _check(self) -> UnhealthyReason | None:
        try:
            snapshot = self.source.fetch_health()
        except HealthSourceError as error:
            return UnhealthyReason(check="unavailable", observed=str(error), limit="reachable")
        return self.evaluate(snapshot)

    def _log_unhealthy(self, state: HealthWaitState) -> None:
        self.logger.warning(
            "Dependency is unhealthy on run #%d (%s); retrying in %.1fs, deadline %s",
            state.attempt,
            state.reason,
            state.poll_interval_seconds,
            state.deadline.isoformat(),
        )

    def _log_timeout(self, state: HealthWaitState) -> None:
        self.logger.warning(
            "Dependency health check timed out on run #%d (%s); started %s",
            state.attempt,
            state.reason,
            state.started_at.isoformat(),
        )


def options_from_settings(settings: HealthGateSettings) -> HealthGateOptions:
    return HealthGateOptions(
        poll_interval_seconds=settings.poll_interval_seconds,
        max_wait_seconds=settings.max_wait_seconds,
        min_acceptable_health=HealthStatus.parse(settings.min_health),
        max_processor_percent=settings.max_processor_percent,
        max_memory_percent=settings.max_memory_percent,
    )
