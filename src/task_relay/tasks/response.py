"""Outcomes of one task invocation and the builder handed to work functions.

A work function returns exactly one of four results:

- ``DoneResult``: terminal success, carries ``message`` and ``output``.
- ``ContinueResult``: non-terminal, ``input`` becomes the next checkpoint.
- ``ErrorResult``: terminal failure with a normalized ``{code, message, data}``.
- ``AbortedResult``: terminal, an external abort request was observed.

``InvocationResult`` wraps one of them together with the task identity and is
what crosses the boundary back to the dispatcher.
"""

from __future__ import annotations

import traceback
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from task_relay.storage.common import utc_now
from task_relay.tasks.checkpoints import Checkpoint

# 355 days expressed in seconds.
MAX_WAITING_TIME = 30_672_000

_RESERVED_ERROR_ATTRIBUTES = frozenset({"code", "message", "data", "args"})


class ResultStatus(str, Enum):
    """Wire status of an invocation result."""

    DONE = "done"
    CONTINUE = "continue"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Normalized error shape shared by validation and unexpected failures."""

    code: str
    message: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


@dataclass(frozen=True, slots=True)
class DoneResult:
    message: str | None = None
    output: dict[str, Any] = field(default_factory=dict)

    status = ResultStatus.DONE


@dataclass(frozen=True, slots=True)
class ContinueResult:
    input: dict[str, Any]
    wait_seconds: float | None = None

    status = ResultStatus.CONTINUE


@dataclass(frozen=True, slots=True)
class ErrorResult:
    error: ErrorPayload

    status = ResultStatus.ERROR


@dataclass(frozen=True, slots=True)
class AbortedResult:
    status = ResultStatus.ABORTED


TaskResult = DoneResult | ContinueResult | ErrorResult | AbortedResult


class TaskError(Exception):
    """Business failure raised from a work function with an explicit error code."""

    def __init__(self, code: str, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def get_error_properties(error: BaseException) -> ErrorPayload:
    """Extract name, message, trace and custom fields of an exception."""

    if isinstance(error, TaskError):
        return ErrorPayload(
            code=error.code,
            message=error.message,
            data=dict(error.data) if error.data is not None else None,
        )

    data: dict[str, Any] = {
        "name": type(error).__name__,
        "stack": "".join(traceback.format_exception(error)),
    }
    for key, value in getattr(error, "__dict__", {}).items():
        if key.startswith("_") or key in _RESERVED_ERROR_ATTRIBUTES:
            continue
        data[key] = _to_jsonable(value)
    extra = getattr(error, "data", None)
    if isinstance(extra, Mapping):
        data.update({str(key): _to_jsonable(value) for key, value in extra.items()})

    code = getattr(error, "code", None)
    return ErrorPayload(
        code=str(code) if code else type(error).__name__,
        message=str(error) or type(error).__name__,
        data=data,
    )


def normalize_wait_seconds(
    *,
    seconds: float | None = None,
    until: datetime | None = None,
    now: datetime | None = None,
) -> float | None:
    """Reduce a relative delay or absolute resume time to one capped wait.

    ``seconds`` wins when both are given. ``None`` means the dispatcher uses
    its default re-poll cadence; that is also the case for waits below one
    second.
    """

    if seconds is not None:
        wait = float(seconds)
    elif until is not None:
        wait = (until - (now or utc_now())).total_seconds()
    else:
        return None
    if wait < 1:
        return None
    return min(wait, float(MAX_WAITING_TIME))


class TaskResponse:
    """Builds the four outcome variants for a work function."""

    def __init__(self, *, now: Callable[[], datetime] = utc_now) -> None:
        self._now = now

    def done(
        self,
        message: str | None = None,
        output: Mapping[str, Any] | None = None,
    ) -> DoneResult:
        return DoneResult(message=message, output=dict(output) if output is not None else {})

    def continue_(
        self,
        input: Checkpoint | Mapping[str, Any],  # noqa: A002
        *,
        seconds: float | None = None,
        until: datetime | None = None,
    ) -> ContinueResult:
        payload = input.to_payload() if isinstance(input, Checkpoint) else dict(input)
        wait = normalize_wait_seconds(seconds=seconds, until=until, now=self._now())
        return ContinueResult(input=payload, wait_seconds=wait)

    def error(self, error: ErrorPayload | Mapping[str, Any] | BaseException) -> ErrorResult:
        if isinstance(error, BaseException):
            return ErrorResult(error=get_error_properties(error))
        if isinstance(error, ErrorPayload):
            return ErrorResult(error=error)
        data = error.get("data")
        return ErrorResult(
            error=ErrorPayload(
                code=str(error.get("code") or "UNKNOWN_ERROR"),
                message=str(error.get("message") or ""),
                data=dict(data) if isinstance(data, Mapping) else None,
            ),
        )

    def aborted(self) -> AbortedResult:
        return AbortedResult()


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """One invocation outcome addressed to the dispatcher."""

    task_id: str
    definition_id: str
    tenant: str
    locale: str
    result: TaskResult

    @property
    def status(self) -> ResultStatus:
        return self.result.status

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the dispatcher boundary schema."""

        payload: dict[str, Any] = {
            "status": self.result.status.value,
            "tenant": self.tenant,
            "locale": self.locale,
            "webinyTaskId": self.task_id,
            "webinyTaskDefinitionId": self.definition_id,
        }
        result = self.result
        if isinstance(result, DoneResult):
            payload["message"] = result.message
            payload["output"] = result.output
        elif isinstance(result, ContinueResult):
            payload["input"] = result.input
            payload["delay"] = result.wait_seconds if result.wait_seconds is not None else -1
        elif isinstance(result, ErrorResult):
            payload["error"] = result.error.to_dict()
        return payload


def _to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, Mapping):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_to_jsonable(item) for item in value]
    return repr(value)
