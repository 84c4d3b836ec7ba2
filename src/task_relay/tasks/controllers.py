"""Controllers for task, dispatch and health CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_relay.config import Settings
from task_relay.entries.bulk import build_bulk_definition
from task_relay.entries.writer import SQLiteEntryWriter
from task_relay.health.elasticsearch import ElasticsearchHealthSource
from task_relay.health.gate import (
    HealthGate,
    HealthSource,
    HealthSourceError,
    StaticHealthSource,
    options_from_settings,
)
from task_relay.imports.controller import build_controller_definition
from task_relay.imports.download import build_download_definition
from task_relay.imports.models import StaticModelRegistry
from task_relay.tasks.definitions import RunParams, TaskRegistry
from task_relay.tasks.dispatcher import TaskDispatcher
from task_relay.tasks.models import TaskCreate, TaskNotFoundError, TaskStatus
from task_relay.tasks.repository import TaskRepository
from task_relay.tasks.runner import TaskRunner
from task_relay.tasks.timer import InvocationTimer


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    definition_id: str
    input_json: str
    name: str | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    parent_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskAbortCommand:
    """CLI input for abort requests."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for the dispatcher loop."""

    db_path: Path | None
    once: bool
    max_invocations: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class DispatchTaskCommand:
    """CLI input for settling one task."""

    db_path: Path | None
    task_id: str
    max_iterations: int | None


@dataclass(slots=True)
class HealthCheckCommand:
    """CLI input for a one-off health check."""

    db_path: Path | None


class TaskCliController:
    """Coordinates task, dispatcher and health CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        registry = build_registry(settings)
        definition = registry.get(command.definition_id)
        if definition is None:
            raise ValueError(
                f"Unknown task definition: {command.definition_id}. "
                f"Available: {', '.join(registry.ids())}",
            )
        task_input = _parse_input(command.input_json)
        name = command.name or definition.title
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(definition_id=command.definition_id, name=name, input=task_input),
            )
        return [
            f"Task created: task_id={task.task_id} definition={task.definition_id} "
            f"status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                parent_id=command.parent_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} definition={task.definition_id} status={task.status.value} "
                f"iterations={task.iterations} parent={task.parent_id or '-'} "
                f"run_after={task.run_after.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
            children = repository.list_tasks(parent_id=command.task_id, limit=1_000)
        if details is None:
            raise TaskNotFoundError(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Name: {task.name}",
            f"Definition: {task.definition_id}",
            f"Status: {task.status.value}",
            f"Parent: {task.parent_id or '-'}",
            f"Tenant/locale: {task.tenant}/{task.locale}",
            f"Iterations: {task.iterations}",
            f"Abort requested: {'yes' if task.abort_requested else 'no'}",
            f"Message: {task.message or '-'}",
            f"Input: {_dump(task.input)}",
            f"Output: {_dump(task.output) if task.output is not None else '-'}",
            f"Error: {_dump(task.error) if task.error is not None else '-'}",
            f"Children: {len(children)}",
        ]
        for child in children:
            lines.append(f"  child {child.task_id} status={child.status.value} name={child.name}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def abort_task(self, command: TaskAbortCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.request_abort(task_id=command.task_id)
        if task.status.is_terminal:
            return [f"Task already finished: {task.task_id} status={task.status.value}"]
        return [f"Abort requested: {task.task_id}"]

    def run_dispatcher(self, command: DispatchRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            dispatcher = build_dispatcher(settings, repository)
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_invocations=command.max_invocations,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Dispatcher summary: "
            f"invocations={summary.invocations} done={summary.done} "
            f"continued={summary.continued} failed={summary.failed} "
            f"aborted={summary.aborted} idle_polls={summary.idle_polls}",
        ]

    def dispatch_task(self, command: DispatchTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        lines: list[str] = []
        with _repository(settings) as repository:
            dispatcher = build_dispatcher(settings, repository)
            invocation = dispatcher.run_until_settled(
                command.task_id,
                max_iterations=command.max_iterations,
                on_continue=lambda iteration, _: lines.append(f"  iteration {iteration}: continue"),
            )
        lines.append(f"Task {invocation.task_id} finished: status={invocation.status.value}")
        lines.append(f"Result: {_dump(invocation.to_payload())}")
        return lines

    def check_health(self, command: HealthCheckCommand) -> list[str]:
        settings = _settings(command.db_path)
        source = build_health_source(settings)
        gate = HealthGate(source, options_from_settings(settings.health))
        try:
            snapshot = source.fetch_health()
        except HealthSourceError as exc:
            return [f"Health: unavailable ({exc})", "Gate: closed"]
        reason = gate.evaluate(snapshot)
        return [
            f"Health: status={snapshot.status.name} cpu={snapshot.processor_percent:.1f}% "
            f"ram={snapshot.memory_percent:.1f}%",
            "Gate: open" if reason is None else f"Gate: closed ({reason})",
        ]


def build_health_source(settings: Settings) -> HealthSource:
    if settings.health.elasticsearch_url is None:
        return StaticHealthSource()
    return ElasticsearchHealthSource(
        settings.health.elasticsearch_url,
        timeout_seconds=settings.health.request_timeout_seconds,
    )


def build_registry(settings: Settings) -> TaskRegistry:
    """Register the built-in task definitions configured by ``settings``."""

    def _writer_factory(params: RunParams[Any]) -> SQLiteEntryWriter:
        return SQLiteEntryWriter(
            settings.db_path,
            model_id=params.input.model_id,
            task_id=params.task.task_id,
            tenant=settings.tenant.tenant,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )

    return TaskRegistry(
        (
            build_controller_definition(StaticModelRegistry.from_ids(settings.imports.model_ids)),
            build_download_definition(
                download_dir=settings.imports.download_dir,
                chunk_bytes=settings.imports.download_chunk_bytes,
                timeout_seconds=settings.imports.request_timeout_seconds,
            ),
            build_bulk_definition(
                writer_factory=_writer_factory,
                health_source=build_health_source(settings),
                gate_options=options_from_settings(settings.health),
                batch_size=settings.bulk.batch_size,
                unhealthy_retry_seconds=settings.bulk.unhealthy_retry_seconds,
            ),
        ),
    )


def build_dispatcher(settings: Settings, repository: TaskRepository) -> TaskDispatcher:
    runner = TaskRunner(
        repository=repository,
        registry=build_registry(settings),
        timer_factory=lambda: InvocationTimer(
            budget_seconds=settings.runner.invocation_budget_seconds,
            margin_seconds=settings.runner.timeout_margin_seconds,
        ),
    )
    return TaskDispatcher(
        repository=repository,
        runner=runner,
        poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
        stale_running_seconds=settings.dispatcher.stale_running_seconds,
        max_iterations=settings.dispatcher.max_iterations,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_input(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Task input is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("Task input must be a JSON object.")
    return parsed


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        tenant=settings.tenant.tenant,
        locale=settings.tenant.locale,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
