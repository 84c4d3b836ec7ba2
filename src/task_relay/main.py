"""CLI entrypoint for task-relay."""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from task_relay import __version__
from task_relay.tasks.checkpoints import CheckpointError
from task_relay.tasks.controllers import (
    DispatchRunCommand,
    DispatchTaskCommand,
    HealthCheckCommand,
    TaskAbortCommand,
    TaskCliController,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
)
from task_relay.tasks.dispatcher import IterationLimitError
from task_relay.tasks.models import (
    TaskNotFoundError,
    TaskNotRunnableError,
    TaskStateError,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()


@click.group()
@click.version_option(version=__version__, prog_name="task-relay")
def task_relay() -> None:
    """Task continuation engine CLI."""

    logging.basicConfig(
        level=os.getenv("TASK_RELAY_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_relay.group()
def tasks() -> None:
    """Task record commands."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--definition", "definition_id", required=True, help="Task definition id.")
@click.option(
    "--input",
    "input_json",
    default="{}",
    show_default=True,
    help="Task input as a JSON object.",
)
@click.option("--name", default=None, help="Task name (defaults to the definition title).")
def tasks_create(
    db_path: Path | None,
    definition_id: str,
    input_json: str,
    name: str | None,
) -> None:
    """Create a pending task."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.create_task(
                TaskCreateCommand(
                    db_path=db_path,
                    definition_id=definition_id,
                    input_json=input_json,
                    name=name,
                ),
            ),
        )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--parent-id", default=None, help="Only children of this task.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Maximum rows.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    parent_id: str | None,
    limit: int,
) -> None:
    """List tasks in creation order."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    status=status,
                    parent_id=parent_id,
                    limit=limit,
                ),
            ),
        )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its children and event history."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.inspect_task(
                TaskInspectCommand(
                    db_path=db_path,
                    task_id=task_id,
                ),
            ),
        )


@tasks.command("abort")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_abort(db_path: Path | None, task_id: str) -> None:
    """Request a cooperative abort; it takes effect at the next poll boundary."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.abort_task(
                TaskAbortCommand(
                    db_path=db_path,
                    task_id=task_id,
                ),
            ),
        )


@task_relay.group()
def dispatch() -> None:
    """Local dispatcher commands."""


@dispatch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Invoke at most one ready task.")
@click.option(
    "--max-invocations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many invocations.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before exiting.",
)
def dispatch_run(
    db_path: Path | None,
    once: bool,
    max_invocations: int | None,
    max_idle_polls: int,
) -> None:
    """Invoke ready tasks until the queue is idle."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.run_dispatcher(
                DispatchRunCommand(
                    db_path=db_path,
                    once=once,
                    max_invocations=max_invocations,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@dispatch.command("task")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Give up after this many invocations.",
)
@click.argument("task_id")
def dispatch_task(db_path: Path | None, max_iterations: int | None, task_id: str) -> None:
    """Re-invoke one task until it reaches a terminal status."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.dispatch_task(
                DispatchTaskCommand(
                    db_path=db_path,
                    task_id=task_id,
                    max_iterations=max_iterations,
                ),
            ),
        )


@task_relay.group()
def health() -> None:
    """Backing store health commands."""


@health.command("check")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def health_check(db_path: Path | None) -> None:
    """Probe the configured health source once and evaluate the gate."""

    with _cli_errors():
        _emit_lines(TASK_CONTROLLER.check_health(HealthCheckCommand(db_path=db_path)))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (
        TaskNotFoundError,
        TaskNotRunnableError,
        TaskStateError,
        IterationLimitError,
        CheckpointError,
        ValueError,
    ) as exc:
        raise click.ClickException(str(exc)) from exc


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_relay()
