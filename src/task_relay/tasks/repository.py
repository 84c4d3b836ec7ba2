"""Persistent task repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from task_relay.storage.alembic_runner import upgrade_head
from task_relay.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_relay.storage.sqlmodel_models import (
    DEFAULT_LOCALE,
    DEFAULT_TENANT,
    TaskEventRecord,
    TaskRecord,
)
from task_relay.tasks.models import (
    TERMINAL_STATUSES,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskNotFoundError,
    TaskStateError,
    TaskStatus,
    TaskUpdate,
    TaskView,
)
from task_relay.tasks.response import (
    AbortedResult,
    ContinueResult,
    DoneResult,
    ErrorResult,
    TaskResult,
)

DEFAULT_LIST_LIMIT = 50


class TaskRepository:
    """Task persistence facade scoped to one tenant."""

    def __init__(
        self,
        db_path: Path,
        *,
        tenant: str = DEFAULT_TENANT,
        locale: str = DEFAULT_LOCALE,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.tenant = tenant
        self.locale = locale
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task; children inherit the parent's locale."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            locale = self.locale
            if payload.parent_id is not None:
                parent = self._get_row(session=session, task_id=payload.parent_id)
                locale = parent.locale
            row = TaskRecord(
                task_id=task_id,
                tenant=self.tenant,
                locale=locale,
                definition_id=payload.definition_id,
                name=payload.name,
                parent_id=payload.parent_id,
                status=TaskStatus.PENDING.value,
                input_json=dump_json(payload.input) or "{}",
                iterations=0,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "definition_id": payload.definition_id,
                    "parent_id": payload.parent_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        """Return one task or ``None``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRecord).where(
                    TaskRecord.task_id == task_id,
                    TaskRecord.tenant == self.tenant,
                ),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        parent_id: str | None = None,
        definition_id: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[TaskView]:
        """List tasks, optionally filtered by status, parent or definition."""

        with Session(self.engine) as session:
            statement = select(TaskRecord).where(TaskRecord.tenant == self.tenant)
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            if parent_id is not None:
                statement = statement.where(TaskRecord.parent_id == parent_id)
            if definition_id is not None:
                statement = statement.where(TaskRecord.definition_id == definition_id)
            statement = statement.order_by(
                col(TaskRecord.created_at).asc(),
                col(TaskRecord.task_id).asc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def next_ready_task(self, *, parent_id: str | None = None) -> TaskView | None:
        """Oldest pending task whose ``run_after`` has passed.

        With ``parent_id`` only that task's children are considered.
        """

        now = utc_now()
        statement = select(TaskRecord).where(
            TaskRecord.tenant == self.tenant,
            TaskRecord.status == TaskStatus.PENDING.value,
            TaskRecord.run_after <= to_db_datetime(now),
        )
        if parent_id is not None:
            statement = statement.where(TaskRecord.parent_id == parent_id)
        with Session(self.engine) as session:
            row = session.exec(
                statement.order_by(
                    col(TaskRecord.run_after).asc(),
                    col(TaskRecord.created_at).asc(),
                )
                .limit(1),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def has_unfinished_children(self, *, parent_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRecord.task_id)
                .where(
                    TaskRecord.tenant == self.tenant,
                    TaskRecord.parent_id == parent_id,
                    col(TaskRecord.status).not_in(
                        [status.value for status in TERMINAL_STATUSES],
                    ),
                )
                .limit(1),
            ).first()
        return row is not None

    def claim_task(self, *, task_id: str) -> TaskView | None:
        """Atomically move a pending task to running; ``None`` if not claimable."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, task_id=task_id)
            next_iteration = row.iterations + 1
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task_id,
                    col(TaskRecord.tenant) == self.tenant,
                    col(TaskRecord.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    iterations=next_iteration,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="invocation_started",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.RUNNING,
                details={"iteration": next_iteration},
            )
            session.commit()
            claimed = self._get_row(session=session, task_id=task_id)
            return _to_task_view(claimed)

    def apply_result(self, *, task_id: str, result: TaskResult) -> TaskView:
        """Persist one invocation outcome of a running task."""

        now = utc_now()
        values: dict[str, Any] = {"updated_at": to_db_datetime(now)}
        details: dict[str, object] = {}
        if isinstance(result, DoneResult):
            status_to = TaskStatus.SUCCESS
            values.update(
                output_json=dump_json(result.output),
                message=result.message,
                finished_at=to_db_datetime(now),
            )
        elif isinstance(result, ContinueResult):
            status_to = TaskStatus.PENDING
            wait = result.wait_seconds or 0.0
            values.update(
                input_json=dump_json(result.input) or "{}",
                run_after=to_db_datetime(now + timedelta(seconds=wait)),
            )
            details["wait_seconds"] = result.wait_seconds
        elif isinstance(result, ErrorResult):
            status_to = TaskStatus.FAILURE
            values.update(
                error_json=dump_json(result.error.to_dict()),
                finished_at=to_db_datetime(now),
            )
            details["code"] = result.error.code
        elif isinstance(result, AbortedResult):
            status_to = TaskStatus.ABORTED
            values.update(finished_at=to_db_datetime(now))
        else:
            raise TypeError(f"Unsupported task result: {result!r}")
        values["status"] = status_to.value

        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task_id,
                    col(TaskRecord.tenant) == self.tenant,
                    col(TaskRecord.status) == TaskStatus.RUNNING.value,
                )
                .values(**values),
            )
            if update_result.rowcount != 1:
                session.rollback()
                row = self._get_row(session=session, task_id=task_id)
                raise TaskStateError(
                    f"Task {task_id} is not running (status={row.status}); "
                    f"cannot record {result.status.value} result.",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=f"result_{result.status.value}",
                status_from=TaskStatus.RUNNING,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def update_task(self, *, task_id: str, update: TaskUpdate) -> TaskView:
        """Apply a partial update; terminal status never changes."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous in TERMINAL_STATUSES:
                if update.status is not None and update.status != previous:
                    raise TaskStateError(
                        f"Task {task_id} is terminal (status={previous.value}); "
                        f"cannot move it to {update.status.value}.",
                    )
                if update.input is not None or update.output is not None:
                    raise TaskStateError(f"Task {task_id} is terminal; its data is read-only.")

            changed: list[str] = []
            if update.name is not None:
                row.name = update.name
                changed.append("name")
            if update.input is not None:
                row.input_json = dump_json(update.input) or "{}"
                changed.append("input")
            if update.output is not None:
                row.output_json = dump_json(update.output)
                changed.append("output")
            if update.message is not None:
                row.message = update.message
                changed.append("message")
            if update.abort_requested and row.abort_requested_at is None:
                if previous not in TERMINAL_STATUSES:
                    row.abort_requested_at = to_db_datetime(now)
                    changed.append("abort_requested")
            if update.status is not None and update.status != previous:
                row.status = update.status.value
                if update.status in TERMINAL_STATUSES:
                    row.finished_at = to_db_datetime(now)
                changed.append("status")

            if not changed:
                return _to_task_view(row)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="updated",
                status_from=previous,
                status_to=TaskStatus(row.status),
                details={"fields": changed},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def request_abort(self, *, task_id: str) -> TaskView:
        """Flag a task for cooperative abort at its next poll boundary."""

        return self.update_task(task_id=task_id, update=TaskUpdate(abort_requested=True))

    def is_abort_requested(self, *, task_id: str) -> bool:
        """Poll the abort flag of one task."""

        with Session(self.engine) as session:
            requested_at = session.exec(
                select(TaskRecord.abort_requested_at).where(
                    TaskRecord.task_id == task_id,
                    TaskRecord.tenant == self.tenant,
                ),
            ).one_or_none()
        return requested_at is not None

    def recover_stale_running_tasks(self, *, stale_after: timedelta) -> list[str]:
        """Return running tasks without updates for ``stale_after`` to pending."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord).where(
                    TaskRecord.tenant == self.tenant,
                    TaskRecord.status == TaskStatus.RUNNING.value,
                    TaskRecord.updated_at < cutoff,
                ),
            ).all()
            recovered: list[str] = []
            for row in rows:
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.task_id) == row.task_id,
                        col(TaskRecord.status) == TaskStatus.RUNNING.value,
                        col(TaskRecord.updated_at) < cutoff,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        run_after=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="stale_recovered",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.PENDING,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
                recovered.append(row.task_id)
            session.commit()
        return recovered

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(TaskRecord).where(
                    TaskRecord.task_id == task_id,
                    TaskRecord.tenant == self.tenant,
                ),
            ).one_or_none()
            if task is None:
                return None

            event_rows = session.exec(
                select(TaskEventRecord)
                .where(
                    TaskEventRecord.task_id == task_id,
                    TaskEventRecord.tenant == self.tenant,
                )
                .order_by(col(TaskEventRecord.created_at).asc(), col(TaskEventRecord.id).asc()),
            ).all()
            task_view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )

        return TaskDetails(task=task_view, events=events)

    def _get_row(self, *, session: Session, task_id: str) -> TaskRecord:
        row = session.exec(
            select(TaskRecord).where(
                TaskRecord.task_id == task_id,
                TaskRecord.tenant == self.tenant,
            ),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                tenant=self.tenant,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        tenant=row.tenant,
        locale=row.locale,
        definition_id=row.definition_id,
        name=row.name,
        parent_id=row.parent_id,
        status=TaskStatus(row.status),
        input=load_json_object(row.input_json) or {},
        output=load_json_object(row.output_json),
        message=row.message,
        error=load_json_object(row.error_json),
        iterations=row.iterations,
        run_after=to_utc_aware_datetime(row.run_after),
        abort_requested_at=_optional_aware(row.abort_requested_at),
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None
