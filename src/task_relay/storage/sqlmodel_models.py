"""SQLModel ORM tables for task storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel

DEFAULT_TENANT = "root"
DEFAULT_LOCALE = "en-US"


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "tenant", "status", "run_after"),
        Index("idx_tasks_parent", "tenant", "parent_id"),
    )

    task_id: str = Field(primary_key=True)
    tenant: str = Field(default=DEFAULT_TENANT, index=True)
    locale: str = Field(default=DEFAULT_LOCALE)
    definition_id: str = Field(index=True)
    name: str
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    status: str = Field(index=True)
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    message: str | None = Field(default=None, sa_column=Column(Text))
    error_json: str | None = Field(default=None, sa_column=Column(Text))
    iterations: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    abort_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant: str = Field(default=DEFAULT_TENANT, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EntryRecord(SQLModel, table=True):
    __tablename__ = "entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_entries_task", "tenant", "task_id"),)

    entry_id: str = Field(primary_key=True)
    tenant: str = Field(default=DEFAULT_TENANT, index=True)
    task_id: str
    model_id: str = Field(index=True)
    values_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
