"""Entry persistence used by bulk creation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from sqlmodel import Session, col, func, select

from task_relay.storage.common import build_sqlite_engine, dump_json, utc_now
from task_relay.storage.sqlmodel_models import DEFAULT_TENANT, EntryRecord


class EntryWriter(Protocol):
    def create(self, entry_id: str, values: dict[str, Any]) -> None: ...


class SQLiteEntryWriter:
    """Upserts entries by id, so rewriting an entry after a resume is harmless."""

    def __init__(
        self,
        db_path: Path,
        *,
        model_id: str,
        task_id: str,
        tenant: str = DEFAULT_TENANT,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.model_id = model_id
        self.task_id = task_id
        self.tenant = tenant
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def create(self, entry_id: str, values: dict[str, Any]) -> None:
        with Session(self.engine) as session:
            row = session.get(EntryRecord, entry_id)
            if row is None:
                row = EntryRecord(
                    entry_id=entry_id,
                    tenant=self.tenant,
                    task_id=self.task_id,
                    model_id=self.model_id,
                    values_json=dump_json(values) or "{}",
                    created_at=utc_now(),
                )
            else:
                row.values_json = dump_json(values) or "{}"
            session.add(row)
            session.commit()

    def count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count(col(EntryRecord.entry_id))).where(
                    EntryRecord.tenant == self.tenant,
                    EntryRecord.task_id == self.task_id,
                ),
            ).one()

    def close(self) -> None:
        self.engine.dispose()
