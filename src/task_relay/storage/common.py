"""Engine, timestamp and JSON column helpers shared by the task and entry stores."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

JsonObject = dict[str, Any]

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Stored timestamps are naive UTC so SQLite compares them as text."""

    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def to_utc_aware_datetime(value: datetime) -> datetime:
    """Inverse of ``to_db_datetime`` for values read back from a row."""

    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def dump_json(payload: JsonObject | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def load_json_object(raw: str | None) -> JsonObject | None:
    """Parse a JSON column that must hold an object (task input, output, error)."""

    if raw is None:
        return None
    value = json.loads(raw)
    if isinstance(value, dict):
        return value
    raise TypeError(f"Column holds JSON {type(value).__name__}, expected an object")


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """One engine per store; connections are not pooled between calls."""

    timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": max(1.0, timeout_ms / 1000)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*_SQLITE_PRAGMAS, f"PRAGMA busy_timeout = {timeout_ms}"):
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine
