"""Runtime configuration for the task continuation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

_HEALTH_LEVELS = ("red", "yellow", "green")


@dataclass(slots=True)
class TenantSettings:
    """Scoping fields stamped on every task record."""

    tenant: str = "root"
    locale: str = "en-US"


@dataclass(slots=True)
class RunnerSettings:
    """Per-invocation execution window."""

    invocation_budget_seconds: float = 900.0
    timeout_margin_seconds: float = 60.0


@dataclass(slots=True)
class DispatcherSettings:
    """Local dispatcher loop settings."""

    poll_interval_seconds: float = 2.0
    stale_running_seconds: int = 1_800
    max_iterations: int = 1_000


@dataclass(slots=True)
class HealthGateSettings:
    """Backing store health gate settings."""

    elasticsearch_url: str | None = None
    poll_interval_seconds: float = 20.0
    max_wait_seconds: float = 150.0
    min_health: str = "yellow"
    max_processor_percent: float = 80.0
    max_memory_percent: float = 101.0
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class BulkSettings:
    """Bulk entry creation settings."""

    batch_size: int = 50
    unhealthy_retry_seconds: int = 30


@dataclass(slots=True)
class ImportSettings:
    """Import-from-URL settings."""

    model_ids: tuple[str, ...] = ()
    download_dir: Path = Path(".task_relay_downloads")
    download_chunk_bytes: int = 1_048_576
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    tenant: TenantSettings = field(default_factory=TenantSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    health: HealthGateSettings = field(default_factory=HealthGateSettings)
    bulk: BulkSettings = field(default_factory=BulkSettings)
    imports: ImportSettings = field(default_factory=ImportSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_RELAY_DB_PATH", ".task_relay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASK_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("TASK_RELAY_LOG_LEVEL", "INFO").strip().upper(),
            tenant=TenantSettings(
                tenant=os.getenv("TASK_RELAY_TENANT", "root"),
                locale=os.getenv("TASK_RELAY_LOCALE", "en-US"),
            ),
            runner=RunnerSettings(
                invocation_budget_seconds=float(
                    os.getenv("TASK_RELAY_INVOCATION_BUDGET_SECONDS", "900"),
                ),
                timeout_margin_seconds=float(
                    os.getenv("TASK_RELAY_TIMEOUT_MARGIN_SECONDS", "60"),
                ),
            ),
            dispatcher=DispatcherSettings(
                poll_interval_seconds=float(
                    os.getenv("TASK_RELAY_DISPATCHER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_running_seconds=int(
                    os.getenv("TASK_RELAY_DISPATCHER_STALE_RUNNING_SECONDS", "1800"),
                ),
                max_iterations=int(os.getenv("TASK_RELAY_DISPATCHER_MAX_ITERATIONS", "1000")),
            ),
            health=HealthGateSettings(
                elasticsearch_url=os.getenv("TASK_RELAY_ELASTICSEARCH_URL", "").strip() or None,
                poll_interval_seconds=float(
                    os.getenv("TASK_RELAY_HEALTH_POLL_INTERVAL_SECONDS", "20"),
                ),
                max_wait_seconds=float(os.getenv("TASK_RELAY_HEALTH_MAX_WAIT_SECONDS", "150")),
                min_health=os.getenv("TASK_RELAY_HEALTH_MIN_STATUS", "yellow").strip().lower(),
                max_processor_percent=float(
                    os.getenv("TASK_RELAY_HEALTH_MAX_PROCESSOR_PERCENT", "80"),
                ),
                max_memory_percent=float(
                    os.getenv("TASK_RELAY_HEALTH_MAX_MEMORY_PERCENT", "101"),
                ),
                request_timeout_seconds=float(
                    os.getenv("TASK_RELAY_HEALTH_REQUEST_TIMEOUT_SECONDS", "10"),
                ),
            ),
            bulk=BulkSettings(
                batch_size=int(os.getenv("TASK_RELAY_BULK_BATCH_SIZE", "50")),
                unhealthy_retry_seconds=int(
                    os.getenv("TASK_RELAY_BULK_UNHEALTHY_RETRY_SECONDS", "30"),
                ),
            ),
            imports=ImportSettings(
                model_ids=_split_csv(os.getenv("TASK_RELAY_MODEL_IDS", "")),
                download_dir=Path(
                    os.getenv("TASK_RELAY_DOWNLOAD_DIR", ".task_relay_downloads"),
                ),
                download_chunk_bytes=int(
                    os.getenv("TASK_RELAY_DOWNLOAD_CHUNK_BYTES", "1048576"),
                ),
                request_timeout_seconds=float(
                    os.getenv("TASK_RELAY_DOWNLOAD_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        if self.runner.invocation_budget_seconds <= 0:
            raise ValueError("TASK_RELAY_INVOCATION_BUDGET_SECONDS must be > 0.")
        if not 0 <= self.runner.timeout_margin_seconds < self.runner.invocation_budget_seconds:
            raise ValueError(
                "TASK_RELAY_TIMEOUT_MARGIN_SECONDS must be >= 0 and smaller than "
                "the invocation budget.",
            )
        if self.dispatcher.max_iterations <= 0:
            raise ValueError("TASK_RELAY_DISPATCHER_MAX_ITERATIONS must be > 0.")
        if self.health.min_health not in _HEALTH_LEVELS:
            raise ValueError(
                f"Invalid TASK_RELAY_HEALTH_MIN_STATUS: {self.health.min_health!r}. "
                f"Expected one of {', '.join(_HEALTH_LEVELS)}.",
            )
        if self.health.poll_interval_seconds <= 0:
            raise ValueError("TASK_RELAY_HEALTH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.health.max_wait_seconds < 0:
            raise ValueError("TASK_RELAY_HEALTH_MAX_WAIT_SECONDS must be >= 0.")
        if self.health.elasticsearch_url is not None:
            _validate_http_url(self.health.elasticsearch_url)
        if self.bulk.batch_size <= 0:
            raise ValueError("TASK_RELAY_BULK_BATCH_SIZE must be a positive integer.")
        if self.imports.download_chunk_bytes <= 0:
            raise ValueError("TASK_RELAY_DOWNLOAD_CHUNK_BYTES must be a positive integer.")


def _split_csv(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)


def _validate_http_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid TASK_RELAY_ELASTICSEARCH_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
