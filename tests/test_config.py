from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_relay.config import BulkSettings, HealthGateSettings, RunnerSettings, Settings

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TASK_RELAY_DB_PATH",
        "TASK_RELAY_MODEL_IDS",
        "TASK_RELAY_ELASTICSEARCH_URL",
        "TASK_RELAY_HEALTH_MIN_STATUS",
        "TASK_RELAY_BULK_BATCH_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".task_relay.db")
    assert settings.imports.model_ids == ()
    assert settings.health.elasticsearch_url is None
    assert settings.health.min_health == "yellow"
    assert settings.health.poll_interval_seconds == 20
    assert settings.health.max_wait_seconds == 150
    assert settings.bulk.batch_size == 50
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_RELAY_MODEL_IDS", "category, article,category,,")
    monkeypatch.setenv("TASK_RELAY_HEALTH_MIN_STATUS", " GREEN ")
    monkeypatch.setenv("TASK_RELAY_ELASTICSEARCH_URL", "http://localhost:9200")
    monkeypatch.setenv("TASK_RELAY_DOWNLOAD_DIR", str(tmp_path / "downloads"))
    monkeypatch.setenv("TASK_RELAY_LOCALE", "de-DE")

    settings = Settings.from_env(db_path=tmp_path / "tasks.db")

    assert settings.db_path == tmp_path / "tasks.db"
    assert settings.imports.model_ids == ("category", "article")
    assert settings.imports.download_dir == tmp_path / "downloads"
    assert settings.health.min_health == "green"
    assert settings.health.elasticsearch_url == "http://localhost:9200"
    assert settings.tenant.locale == "de-DE"
    settings.validate()


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(health=HealthGateSettings(min_health="orange")), "HEALTH_MIN_STATUS"),
        (Settings(health=HealthGateSettings(poll_interval_seconds=0)), "POLL_INTERVAL"),
        (Settings(health=HealthGateSettings(elasticsearch_url="es:9200")), "ELASTICSEARCH_URL"),
        (Settings(bulk=BulkSettings(batch_size=0)), "BULK_BATCH_SIZE"),
        (
            Settings(runner=RunnerSettings(invocation_budget_seconds=60, timeout_margin_seconds=60)),
            "TIMEOUT_MARGIN_SECONDS",
        ),
    ],
)
def test_validate_rejects_inconsistent_values(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()


def test_from_env_rejects_non_numeric_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASK_RELAY_BULK_BATCH_SIZE", "fifty")

    with pytest.raises(ValueError):
        Settings.from_env()
