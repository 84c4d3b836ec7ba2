"""Health snapshots read from an Elasticsearch cluster's ``_cat`` APIs."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from task_relay.health.gate import HealthSnapshot, HealthSourceError, HealthStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2


class ElasticsearchHealthSource:
    """Reduce cluster health and per-node load to one snapshot.

    The snapshot carries the cluster status together with the highest CPU
    and RAM usage over all nodes; one busy node is enough to hold the gate.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.transport = transport

    def fetch_health(self) -> HealthSnapshot:
        with self._client() as client:
            health_rows = _get_rows(client, "/_cat/health", params={"format": "json"})
            node_rows = _get_rows(
                client,
                "/_cat/nodes",
                params={"format": "json", "h": "cpu,ram.percent"},
            )
        if not health_rows:
            raise HealthSourceError("Elasticsearch returned no cluster health rows.")

        status = min(_parse_status(row.get("status")) for row in health_rows)
        processor_percent = max((_parse_percent(row, "cpu") for row in node_rows), default=0.0)
        memory_percent = max(
            (_parse_percent(row, "ram.percent") for row in node_rows),
            default=0.0,
        )
        return HealthSnapshot(
            status=status,
            processor_percent=processor_percent,
            memory_percent=memory_percent,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout_seconds, connect=min(self.timeout_seconds, 5.0)),
            transport=self.transport or httpx.HTTPTransport(retries=self.max_retries),
            headers={"Accept": "application/json"},
        )


def _get_rows(
    client: httpx.Client,
    path: str,
    *,
    params: dict[str, str],
) -> list[dict[str, Any]]:
    try:
        response = client.get(path, params=params)
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPError as exc:
        logger.warning("Elasticsearch request %s failed: %s", path, exc)
        raise HealthSourceError(f"{path}: {exc}") from exc
    except ValueError as exc:
        raise HealthSourceError(f"{path}: response is not JSON") from exc
    if not isinstance(payload, list):
        raise HealthSourceError(f"{path}: expected a JSON array")
    return [row for row in payload if isinstance(row, dict)]


def _parse_status(raw: object) -> HealthStatus:
    if not isinstance(raw, str):
        raise HealthSourceError(f"Unexpected cluster status: {raw!r}")
    try:
        return HealthStatus.parse(raw)
    except ValueError as exc:
        raise HealthSourceError(str(exc)) from exc


def _parse_percent(row: dict[str, Any], key: str) -> float:
    raw = row.get(key)
    if raw is None or raw == "":
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise HealthSourceError(f"Unexpected {key} value: {raw!r}") from exc
