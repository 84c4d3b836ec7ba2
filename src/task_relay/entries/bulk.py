"""Bulk entry creation throttled by the backing store's health."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from task_relay.entries.writer import EntryWriter
from task_relay.health.gate import (
    HealthGate,
    HealthGateAbortedError,
    HealthGateOptions,
    HealthGateTimeoutError,
    HealthSource,
)
from task_relay.storage.common import utc_now
from task_relay.tasks.checkpoints import Checkpoint, CheckpointError, non_negative_int, optional_str
from task_relay.tasks.definitions import RunParams, TaskDefinition
from task_relay.tasks.response import TaskResult

BULK_DEFINITION_ID = "bulkEntryCreator"
DEFAULT_MODEL_ID = "cars"
DEFAULT_BATCH_SIZE = 50
DEFAULT_UNHEALTHY_RETRY_SECONDS = 30

MOCK_ENTRY_VALUES: dict[str, Any] = {
    "make": "Tesla",
    "model": "Model 3",
    "year": 2021,
    "fuel": "electric",
    "doors": 4,
    "features": ["autopilot", "heated seats", "glass roof"],
}


@dataclass(slots=True)
class BulkCreateInput(Checkpoint):
    total_amount: int
    created_amount: int = 0
    model_id: str = DEFAULT_MODEL_ID

    @classmethod
    def _parse(cls, payload: Mapping[str, Any]) -> BulkCreateInput:
        if "totalAmount" not in payload:
            raise CheckpointError('Missing "totalAmount" in the input')
        total_amount = non_negative_int(payload, "totalAmount")
        created_amount = non_negative_int(payload, "createdAmount")
        if created_amount > total_amount:
            raise CheckpointError("createdAmount cannot exceed totalAmount")
        return cls(
            total_amount=total_amount,
            created_amount=created_amount,
            model_id=optional_str(payload, "modelId") or DEFAULT_MODEL_ID,
        )

    def _serialize(self) -> dict[str, Any]:
        return {
            "modelId": self.model_id,
            "totalAmount": self.total_amount,
            "createdAmount": self.created_amount,
        }


WriterFactory = Callable[[RunParams[BulkCreateInput]], EntryWriter]


class BulkEntryCreator:
    """Creates ``totalAmount`` entries, checking the gate every ``batch_size`` units.

    Entry ids are derived from the task id and the unit counter, so a unit
    written by an invocation that stopped before its checkpoint was saved is
    overwritten rather than duplicated.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        writer_factory: WriterFactory,
        health_source: HealthSource,
        gate_options: HealthGateOptions | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        unhealthy_retry_seconds: int = DEFAULT_UNHEALTHY_RETRY_SECONDS,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.writer_factory = writer_factory
        self.health_source = health_source
        self.gate_options = gate_options or HealthGateOptions()
        self.batch_size = batch_size
        self.unhealthy_retry_seconds = unhealthy_retry_seconds
        self._now = now
        self._sleep = sleep

    def __call__(self, params: RunParams[BulkCreateInput]) -> TaskResult:
        checkpoint = params.input
        if params.is_aborted():
            return params.response.aborted()
        if params.is_close_to_timeout():
            return params.response.continue_(checkpoint)

        gate = HealthGate(
            self.health_source,
            self.gate_options,
            logger=params.logger,
            now=self._now,
            sleep=self._sleep,
        )
        writer = self.writer_factory(params)
        task_id = params.task.task_id

        for created in range(checkpoint.created_amount, checkpoint.total_amount):
            if params.is_aborted():
                return params.response.aborted()
            if params.is_close_to_timeout():
                params.logger.info("Close to timeout after %d records", created)
                return params.response.continue_(replace(checkpoint, created_amount=created))
            if created % self.batch_size == 0:
                try:
                    gate.wait(is_aborted=params.is_aborted)
                except HealthGateAbortedError:
                    return params.response.aborted()
                except HealthGateTimeoutError as exc:
                    params.logger.warning("%s Retrying in %ds.", exc, self.unhealthy_retry_seconds)
                    return params.response.continue_(
                        replace(checkpoint, created_amount=created),
                        seconds=self.unhealthy_retry_seconds,
                    )
            writer.create(f"{task_id}-{created}", dict(MOCK_ENTRY_VALUES))

        return params.response.done(
            f"Created {checkpoint.total_amount} records.",
            output={"createdAmount": checkpoint.total_amount, "modelId": checkpoint.model_id},
        )


def build_bulk_definition(  # noqa: PLR0913
    *,
    writer_factory: WriterFactory,
    health_source: HealthSource,
    gate_options: HealthGateOptions | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    unhealthy_retry_seconds: int = DEFAULT_UNHEALTHY_RETRY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> TaskDefinition:
    return TaskDefinition(
        definition_id=BULK_DEFINITION_ID,
        title="Bulk entry creator",
        run=BulkEntryCreator(
            writer_factory=writer_factory,
            health_source=health_source,
            gate_options=gate_options,
            batch_size=batch_size,
            unhealthy_retry_seconds=unhealthy_retry_seconds,
            sleep=sleep,
        ),
        checkpoint_type=BulkCreateInput,
        description="Creates mock entries in batches, waiting for a healthy backing store.",
    )
