"""Controller task that downloads every file of an import through child tasks."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

from task_relay.imports.checkpoints import DOWNLOAD_STEP, ImportControllerInput
from task_relay.imports.models import ModelRegistry
from task_relay.tasks.coordinator import ChildTaskCoordinator, SubUnit
from task_relay.tasks.definitions import RunParams, TaskDefinition
from task_relay.tasks.models import TaskView
from task_relay.tasks.response import ErrorPayload

CONTROLLER_DEFINITION_ID = "importFromUrlController"
DOWNLOAD_DEFINITION_ID = "importFromUrlDownload"


class ImportFromUrlController(ChildTaskCoordinator[ImportControllerInput]):
    """Validates the import, fans out one download per known file and waits for them."""

    child_definition_id = DOWNLOAD_DEFINITION_ID

    def __init__(self, model_registry: ModelRegistry) -> None:
        self.model_registry = model_registry

    def sub_units(self, checkpoint: ImportControllerInput) -> Sequence[SubUnit]:
        return [
            SubUnit(key=item.key, kind=item.type, dispatchable=item.file_type is not None)
            for item in checkpoint.files
        ]

    def validate(self, params: RunParams[ImportControllerInput]) -> ErrorPayload | None:
        checkpoint = params.input
        data = {"input": params.task.input}
        if not checkpoint.model_id:
            return ErrorPayload(
                code="MISSING_MODEL_ID",
                message='Missing "modelId" in the input.',
                data=data,
            )
        if not checkpoint.files:
            return ErrorPayload(
                code="NO_FILES_FOUND",
                message="No files found in the provided data.",
                data=data,
            )
        if self.model_registry.get_model(checkpoint.model_id) is None:
            return ErrorPayload(
                code="MODEL_NOT_FOUND",
                message=f'Model "{checkpoint.model_id}" not found.',
                data=data,
            )
        duplicates = sorted(
            key for key, count in Counter(item.key for item in checkpoint.files).items() if count > 1
        )
        if duplicates:
            return ErrorPayload(
                code="DUPLICATE_FILE_KEY",
                message=f"Files must have unique keys: {', '.join(duplicates)}.",
                data=data,
            )
        return None

    def is_dispatched(self, checkpoint: ImportControllerInput) -> bool:
        return checkpoint.is_triggered(DOWNLOAD_STEP)

    def mark_dispatched(self, checkpoint: ImportControllerInput) -> ImportControllerInput:
        return checkpoint.with_triggered(DOWNLOAD_STEP)

    def child_input(self, checkpoint: ImportControllerInput, unit: SubUnit) -> dict[str, Any]:
        item = next(item for item in checkpoint.files if item.key == unit.key)
        return {"modelId": checkpoint.model_id, "file": item.to_payload(), "downloadedBytes": 0}

    def child_key(self, child: TaskView) -> str | None:
        item = child.input.get("file")
        if isinstance(item, dict) and isinstance(item.get("key"), str):
            return item["key"]
        return None

    def child_name(self, params: RunParams[ImportControllerInput], unit: SubUnit) -> str:
        return f"Import from URL - download {unit.key}"


def build_controller_definition(model_registry: ModelRegistry) -> TaskDefinition:
    return TaskDefinition(
        definition_id=CONTROLLER_DEFINITION_ID,
        title="Import from URL Controller",
        run=ImportFromUrlController(model_registry),
        checkpoint_type=ImportControllerInput,
        description="Validates an import and downloads each of its files in a child task.",
    )
