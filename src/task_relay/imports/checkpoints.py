"""Checkpoint records of the import-from-URL controller and its download children."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from task_relay.tasks.checkpoints import Checkpoint, CheckpointError, non_negative_int, optional_str

DOWNLOAD_STEP = "download"


class ImportFileType(str, Enum):
    """File types the controller knows how to dispatch."""

    ENTRIES = "entries"
    ASSETS = "assets"


@dataclass(frozen=True, slots=True)
class ImportFile:
    """One file of an import, as validated by the upload step."""

    key: str
    type: str
    get: str | None = None
    head: str | None = None
    size: int | None = None
    checksum: str | None = None
    checked: bool | None = None
    error: Any = None

    @property
    def file_type(self) -> ImportFileType | None:
        try:
            return ImportFileType(self.type)
        except ValueError:
            return None

    @classmethod
    def from_payload(cls, payload: object) -> ImportFile:
        if not isinstance(payload, Mapping):
            raise CheckpointError("Each file must be an object")
        key = optional_str(payload, "key")
        if key is None:
            raise CheckpointError('File is missing "key"')
        size = payload.get("size")
        if size is not None and (isinstance(size, bool) or not isinstance(size, int)):
            raise CheckpointError(f'File "{key}" has a non-integer size')
        checked = payload.get("checked")
        return cls(
            key=key,
            type=str(payload.get("type") or ""),
            get=optional_str(payload, "get"),
            head=optional_str(payload, "head"),
            size=size,
            checksum=optional_str(payload, "checksum"),
            checked=bool(checked) if checked is not None else None,
            error=payload.get("error"),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"key": self.key, "type": self.type}
        for name in ("get", "head", "size", "checksum", "checked", "error"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


@dataclass(slots=True)
class ImportControllerInput(Checkpoint):
    """Controller checkpoint: the model, its files and which steps were triggered."""

    model_id: str | None = None
    files: list[ImportFile] = field(default_factory=list)
    steps: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def _parse(cls, payload: Mapping[str, Any]) -> ImportControllerInput:
        raw_files = payload.get("files")
        if raw_files is None:
            raw_files = []
        if not isinstance(raw_files, list):
            raise CheckpointError('"files" must be a list')
        raw_steps = payload.get("steps") or {}
        if not isinstance(raw_steps, Mapping):
            raise CheckpointError('"steps" must be an object')
        return cls(
            model_id=optional_str(payload, "modelId"),
            files=[ImportFile.from_payload(item) for item in raw_files],
            steps={
                str(name): dict(step)
                for name, step in raw_steps.items()
                if isinstance(step, Mapping)
            },
        )

    def _serialize(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"files": [item.to_payload() for item in self.files]}
        if self.model_id is not None:
            payload["modelId"] = self.model_id
        if self.steps:
            payload["steps"] = {name: dict(step) for name, step in self.steps.items()}
        return payload

    def is_triggered(self, step: str) -> bool:
        return bool(self.steps.get(step, {}).get("triggered"))

    def with_triggered(self, step: str) -> ImportControllerInput:
        steps = {name: dict(values) for name, values in self.steps.items()}
        steps.setdefault(step, {})["triggered"] = True
        return replace(self, steps=steps)


@dataclass(slots=True)
class ImportDownloadInput(Checkpoint):
    """Download child checkpoint: one file and the bytes already on disk."""

    file: ImportFile
    model_id: str | None = None
    downloaded_bytes: int = 0

    @classmethod
    def _parse(cls, payload: Mapping[str, Any]) -> ImportDownloadInput:
        if "file" not in payload:
            raise CheckpointError('Missing "file" in the input')
        return cls(
            file=ImportFile.from_payload(payload["file"]),
            model_id=optional_str(payload, "modelId"),
            downloaded_bytes=non_negative_int(payload, "downloadedBytes"),
        )

    def _serialize(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "file": self.file.to_payload(),
            "downloadedBytes": self.downloaded_bytes,
        }
        if self.model_id is not None:
            payload["modelId"] = self.model_id
        return payload
