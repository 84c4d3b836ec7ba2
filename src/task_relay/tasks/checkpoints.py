"""Versioned checkpoint records carried between invocations of one task."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Self

VERSION_KEY = "checkpointVersion"


class CheckpointError(ValueError):
    """Raised when a stored checkpoint cannot be parsed by its definition."""


@dataclass(slots=True)
class Checkpoint:
    """Base for per-definition checkpoint records.

    Subclasses implement ``_parse`` and ``_serialize``; the base class stamps
    and verifies ``VERSION`` so that a checkpoint written by a newer
    definition is never resumed by an older one. A payload without a version
    is a fresh task input and is parsed as the current version.
    """

    VERSION: ClassVar[int] = 1

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Self:
        if not isinstance(payload, Mapping):
            raise CheckpointError(f"Checkpoint must be an object, got {type(payload).__name__}")
        version = payload.get(VERSION_KEY, cls.VERSION)
        if version != cls.VERSION:
            raise CheckpointError(
                f"{cls.__name__} expects version {cls.VERSION}, got {version!r}",
            )
        try:
            return cls._parse(payload)
        except CheckpointError:
            raise
        except (KeyError, TypeError, ValueError) as error:
            raise CheckpointError(f"Invalid {cls.__name__}: {error}") from error

    def to_payload(self) -> dict[str, Any]:
        payload = self._serialize()
        payload[VERSION_KEY] = self.VERSION
        return payload

    @classmethod
    def _parse(cls, payload: Mapping[str, Any]) -> Self:
        raise NotImplementedError

    def _serialize(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(slots=True)
class RawCheckpoint(Checkpoint):
    """Untyped checkpoint for definitions that keep a free-form object."""

    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _parse(cls, payload: Mapping[str, Any]) -> RawCheckpoint:
        return cls(values={key: value for key, value in payload.items() if key != VERSION_KEY})

    def _serialize(self) -> dict[str, Any]:
        return dict(self.values)


def optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    """Read an optional non-empty string field."""

    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value.strip() or None


def non_negative_int(payload: Mapping[str, Any], key: str, default: int = 0) -> int:
    """Read a non-negative integer counter."""

    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{key} must be an integer")
    if value < 0:
        raise ValueError(f"{key} must be >= 0")
    return value
