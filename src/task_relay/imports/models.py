"""Content models an import may target."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class CmsModel:
    model_id: str
    name: str


class ModelRegistry(Protocol):
    def get_model(self, model_id: str) -> CmsModel | None: ...


class StaticModelRegistry:
    """Registry over a fixed set of models, configured from settings."""

    def __init__(self, models: Iterable[CmsModel] = ()) -> None:
        self._models = {model.model_id: model for model in models}

    @classmethod
    def from_ids(cls, model_ids: Iterable[str]) -> StaticModelRegistry:
        return cls(CmsModel(model_id=model_id, name=model_id) for model_id in model_ids)

    def get_model(self, model_id: str) -> CmsModel | None:
        return self._models.get(model_id)
