"""Model registry helpers."""
from __future__ import annotations

from .config import ModelSpec


class ModelRegistry:
    def __init__(self, models: list[ModelSpec]):
        self._models = {model.key: model for model in models}

    def list(self) -> list[ModelSpec]:
        return list(self._models.values())

    def get(self, key: str) -> ModelSpec:
        try:
            return self._models[key]
        except KeyError:
            raise KeyError(f"Model not found: {key}") from None

    def choices(self, current: str | None = None) -> list[tuple[str, str]]:
        """Dropdown (label, key) pairs, keeping an unregistered current model selectable."""
        pairs = [(m.display_name, m.key) for m in self._models.values()]
        if current and current not in self._models:
            pairs.append((current, current))
        return pairs

    def resolve_path(self, model_id: str) -> str:
        """Local weights path for a registered model, else the id itself (hub repo or path)."""
        model = self._models.get(model_id)
        if model is not None and model.local_path:
            return model.local_path
        return model_id
