from __future__ import annotations

from .arome import AROME_MODEL
from .base import ModelSpec

MODEL_REGISTRY: dict[str, ModelSpec] = {
    AROME_MODEL.id: AROME_MODEL,
}


def get_model(model_id: str) -> ModelSpec:
    normalized = model_id.strip().lower()
    if normalized not in MODEL_REGISTRY:
        raise KeyError(f"Unknown model: {model_id}")
    return MODEL_REGISTRY[normalized]
