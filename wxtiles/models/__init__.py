from .base import LayerSpec, ModelSpec, PackageSpec, RegionSpec
from .registry import MODEL_REGISTRY, get_model

__all__ = [
    "LayerSpec",
    "ModelSpec",
    "PackageSpec",
    "RegionSpec",
    "MODEL_REGISTRY",
    "get_model",
]
