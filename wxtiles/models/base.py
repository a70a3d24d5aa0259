from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

ArtifactFormatName = Literal["raster", "vector"]


@dataclass(frozen=True)
class RegionSpec:
    id: str
    name: str
    bbox_wgs84: tuple[float, float, float, float]
    # (lon, lat) vertices; None means the bbox is the only limit.
    polygon: tuple[tuple[float, float], ...] | None = None


@dataclass(frozen=True)
class LayerSpec:
    id: str
    name: str
    fields: tuple[str, ...]
    derive: str
    units: str = ""
    palette: str | None = None
    format: ArtifactFormatName = "raster"
    clip_region: str | None = None

    @property
    def palette_name(self) -> str:
        return self.palette or self.id


@dataclass(frozen=True)
class PackageSpec:
    id: str
    layers: tuple[LayerSpec, ...]

    @property
    def layer_ids(self) -> list[str]:
        return [layer.id for layer in self.layers]


@dataclass(frozen=True)
class ModelSpec:
    id: str
    name: str
    packages: tuple[PackageSpec, ...]
    regions: dict[str, RegionSpec] = field(default_factory=dict)
    default_region: str | None = None

    @property
    def layers(self) -> list[LayerSpec]:
        return [layer for package in self.packages for layer in package.layers]

    def get_package(self, package_id: str) -> PackageSpec | None:
        for package in self.packages:
            if package.id == package_id:
                return package
        return None

    def get_layer(self, layer_id: str) -> LayerSpec | None:
        for layer in self.layers:
            if layer.id == layer_id:
                return layer
        return None

    def package_for_layer(self, layer_id: str) -> PackageSpec | None:
        for package in self.packages:
            if layer_id in package.layer_ids:
                return package
        return None

    def get_region(self, region_id: str | None) -> RegionSpec | None:
        if region_id is None:
            return None
        return self.regions.get(region_id)

    @property
    def bbox_wgs84(self) -> tuple[float, float, float, float] | None:
        region = self.get_region(self.default_region)
        return region.bbox_wgs84 if region is not None else None
