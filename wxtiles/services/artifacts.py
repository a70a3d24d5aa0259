from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

EXTENSIONS = {"raster": "tif", "vector": "mbtiles"}
FORMAT_BY_EXTENSION = {ext: fmt for fmt, ext in EXTENSIONS.items()}
TILE_EXTENSIONS = {"png": "raster", "json": "raster", "pbf": "vector"}

ARTIFACT_RE = re.compile(
    r"^(?P<model>[a-z0-9]+)_"
    r"(?P<run>\d{4}-\d{2}-\d{2}T\d{2}:00:00Z)_"
    r"(?P<layer>[a-z0-9][a-z0-9_]*)_"
    r"(?P<hour>\d{2,3})\."
    r"(?P<ext>tif|mbtiles)$"
)


@dataclass(frozen=True, order=True)
class ProcessedArtifact:
    model: str
    run: str
    layer: str
    hour: str
    format: str = "raster"

    def __post_init__(self) -> None:
        if self.format not in EXTENSIONS:
            raise ValueError(f"Unknown artifact format: {self.format}")

    @property
    def extension(self) -> str:
        return EXTENSIONS[self.format]

    @property
    def file_name(self) -> str:
        return f"{self.model}_{self.run}_{self.layer}_{self.hour}.{self.extension}"

    def path_in(self, root: Path) -> Path:
        return root / self.file_name

    @classmethod
    def parse(cls, file_name: str) -> ProcessedArtifact | None:
        match = ARTIFACT_RE.match(file_name)
        if match is None:
            return None
        return cls(
            model=match.group("model"),
            run=match.group("run"),
            layer=match.group("layer"),
            hour=match.group("hour"),
            format=FORMAT_BY_EXTENSION[match.group("ext")],
        )


def list_artifacts(root: Path, *, model: str | None = None) -> list[tuple[ProcessedArtifact, Path]]:
    if not root.is_dir():
        return []
    found: list[tuple[ProcessedArtifact, Path]] = []
    for entry in root.iterdir():
        if not entry.is_file():
            continue
        artifact = ProcessedArtifact.parse(entry.name)
        if artifact is None:
            continue
        if model is not None and artifact.model != model:
            continue
        found.append((artifact, entry))
    found.sort(key=lambda item: item[0])
    return found
