from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

from wxtiles.config import Settings
from wxtiles.models import LayerSpec, ModelSpec, PackageSpec
from wxtiles.services.artifacts import ProcessedArtifact
from wxtiles.services.discovery import RunOracle
from wxtiles.services.fields import PointsByField, get_derivation
from wxtiles.services.geometry import GeoPoint, filter_points_by_polygon
from wxtiles.services.grib_decode import GridDecoder
from wxtiles.services.palette import PaletteRegistry
from wxtiles.services.render_engine import RenderEngine, RenderError, to_feature_collection
from wxtiles.services.storage import is_up_to_date, write_marker
from wxtiles.services.upstream import UpstreamClient, UpstreamNotReadyError, is_upstream_not_ready_error

logger = logging.getLogger(__name__)

RATE_LIMIT_SECONDS = 300

STATUS_UNAVAILABLE = "unavailable"
STATUS_UP_TO_DATE = "up_to_date"
STATUS_INCOMPLETE = "incomplete"
STATUS_ROLLOUT_PENDING = "rollout_pending"
STATUS_ROLLED_OUT = "rolled_out"


class Rollout(Protocol):
    def rollout(self, package: PackageSpec, run: str, artifacts: Sequence[ProcessedArtifact]) -> bool: ...


@dataclass
class HourOutcome:
    hour: str
    artifacts: list[ProcessedArtifact] = field(default_factory=list)
    failed_layers: list[str] = field(default_factory=list)
    skipped: bool = False


@dataclass
class PackageOutcome:
    package: str
    status: str
    run: str | None = None
    artifacts: int = 0
    expected: int = 0


class RunPipeline:
    """Fetch, derive and render every hour of a package run, then roll it out."""

    def __init__(
        self,
        settings: Settings,
        model: ModelSpec,
        *,
        client: UpstreamClient,
        decoder: GridDecoder,
        engine: RenderEngine,
        rollout: Rollout,
        palettes: PaletteRegistry | None = None,
        oracle: RunOracle | None = None,
    ):
        self.settings = settings
        self.model = model
        self.client = client
        self.decoder = decoder
        self.engine = engine
        self.rollout = rollout
        self.palettes = palettes or PaletteRegistry()
        self.hours = settings.forecast_hours
        self.oracle = oracle or RunOracle(client.exists, client.source_url, self.hours)
        self._log_lock = threading.Lock()
        self._not_ready_logged: dict[tuple[str, str], float] = {}

    def artifact_for(self, run: str, layer: LayerSpec, hour: str) -> ProcessedArtifact:
        return ProcessedArtifact(model=self.model.id, run=run, layer=layer.id, hour=hour, format=layer.format)

    def _staged(self, artifact: ProcessedArtifact) -> bool:
        return artifact.path_in(self.settings.STAGING_ROOT).is_file()

    def _log_not_ready(self, package: PackageSpec, reason: str) -> None:
        now = time.time()
        key = (package.id, reason)
        with self._log_lock:
            if now - self._not_ready_logged.get(key, 0.0) < RATE_LIMIT_SECONDS:
                return
            self._not_ready_logged[key] = now
        logger.info("Upstream not ready: package=%s reason=%s", package.id, reason)

    def process_package(self, package: PackageSpec) -> PackageOutcome:
        run = self.oracle.discover(package.id)
        if run is None:
            return PackageOutcome(package=package.id, status=STATUS_UNAVAILABLE)
        if is_up_to_date(self.settings.STORAGE_ROOT, package.id, run):
            logger.debug("Package up to date package=%s run=%s", package.id, run)
            return PackageOutcome(package=package.id, status=STATUS_UP_TO_DATE, run=run)
        return self.process_run(package, run)

    def process_run(self, package: PackageSpec, run: str) -> PackageOutcome:
        expected = len(self.hours) * len(package.layers)
        logger.info("Processing package=%s run=%s hours=%d layers=%d", package.id, run, len(self.hours), len(package.layers))
        started = time.time()

        artifacts: list[ProcessedArtifact] = []
        max_workers = max(1, min(self.settings.HOUR_WORKERS, len(self.hours)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(self.process_hour, run, package, hour): hour for hour in self.hours}
            for future in concurrent.futures.as_completed(futures):
                hour = futures[future]
                try:
                    outcome = future.result()
                except Exception:
                    logger.exception("Hour failed package=%s run=%s hour=%s", package.id, run, hour)
                    continue
                artifacts.extend(outcome.artifacts)

        artifacts.sort()
        if len(artifacts) < expected:
            logger.warning(
                "Run incomplete package=%s run=%s artifacts=%d expected=%d; retrying next cycle",
                package.id,
                run,
                len(artifacts),
                expected,
            )
            return PackageOutcome(
                package=package.id, status=STATUS_INCOMPLETE, run=run, artifacts=len(artifacts), expected=expected
            )

        if not self.rollout.rollout(package, run, artifacts):
            logger.warning("Rollout pending package=%s run=%s", package.id, run)
            return PackageOutcome(
                package=package.id, status=STATUS_ROLLOUT_PENDING, run=run, artifacts=len(artifacts), expected=expected
            )

        write_marker(self.settings.STORAGE_ROOT, package.id, run)
        logger.info(
            "Run rolled out package=%s run=%s artifacts=%d elapsed=%.1fs",
            package.id,
            run,
            len(artifacts),
            time.time() - started,
        )
        return PackageOutcome(
            package=package.id, status=STATUS_ROLLED_OUT, run=run, artifacts=len(artifacts), expected=expected
        )

    def process_hour(self, run: str, package: PackageSpec, hour: str) -> HourOutcome:
        targets = [(layer, self.artifact_for(run, layer, hour)) for layer in package.layers]
        if all(self._staged(artifact) for _, artifact in targets):
            logger.debug("Hour already staged package=%s run=%s hour=%s", package.id, run, hour)
            return HourOutcome(hour=hour, artifacts=[artifact for _, artifact in targets], skipped=True)

        try:
            source_path = self.client.download(run, package.id, hour, self.settings.DOWNLOAD_ROOT)
        except UpstreamNotReadyError as exc:
            self._log_not_ready(package, str(exc))
            return HourOutcome(hour=hour, failed_layers=[layer.id for layer, _ in targets])
        except Exception as exc:
            if is_upstream_not_ready_error(exc):
                self._log_not_ready(package, str(exc))
            else:
                logger.error("Download failed package=%s run=%s hour=%s error=%s", package.id, run, hour, exc)
            return HourOutcome(hour=hour, failed_layers=[layer.id for layer, _ in targets])

        outcome = HourOutcome(hour=hour)
        try:
            field_names = sorted({name for layer in package.layers for name in layer.fields})
            points_by_field = self.decoder.decode(source_path, field_names)

            pending = [(layer, artifact) for layer, artifact in targets if not self._staged(artifact)]
            outcome.artifacts.extend(artifact for layer, artifact in targets if self._staged(artifact))
            with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, len(pending))) as executor:
                futures = {
                    executor.submit(self.process_layer, layer, artifact, points_by_field): layer
                    for layer, artifact in pending
                }
                for future in concurrent.futures.as_completed(futures):
                    layer = futures[future]
                    try:
                        outcome.artifacts.append(future.result())
                    except Exception as exc:
                        logger.error(
                            "Layer failed package=%s run=%s hour=%s layer=%s error=%s",
                            package.id,
                            run,
                            hour,
                            layer.id,
                            exc,
                        )
                        outcome.failed_layers.append(layer.id)
        except Exception as exc:
            logger.error("Decode failed package=%s run=%s hour=%s error=%s", package.id, run, hour, exc)
            outcome.failed_layers.extend(layer.id for layer, _ in targets)
        finally:
            _remove_quietly(source_path)

        logger.info(
            "Hour processed package=%s run=%s hour=%s artifacts=%d failed=%s",
            package.id,
            run,
            hour,
            len(outcome.artifacts),
            outcome.failed_layers or "none",
        )
        return outcome

    def process_layer(
        self,
        layer: LayerSpec,
        artifact: ProcessedArtifact,
        points_by_field: PointsByField,
    ) -> ProcessedArtifact:
        layer_points = {name: points_by_field.get(name, []) for name in layer.fields}
        derived = get_derivation(layer.derive)(layer_points)
        samples: list[GeoPoint] = sorted(derived.values(), key=lambda point: (point.lat, point.lon))

        region = self.model.get_region(layer.clip_region)
        if region is not None:
            samples = filter_points_by_polygon(samples, region.polygon)
        if not samples:
            raise RenderError(f"No samples for layer={layer.id} hour={artifact.hour}")

        out_path = artifact.path_in(self.settings.STAGING_ROOT)
        if artifact.format == "vector":
            self.engine.build_vector_tiles(
                to_feature_collection(samples),
                out_path,
                (self.settings.VECTOR_MIN_ZOOM, self.settings.VECTOR_MAX_ZOOM),
                layer.id,
            )
        else:
            self.engine.build_raster(samples, self.palettes.get(layer.palette_name), out_path)
        logger.debug("Staged artifact=%s samples=%d", artifact.file_name, len(samples))
        return artifact


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove source file path=%s error=%s", path, exc)
