from __future__ import annotations

import hmac
import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO, Mapping, Sequence

import requests

from wxtiles.config import Settings
from wxtiles.models import MODEL_REGISTRY, ModelSpec, PackageSpec
from wxtiles.services.artifacts import EXTENSIONS, ProcessedArtifact
from wxtiles.services.discovery import is_valid_run
from wxtiles.services.mbtiles import MBTilesError, read_metadata
from wxtiles.services.storage import PromotionResult, promote_if_complete, purge_superseded

logger = logging.getLogger(__name__)

ROLLOUT_PATH = "/rollout"
UPLOAD_TIMEOUT_SECONDS = 300


class RolloutError(RuntimeError):
    pass


class RolloutUnauthorizedError(RolloutError):
    pass


class LocalRollout:
    """Single-node rollout: staging and published areas share a filesystem."""

    def __init__(self, settings: Settings, model: ModelSpec):
        self.settings = settings
        self.model = model

    def rollout(self, package: PackageSpec, run: str, artifacts: Sequence[ProcessedArtifact]) -> bool:
        result = promote_if_complete(
            self.settings.STAGING_ROOT,
            self.settings.STORAGE_ROOT,
            self.model,
            package,
            run,
            self.settings.forecast_hours,
        )
        return result.promoted


class RemoteRollout:
    """Pushes staged artifacts to the serving node's rollout endpoint."""

    def __init__(self, settings: Settings, model: ModelSpec, session: requests.Session | None = None):
        if not settings.ROLLOUT_TARGET_HOST:
            raise RolloutError("ROLLOUT_TARGET_HOST is not configured")
        self.settings = settings
        self.model = model
        self.session = session or requests.Session()
        self.url = f"{settings.ROLLOUT_TARGET_HOST}{ROLLOUT_PATH}"

    def push(self, artifact: ProcessedArtifact, path: Path) -> dict:
        data = {
            "model": artifact.model,
            "run": artifact.run,
            "layer": artifact.layer,
            "hour": artifact.hour,
            "format": artifact.format,
        }
        try:
            with path.open("rb") as handle:
                response = self.session.post(
                    self.url,
                    data=data,
                    files={"file": (artifact.file_name, handle, "application/octet-stream")},
                    headers={"Authorization": self.settings.ROLLOUT_SECRET},
                    timeout=UPLOAD_TIMEOUT_SECONDS,
                )
        except (requests.RequestException, OSError) as exc:
            raise RolloutError(f"Upload failed for {artifact.file_name}: {exc}") from exc

        if response.status_code == 401:
            raise RolloutUnauthorizedError(f"Rollout target rejected credentials for {artifact.file_name}")
        if response.status_code != 201:
            raise RolloutError(
                f"Upload of {artifact.file_name} returned status={response.status_code} body={response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError:
            return {}

    def rollout(self, package: PackageSpec, run: str, artifacts: Sequence[ProcessedArtifact]) -> bool:
        staging_root = self.settings.STAGING_ROOT
        accepted: list[Path] = []
        for artifact in artifacts:
            path = artifact.path_in(staging_root)
            try:
                self.push(artifact, path)
            except RolloutUnauthorizedError as exc:
                logger.error("Rollout unauthorized; operator action required: %s", exc)
                return False
            except RolloutError as exc:
                logger.warning("Rollout upload failed package=%s run=%s error=%s", package.id, run, exc)
                return False
            accepted.append(path)

        for path in accepted:
            path.unlink(missing_ok=True)
        purged = purge_superseded(staging_root, self.model.id, package.layer_ids, run)
        logger.info(
            "Rollout uploaded package=%s run=%s artifacts=%d purged=%d target=%s",
            package.id,
            run,
            len(accepted),
            purged,
            self.url,
        )
        return True


def build_rollout(
    settings: Settings,
    model: ModelSpec,
    session: requests.Session | None = None,
) -> LocalRollout | RemoteRollout:
    if settings.rollout_mode == "remote":
        return RemoteRollout(settings, model, session=session)
    return LocalRollout(settings, model)


class RolloutReceiver:
    """Server side of the rollout protocol: authenticate, stage, gate."""

    def __init__(self, settings: Settings, models: Mapping[str, ModelSpec] | None = None):
        self.settings = settings
        self.models = dict(models) if models is not None else dict(MODEL_REGISTRY)

    def authorize(self, header: str | None) -> bool:
        secret = self.settings.ROLLOUT_SECRET
        if not secret or not header:
            return False
        token = header.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        return hmac.compare_digest(token.encode(), secret.encode())

    def parse_fields(self, fields: Mapping[str, str]) -> tuple[ModelSpec, PackageSpec, ProcessedArtifact]:
        model_id = str(fields.get("model") or "").strip().lower()
        run = str(fields.get("run") or "").strip()
        layer_id = str(fields.get("layer") or "").strip()
        hour_text = str(fields.get("hour") or "").strip()

        model = self.models.get(model_id)
        if model is None:
            raise ValueError(f"Unknown model: {model_id!r}")
        if not is_valid_run(run):
            raise ValueError(f"Invalid run: {run!r}")
        layer = model.get_layer(layer_id)
        package = model.package_for_layer(layer_id)
        if layer is None or package is None:
            raise ValueError(f"Unknown layer for model={model.id}: {layer_id!r}")
        if not hour_text.isdigit():
            raise ValueError(f"Invalid hour: {hour_text!r}")
        hour = f"{int(hour_text):02d}"
        if hour not in self.settings.forecast_hours:
            raise ValueError(f"Hour out of range: {hour}")
        artifact_format = str(fields.get("format") or layer.format).strip()
        if artifact_format not in EXTENSIONS:
            raise ValueError(f"Invalid format: {artifact_format!r}")
        artifact = ProcessedArtifact(model=model.id, run=run, layer=layer.id, hour=hour, format=artifact_format)
        return model, package, artifact

    def stage(self, artifact: ProcessedArtifact, stream: BinaryIO) -> Path:
        staging_root = self.settings.STAGING_ROOT
        staging_root.mkdir(parents=True, exist_ok=True)
        out_path = artifact.path_in(staging_root)
        tmp_path = out_path.with_name(f".{out_path.name}.{uuid.uuid4().hex}.upload")
        try:
            with tmp_path.open("wb") as handle:
                shutil.copyfileobj(stream, handle)
            if artifact.format == "vector":
                try:
                    read_metadata(tmp_path)
                except MBTilesError as exc:
                    raise ValueError(f"Upload is not a tile archive: {artifact.file_name}") from exc
            tmp_path.replace(out_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return out_path

    def receive(
        self,
        model: ModelSpec,
        package: PackageSpec,
        artifact: ProcessedArtifact,
        stream: BinaryIO,
    ) -> PromotionResult:
        path = self.stage(artifact, stream)
        logger.info("Rollout staged artifact=%s size=%d", artifact.file_name, path.stat().st_size)
        return promote_if_complete(
            self.settings.STAGING_ROOT,
            self.settings.STORAGE_ROOT,
            model,
            package,
            artifact.run,
            self.settings.forecast_hours,
        )
