from __future__ import annotations

import errno
import logging
import os
import shutil
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from wxtiles.models import ModelSpec, PackageSpec
from wxtiles.services.artifacts import ProcessedArtifact, list_artifacts

logger = logging.getLogger(__name__)

MARKER_SUFFIX = "_current_run_datetime.txt"
LOCK_TIMEOUT_SECONDS = 30.0
STALE_LOCK_SECONDS = 300.0


@dataclass(frozen=True)
class PromotionResult:
    run: str
    promoted: bool
    staged: int
    expected: int
    purged: int = 0
    artifacts: tuple[ProcessedArtifact, ...] = ()


def expected_artifact_count(
    model: ModelSpec,
    hours: Sequence[str],
    package: PackageSpec | None = None,
) -> int:
    layers = package.layers if package is not None else model.layers
    return len(hours) * len(layers)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.write_text(text)
    tmp_path.replace(path)


def marker_path(storage_root: Path, package_id: str) -> Path:
    return storage_root / f"{package_id}{MARKER_SUFFIX}"


def read_marker(storage_root: Path, package_id: str) -> str | None:
    path = marker_path(storage_root, package_id)
    try:
        value = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read run marker path=%s error=%s", path, exc)
        return None
    return value or None


def write_marker(storage_root: Path, package_id: str, run: str) -> None:
    _atomic_write_text(marker_path(storage_root, package_id), run)
    logger.info("Run marker updated package=%s run=%s", package_id, run)


def is_up_to_date(storage_root: Path, package_id: str, run: str) -> bool:
    return read_marker(storage_root, package_id) == run


def _lock_age_seconds(lock_path: Path) -> float | None:
    try:
        return time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return None


@contextmanager
def run_lock(
    lock_root: Path,
    model: str,
    run: str,
    *,
    timeout_seconds: float = LOCK_TIMEOUT_SECONDS,
    stale_after_seconds: float = STALE_LOCK_SECONDS,
) -> Iterator[None]:
    """Directory lock per (model, run); a lock older than stale_after_seconds is taken over."""
    lock_path = lock_root / ".locks" / model / f"{run}.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.time() + timeout_seconds
    while True:
        try:
            lock_path.mkdir()
            break
        except FileExistsError:
            age = _lock_age_seconds(lock_path)
            if age is not None and age > stale_after_seconds:
                logger.warning("Removing abandoned lock path=%s age=%.0fs", lock_path, age)
                shutil.rmtree(lock_path, ignore_errors=True)
                continue
            if time.time() >= deadline:
                raise TimeoutError(f"Timed out acquiring lock for model={model} run={run}")
            time.sleep(0.05)
    try:
        yield
    finally:
        shutil.rmtree(lock_path, ignore_errors=True)


def move_file(src: Path, dst: Path) -> None:
    """Rename into place; copy then rename when crossing filesystems."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(src, dst)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
    tmp_path = dst.with_name(f".{dst.name}.{uuid.uuid4().hex}.tmp")
    try:
        shutil.copy2(src, tmp_path)
        tmp_path.replace(dst)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    src.unlink()


def staged_artifacts(
    staging_root: Path,
    model_id: str,
    run: str,
    layer_ids: Sequence[str],
    hours: Sequence[str],
) -> list[tuple[ProcessedArtifact, Path]]:
    wanted_layers = set(layer_ids)
    wanted_hours = set(hours)
    return [
        (artifact, path)
        for artifact, path in list_artifacts(staging_root, model=model_id)
        if artifact.run == run and artifact.layer in wanted_layers and artifact.hour in wanted_hours
    ]


def purge_superseded(root: Path, model_id: str, layer_ids: Sequence[str], keep_run: str) -> int:
    """Delete artifacts of older runs for the given layers; returns the count removed."""
    wanted_layers = set(layer_ids)
    removed = 0
    for artifact, path in list_artifacts(root, model=model_id):
        if artifact.layer not in wanted_layers or artifact.run >= keep_run:
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        removed += 1
        logger.debug("Removed superseded artifact path=%s", path)
    return removed


def promote_if_complete(
    staging_root: Path,
    published_root: Path,
    model: ModelSpec,
    package: PackageSpec,
    run: str,
    hours: Sequence[str],
) -> PromotionResult:
    """Move a package run into the published area once every artifact is staged.

    The count and the moves happen under one lock per (model, run), so a run is
    promoted exactly once no matter how many uploads race to complete it.
    """
    expected = expected_artifact_count(model, hours, package)
    with run_lock(staging_root, model.id, run):
        staged = staged_artifacts(staging_root, model.id, run, package.layer_ids, hours)
        if len(staged) != expected or expected == 0:
            logger.info(
                "Promotion gate not met model=%s package=%s run=%s staged=%d expected=%d",
                model.id,
                package.id,
                run,
                len(staged),
                expected,
            )
            return PromotionResult(run=run, promoted=False, staged=len(staged), expected=expected)

        missing = [path for _, path in staged if not path.is_file()]
        if missing:
            raise FileNotFoundError(f"Staged artifacts vanished before promotion: {missing}")

        for artifact, path in staged:
            move_file(path, artifact.path_in(published_root))

        purged = purge_superseded(published_root, model.id, package.layer_ids, run)
        purged += purge_superseded(staging_root, model.id, package.layer_ids, run)

    logger.info(
        "Promoted model=%s package=%s run=%s artifacts=%d purged=%d",
        model.id,
        package.id,
        run,
        len(staged),
        purged,
    )
    return PromotionResult(
        run=run,
        promoted=True,
        staged=len(staged),
        expected=expected,
        purged=purged,
        artifacts=tuple(artifact for artifact, _ in staged),
    )


def find_published_artifact(
    published_root: Path,
    model_id: str,
    layer: str,
    hour: str,
    artifact_format: str,
) -> tuple[ProcessedArtifact, Path] | None:
    matches = [
        (artifact, path)
        for artifact, path in list_artifacts(published_root, model=model_id)
        if artifact.layer == layer and artifact.hour == hour and artifact.format == artifact_format
    ]
    if not matches:
        return None
    return max(matches, key=lambda item: item[0].run)


def latest_published_run(published_root: Path, model_id: str) -> str | None:
    runs = [artifact.run for artifact, _ in list_artifacts(published_root, model=model_id)]
    return max(runs) if runs else None
