from __future__ import annotations

import argparse
import concurrent.futures
import logging
import random
import signal
import threading
from pathlib import Path
from typing import Sequence

from wxtiles.config import ConfigError, Settings, load_settings
from wxtiles.models import PackageSpec, get_model
from wxtiles.services.grib_decode import CfgribDecoder
from wxtiles.services.palette import PaletteRegistry
from wxtiles.services.pipeline import (
    STATUS_ROLLED_OUT,
    STATUS_UNAVAILABLE,
    STATUS_UP_TO_DATE,
    PackageOutcome,
    RunPipeline,
)
from wxtiles.services.render_engine import TilerRenderEngine
from wxtiles.services.rollout import build_rollout
from wxtiles.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)

BACKOFF_INITIAL_SECONDS = 60
BACKOFF_MAX_SECONDS = 600
SLEEP_JITTER_RATIO = 0.1
POLL_SECONDS = 300
BUSY_POLL_SECONDS = 10
RETRY_SECONDS = 120
SCRATCH_PATTERNS = ("*.grib2", ".*.part")


def compute_sleep_seconds(status: str, backoff: int) -> tuple[int, str, int]:
    """Return (sleep seconds, reason, next backoff) for a package cycle outcome."""
    if status == STATUS_UNAVAILABLE:
        return backoff, "backoff", min(BACKOFF_MAX_SECONDS, max(backoff * 2, BACKOFF_INITIAL_SECONDS))
    if status == STATUS_UP_TO_DATE:
        return POLL_SECONDS, "poll", BACKOFF_INITIAL_SECONDS
    if status == STATUS_ROLLED_OUT:
        return BUSY_POLL_SECONDS, "busy", BACKOFF_INITIAL_SECONDS
    return RETRY_SECONDS, "retry", BACKOFF_INITIAL_SECONDS


def _apply_sleep_jitter(seconds: int) -> float:
    if seconds <= 0:
        return 0.0
    delta = seconds * SLEEP_JITTER_RATIO
    jittered = seconds + random.uniform(-delta, delta)
    return max(1.0, jittered)


class Scheduler:
    """One discover/process/sleep loop per package, stopped through an Event."""

    def __init__(self, pipeline: RunPipeline, packages: Sequence[PackageSpec] | None = None):
        self.pipeline = pipeline
        self.packages = list(packages) if packages is not None else list(pipeline.model.packages)

    def run_package_once(self, package: PackageSpec) -> PackageOutcome:
        try:
            return self.pipeline.process_package(package)
        except Exception:
            logger.exception("Package cycle failed package=%s", package.id)
            return PackageOutcome(package=package.id, status=STATUS_UNAVAILABLE)

    def run_once(self) -> list[PackageOutcome]:
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, len(self.packages))) as executor:
            return list(executor.map(self.run_package_once, self.packages))

    def _package_loop(self, package: PackageSpec, stop_event: threading.Event) -> None:
        backoff = BACKOFF_INITIAL_SECONDS
        while not stop_event.is_set():
            outcome = self.run_package_once(package)
            seconds, reason, backoff = compute_sleep_seconds(outcome.status, backoff)
            sleep_for = _apply_sleep_jitter(seconds)
            logger.info(
                "Package cycle package=%s status=%s run=%s sleep=%.0fs reason=%s",
                package.id,
                outcome.status,
                outcome.run or "-",
                sleep_for,
                reason,
            )
            stop_event.wait(sleep_for)
        logger.info("Package loop stopped package=%s", package.id)

    def run(self, stop_event: threading.Event) -> None:
        threads = [
            threading.Thread(
                target=self._package_loop,
                args=(package, stop_event),
                name=f"package-{package.id}",
                daemon=True,
            )
            for package in self.packages
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            while thread.is_alive():
                thread.join(timeout=1.0)


def build_pipeline(settings: Settings) -> RunPipeline:
    model = get_model(settings.MODEL)
    client = UpstreamClient(settings.UPSTREAM_BASE_URL, timeout_seconds=settings.HTTP_TIMEOUT_SECONDS)
    return RunPipeline(
        settings,
        model,
        client=client,
        decoder=CfgribDecoder(),
        engine=TilerRenderEngine(),
        rollout=build_rollout(settings, model),
        palettes=PaletteRegistry(),
    )


def clean_scratch(download_root: Path) -> int:
    removed = 0
    if not download_root.is_dir():
        return removed
    for pattern in SCRATCH_PATTERNS:
        for path in download_root.glob(pattern):
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
    return removed


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the weather tile ingestion worker.")
    parser.add_argument("--once", action="store_true", help="Process every package a single time and exit")
    parser.add_argument("--package", action="append", default=None, help="Restrict to a package id (repeatable)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        settings.validate()
        pipeline = build_pipeline(settings)
    except ConfigError as exc:
        logger.error("Worker configuration error: %s", exc)
        return 1

    packages = list(pipeline.model.packages)
    if args.package:
        wanted = set(args.package)
        unknown = wanted - {package.id for package in packages}
        if unknown:
            logger.error("Unknown package(s) for model=%s: %s", pipeline.model.id, sorted(unknown))
            return 1
        packages = [package for package in packages if package.id in wanted]

    scheduler = Scheduler(pipeline, packages)
    logger.info(
        "Worker starting model=%s packages=%s hours=%s..%s rollout=%s",
        pipeline.model.id,
        [package.id for package in packages],
        settings.FORECAST_START_HOUR,
        settings.FORECAST_END_HOUR,
        settings.rollout_mode,
    )
    try:
        if args.once:
            outcomes = scheduler.run_once()
            for outcome in outcomes:
                logger.info("Package result package=%s status=%s run=%s", outcome.package, outcome.status, outcome.run)
            return 0

        stop_event = threading.Event()

        def _request_stop(signum, _frame) -> None:
            logger.info("Worker shutdown requested signal=%s", signum)
            stop_event.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)
        scheduler.run(stop_event)
        return 0
    finally:
        removed = clean_scratch(settings.DOWNLOAD_ROOT)
        if removed:
            logger.info("Removed scratch files count=%d", removed)


if __name__ == "__main__":
    raise SystemExit(main())
