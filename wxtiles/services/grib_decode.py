from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable, Protocol, Sequence

import cfgrib
import numpy as np
import xarray as xr

from wxtiles.services.geometry import GeoPoint
from wxtiles.services.upstream import UpstreamNotReadyError, is_upstream_not_ready_error

logger = logging.getLogger(__name__)

_NAME_ATTRS = ("GRIB_shortName", "GRIB_cfVarName", "GRIB_name")


class DecodeError(RuntimeError):
    pass


class GridDecoder(Protocol):
    def decode(self, path: Path, variable_names: Sequence[str]) -> dict[str, list[GeoPoint]]: ...


def _matches(name: str, data_array: xr.DataArray, wanted: str) -> bool:
    if name == wanted:
        return True
    return any(str(data_array.attrs.get(attr, "")).lower() == wanted for attr in _NAME_ATTRS)


def _coordinate(data_array: xr.DataArray, names: Iterable[str]) -> np.ndarray:
    for name in names:
        if name in data_array.coords:
            return np.asarray(data_array.coords[name].values, dtype=np.float64)
    raise DecodeError(f"Missing coordinate {'/'.join(names)} on {data_array.name}")


def dataarray_to_points(data_array: xr.DataArray) -> list[GeoPoint]:
    """Flatten a 2-D lat/lon field into GeoPoints, dropping missing cells."""
    values = np.asarray(data_array.squeeze().values, dtype=np.float64)
    lats = _coordinate(data_array, ("latitude", "lat"))
    lons = _coordinate(data_array, ("longitude", "lon"))
    if lats.ndim == 1 and lons.ndim == 1:
        lons, lats = np.meshgrid(lons, lats)
    if values.shape != lats.shape:
        raise DecodeError(
            f"Field {data_array.name} shape {values.shape} does not match grid {lats.shape}"
        )
    lons = ((lons + 180.0) % 360.0) - 180.0
    valid = np.isfinite(values)
    return [
        GeoPoint(lat=float(lat), lon=float(lon), value=float(value))
        for lat, lon, value in zip(lats[valid], lons[valid], values[valid])
    ]


class CfgribDecoder:
    def __init__(self, open_datasets: Callable[..., list[xr.Dataset]] | None = None):
        self._open_datasets = open_datasets or cfgrib.open_datasets

    def _open(self, path: Path) -> list[xr.Dataset]:
        try:
            return self._open_datasets(str(path), backend_kwargs={"indexpath": ""})
        except Exception as exc:
            if is_upstream_not_ready_error(exc):
                raise UpstreamNotReadyError(str(exc)) from exc
            raise DecodeError(f"Failed to open GRIB file {path}: {exc}") from exc

    def decode(self, path: Path, variable_names: Sequence[str]) -> dict[str, list[GeoPoint]]:
        wanted = [name.lower() for name in variable_names]
        result: dict[str, list[GeoPoint]] = {}
        datasets = self._open(path)
        try:
            for dataset in datasets:
                for name, data_array in dataset.data_vars.items():
                    for target in wanted:
                        if target in result or not _matches(str(name).lower(), data_array, target):
                            continue
                        result[target] = dataarray_to_points(data_array)
        finally:
            for dataset in datasets:
                dataset.close()

        missing = [name for name in wanted if name not in result]
        if missing:
            logger.warning("GRIB decode missing fields path=%s fields=%s", path.name, missing)
        return result

