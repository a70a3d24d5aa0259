from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np

RGBA = tuple[int, int, int, int]

INVERSE_MATCH_THRESHOLD = 50.0
TRANSPARENT: RGBA = (0, 0, 0, 0)

_HEX_RE = re.compile(r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_RGBA_RE = re.compile(
    r"^rgba\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*([0-9]*\.?[0-9]+)\s*\)$"
)


def parse_color(text: str) -> RGBA:
    value = text.strip()
    match = _HEX_RE.match(value)
    if match:
        digits = match.group(1)
        if len(digits) == 3:
            digits = "".join(ch * 2 for ch in digits)
        r, g, b = (int(digits[i : i + 2], 16) for i in (0, 2, 4))
        a = int(digits[6:8], 16) if len(digits) == 8 else 255
        return r, g, b, a
    match = _RGBA_RE.match(value)
    if match:
        r, g, b = (min(int(match.group(i)), 255) for i in (1, 2, 3))
        alpha = min(max(float(match.group(4)), 0.0), 1.0)
        return r, g, b, int(round(alpha * 255))
    raise ValueError(f"Unsupported color format: {text!r}")


def format_color(color: RGBA) -> str:
    r, g, b, a = color
    if a == 255:
        return f"#{r:02x}{g:02x}{b:02x}"
    return f"rgba({r}, {g}, {b}, {a / 255.0:.2f})"


def interpolate_color(c1: RGBA, c2: RGBA, factor: float) -> RGBA:
    return tuple(  # type: ignore[return-value]
        int(round(a + factor * (b - a))) for a, b in zip(c1, c2)
    )


def color_distance(c1: Iterable[float], c2: Iterable[float]) -> float:
    return math.sqrt(sum((float(a) - float(b)) ** 2 for a, b in zip(c1, c2)))


def best_interpolation_factor(target: RGBA, c1: RGBA, c2: RGBA) -> float:
    """Least-squares factor t minimising |c1 + t*(c2 - c1) - target|.

    Channels with a larger delta weigh more; identical endpoints give 0.
    """
    delta = [b - a for a, b in zip(c1, c2)]
    norm = sum(d * d for d in delta)
    if norm == 0:
        return 0.0
    offset = [t - a for t, a in zip(target, c1)]
    return sum(o * d for o, d in zip(offset, delta)) / norm


@dataclass(frozen=True)
class ColorPoint:
    value: float
    color: str


@dataclass(frozen=True)
class Palette:
    name: str
    unit: str
    icon: str
    points: tuple[ColorPoint, ...]
    show_palette: bool = True
    _colors: tuple[RGBA, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.points:
            raise ValueError(f"Palette {self.name} has no breakpoints")
        ordered = tuple(sorted(self.points, key=lambda point: point.value))
        object.__setattr__(self, "points", ordered)
        object.__setattr__(self, "_colors", tuple(parse_color(point.color) for point in ordered))

    @property
    def min_value(self) -> float:
        return self.points[0].value

    @property
    def max_value(self) -> float:
        return self.points[-1].value

    def color_for_value(self, value: float) -> RGBA:
        if math.isnan(value):
            return TRANSPARENT
        if value <= self.points[0].value:
            return self._colors[0]
        if value >= self.points[-1].value:
            return self._colors[-1]
        for index in range(len(self.points) - 1):
            low = self.points[index]
            high = self.points[index + 1]
            if low.value <= value <= high.value:
                span = high.value - low.value
                factor = 0.0 if span == 0 else (value - low.value) / span
                return interpolate_color(self._colors[index], self._colors[index + 1], factor)
        return TRANSPARENT

    def colorize(self, values: np.ndarray) -> np.ndarray:
        """Vectorised color_for_value: (n,) floats to (n, 4) uint8, NaN transparent."""
        values = np.asarray(values, dtype=np.float64)
        breakpoints = np.array([point.value for point in self.points], dtype=np.float64)
        channels = np.array(self._colors, dtype=np.float64)
        rgba = np.zeros((values.size, 4), dtype=np.uint8)
        valid = np.isfinite(values)
        for channel in range(4):
            interpolated = np.interp(values[valid], breakpoints, channels[:, channel])
            rgba[valid, channel] = np.rint(interpolated).astype(np.uint8)
        return rgba

    def value_for_color(self, color: RGBA | str) -> float:
        target = parse_color(color) if isinstance(color, str) else tuple(color)

        for point, candidate in zip(self.points, self._colors):
            if candidate == target:
                return point.value

        best_index = -1
        best_factor = 0.0
        best_distance = math.inf
        for index in range(len(self.points) - 1):
            c1 = self._colors[index]
            c2 = self._colors[index + 1]
            factor = min(max(best_interpolation_factor(target, c1, c2), 0.0), 1.0)
            reconstructed = [a + factor * (b - a) for a, b in zip(c1, c2)]
            distance = color_distance(target, reconstructed)
            if distance < best_distance:
                best_distance = distance
                best_index = index
                best_factor = factor

        if best_index >= 0 and best_distance < INVERSE_MATCH_THRESHOLD:
            low = self.points[best_index].value
            high = self.points[best_index + 1].value
            return low + best_factor * (high - low)

        nearest = min(
            range(len(self.points)),
            key=lambda index: color_distance(target, self._colors[index]),
        )
        return self.points[nearest].value

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "icon": self.icon,
            "unit": self.unit,
            "show_palette": self.show_palette,
            "colors": [
                {"value": point.value, "color": format_color(parse_color(point.color))} for point in self.points
            ],
        }


def _points(pairs: Iterable[tuple[float, str]]) -> tuple[ColorPoint, ...]:
    return tuple(ColorPoint(value=float(value), color=color) for value, color in pairs)


_TEMPERATURE_POINTS = _points(
    [
        (-40, "#000080"),
        (-20, "#0000FF"),
        (-10, "#4169E1"),
        (0, "#ADD8E6"),
        (10, "#90EE90"),
        (15, "#FFFFE0"),
        (20, "#FFD700"),
        (25, "#FFA500"),
        (30, "#FF4500"),
        (35, "#FF0000"),
        (45, "#8B0000"),
        (60, "#4B0000"),
    ]
)

_WIND_SPEED_POINTS = _points(
    [
        (0, "rgba(255,255,255,0)"),
        (1, "rgba(230,247,255,0.1)"),
        (2, "rgba(179,229,255,0.3)"),
        (3, "rgba(128,212,255,0.5)"),
        (5, "rgba(77,195,255,0.7)"),
        (7, "#1AB2FF"),
        (10, "#00A0E6"),
        (12, "#0080B3"),
        (15, "#66CC66"),
        (18, "#99DD00"),
        (20, "#FFCC00"),
        (25, "#FF9900"),
        (30, "#FF6600"),
        (35, "#FF3300"),
        (40, "#CC0000"),
        (50, "#990066"),
    ]
)

_HUMIDITY_POINTS = _points(
    [
        (0, "#8B4513"),
        (20, "#9EA913"),
        (30, "#A8DB13"),
        (40, "#9DFF22"),
        (50, "#61FF54"),
        (60, "#25FF86"),
        (70, "#00FFB8"),
        (80, "#00CDEA"),
        (90, "#009BFF"),
        (99, "#006EFF"),
    ]
)

_COMFORT_SCORE_POINTS = _points(
    [
        (1, "#0000FF"),
        (3, "#ADD8E6"),
        (5, "#90EE90"),
        (6, "#FFFFE0"),
        (8, "#FFA500"),
        (10, "#8B0000"),
    ]
)

_RAINFALL_POINTS = _points(
    [(0, "rgba(255,255,255,0)")]
    + [(round(step / 100, 2), f"rgba(255,255,255,{step / 100:.2f})") for step in range(1, 10)]
    + [(round(step / 100, 2), f"rgba(255,255,255,{0.2 + (step - 10) * 0.03:.2f})") for step in range(10, 28)]
    + [
        (0.35, "#e1f2fc"),
        (0.5, "#5fd4f4"),
        (0.75, "#45c2f0"),
        (1, "#35c2f0"),
        (1.5, "#25b2ec"),
        (2, "#1aa7ec"),
        (3.5, "#28c9c6"),
        (5, "#37eba5"),
        (7.5, "#42dc86"),
        (10, "#4cd167"),
        (15, "#64c855"),
        (20, "#7bc043"),
        (25, "#8ed545"),
        (30, "#a0eb4c"),
        (35, "#b0e34a"),
        (40, "#c0d647"),
        (45, "#e0dc48"),
        (50, "#ffe04a"),
        (60, "#ffc04c"),
        (70, "#ff9e3d"),
        (80, "#ff7f41"),
        (90, "#ff6a5a"),
        (100, "#e56b6f"),
        (150, "#ef233c"),
        (200, "#d90429"),
        (300, "#8d0033"),
        (400, "#8c0045"),
        (500, "#85023e"),
        (600, "#77004d"),
        (700, "#6a0061"),
        (800, "#560063"),
        (900, "#440080"),
    ]
)

# Grey ramp whose opacity tracks the cover percentage.
_CLOUD_COVER_POINTS = _points((step, f"rgba(200,200,200,{step / 100:.2f})") for step in range(0, 101))


def default_palettes() -> list[Palette]:
    return [
        Palette("temperature", "°C", "temperature.svg", _TEMPERATURE_POINTS),
        Palette("comfort_index", "°C", "temperature.svg", _TEMPERATURE_POINTS),
        Palette("feels_like_temperature", "°C", "temperature.svg", _TEMPERATURE_POINTS),
        Palette("comfort_score", "", "temperature.svg", _COMFORT_SCORE_POINTS),
        Palette("wind_speed", "m/s", "wind.svg", _WIND_SPEED_POINTS),
        Palette("humidity", "%", "humidity.svg", _HUMIDITY_POINTS),
        Palette("cloud_cover", "%", "cloud_cover.svg", _CLOUD_COVER_POINTS, show_palette=False),
        Palette("rainfall_accumulation", "mm", "rainfall.svg", _RAINFALL_POINTS),
    ]


class PaletteRegistry:
    def __init__(self, palettes: Iterable[Palette] | None = None):
        self._palettes: dict[str, Palette] = {}
        for palette in palettes if palettes is not None else default_palettes():
            self.register(palette)

    def register(self, palette: Palette) -> None:
        self._palettes[palette.name] = palette

    def get(self, name: str) -> Palette:
        try:
            return self._palettes[name]
        except KeyError:
            raise KeyError(f"Unknown palette: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._palettes

    def names(self) -> list[str]:
        return sorted(self._palettes)

    def as_json(self) -> dict[str, dict[str, Any]]:
        return {name: self._palettes[name].to_json() for name in self.names()}
