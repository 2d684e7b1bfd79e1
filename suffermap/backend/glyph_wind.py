"""Viewport wind arrows.
Grid generation over the visible map, a coarse (2-decimal) per-cell forecast
cache, and glyph encoding: direction via rotation, speed via size and colour.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, NamedTuple, Optional, Sequence
import logging

import numpy as np

from suffermap.backend import config
from suffermap.backend.weather_openmeteo import (
    HOURS_PER_DAY,
    DateLike,
    HourlyWindEntry,
    WindFetchError,
    WindSeries,
    iso_date,
)
from suffermap.backend.weather_service import CacheKey, WindCache, pooled_map

log = logging.getLogger('suffermap.glyph.wind')

MAX_VISUAL_SPEED_KMH = 60.0
MIN_GLYPH_SIZE = 0.35
MAX_GLYPH_SIZE = 1.10


class ViewportBounds(NamedTuple):
    south: float
    west: float
    north: float
    east: float


class GridPoint(NamedTuple):
    lat: float
    lon: float


@dataclass(frozen=True)
class ArrowGlyph:
    lat: float
    lon: float
    rotation_deg: float
    size: float
    speed_kmh: float
    direction_deg: float
    color: str
    beaufort: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def speed_to_color(speed_kmh: float) -> str:
    s = float(speed_kmh) / 3.6
    if s < 5.0:
        return '#2ca02c'  # green
    if s < 10.0:
        return '#f2c744'  # yellow
    if s < 15.0:
        return '#f28e2b'  # orange
    if s < 20.0:
        return '#d62728'  # red
    return '#8b0000'      # dark red


def beaufort_from_kmh(speed_kmh: float) -> int:
    s = float(speed_kmh) / 3.6
    # Upper bounds in m/s for forces 0..9; anything above is 10+
    thresholds = [0.3, 1.6, 3.4, 5.5, 8.0, 10.8, 13.9, 17.2, 20.8, 24.5]
    for i, t in enumerate(thresholds):
        if s < t:
            return i
    return 10


def glyph_size(speed_kmh: float) -> float:
    clamped = min(max(float(speed_kmh), 0.0), MAX_VISUAL_SPEED_KMH)
    return MIN_GLYPH_SIZE + (clamped / MAX_VISUAL_SPEED_KMH) * (MAX_GLYPH_SIZE - MIN_GLYPH_SIZE)


def make_glyph(lat: float, lon: float, entry: HourlyWindEntry) -> ArrowGlyph:
    # Direction is "from"; flip so the arrow points where the wind is going
    return ArrowGlyph(
        lat=lat,
        lon=lon,
        rotation_deg=(entry.direction_deg + 180.0) % 360.0,
        size=glyph_size(entry.speed_kmh),
        speed_kmh=entry.speed_kmh,
        direction_deg=entry.direction_deg,
        color=speed_to_color(entry.speed_kmh),
        beaufort=beaufort_from_kmh(entry.speed_kmh),
    )


def _axis(start: float, end: float, n: int) -> np.ndarray:
    if n < 1:
        raise ValueError('grid dimensions must be >= 1')
    if n == 1:
        return np.array([(start + end) / 2.0])
    return np.linspace(start, end, n)


def build_grid(bounds: ViewportBounds, cols: Optional[int] = None, rows: Optional[int] = None) -> List[GridPoint]:
    """Evenly spaced points spanning the viewport, edges included.

    Row-major from the south-west corner. A dimension of 1 collapses to the
    centre line of that axis.
    """
    cols = config.ARROW_GRID_COLS if cols is None else int(cols)
    rows = config.ARROW_GRID_ROWS if rows is None else int(rows)
    lats = _axis(bounds.south, bounds.north, rows)
    lons = _axis(bounds.west, bounds.east, cols)
    return [GridPoint(float(lat), float(lon)) for lat in lats for lon in lons]


class ArrowCache(WindCache):
    """Per-cell forecasts for arrows, keyed at 2 decimals (~1 km).

    A failed cell is stored as an all-None series so it is not retried on
    every redraw.
    """

    precision = 2

    def _request(self, key: CacheKey, lat: float, lon: float) -> WindSeries:
        try:
            return self.client.fetch_wind_series(key[0], key[1], key[2])
        except WindFetchError as e:
            log.warning('[WIND] grid cell unavailable key=%s: %s', key, e)
            return [None] * HOURS_PER_DAY

    def load_grid_point(self, lat: float, lon: float, day: DateLike) -> None:
        self.fetch_wind_for_point(lat, lon, day)

    def load_grid_points(self, points: Sequence[GridPoint], day: DateLike,
                         concurrency: Optional[int] = None) -> None:
        d = iso_date(day)
        limit = config.WIND_FETCH_CONCURRENCY if concurrency is None else concurrency
        todo = [p for p in points if self.get_cached(p.lat, p.lon, d) is None]
        if todo:
            log.info('[WIND] loading %d/%d grid cells for %s', len(todo), len(points), d)
        pooled_map(lambda p: self.load_grid_point(p.lat, p.lon, d), todo, limit)

    def cached_entry(self, lat: float, lon: float, day: DateLike, hour_index: int) -> Optional[HourlyWindEntry]:
        series = self.get_cached(lat, lon, day)
        if not series or not (0 <= hour_index < len(series)):
            return None
        return series[hour_index]

    def _nearest(self, lat: float, lon: float, hour_index: int, day: Optional[str]) -> Optional[HourlyWindEntry]:
        # Linear scan; the cache only holds cells the user has looked at
        best: Optional[HourlyWindEntry] = None
        best_d2 = float('inf')
        for (klat, klon, kday), series in self.snapshot():
            if day is not None and kday != day:
                continue
            if not (0 <= hour_index < len(series)):
                continue
            entry = series[hour_index]
            if entry is None:
                continue
            d2 = (klat - lat) ** 2 + (klon - lon) ** 2
            if d2 < best_d2:
                best_d2 = d2
                best = entry
        return best

    def nearest_arrow(self, lat: float, lon: float, hour_index: int,
                      day: Optional[DateLike] = None) -> Optional[HourlyWindEntry]:
        """Nearest cached entry for an hour, e.g. for hover tooltips."""
        return self._nearest(lat, lon, hour_index, iso_date(day) if day is not None else None)

    def renderable_arrows(self, grid_points: Sequence[GridPoint], day: DateLike, hour_index: int) -> List[ArrowGlyph]:
        """Glyphs for the grid at one hour.

        Cells without data borrow the nearest cached cell of the same day;
        cells with no candidate at all are left out.
        """
        d = iso_date(day)
        glyphs: List[ArrowGlyph] = []
        for p in grid_points:
            entry = self.cached_entry(p.lat, p.lon, d, hour_index)
            if entry is None:
                entry = self._nearest(p.lat, p.lon, hour_index, d)
            if entry is None:
                continue
            glyphs.append(make_glyph(p.lat, p.lon, entry))
        log.info('[WIND] arrows=%d/%d date=%s hour=%d', len(glyphs), len(grid_points), d, hour_index)
        return glyphs


def arrows_geojson(glyphs: Sequence[ArrowGlyph]) -> Dict[str, Any]:
    features = []
    for g in glyphs:
        features.append({
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [g.lon, g.lat]},
            "properties": {
                "iconRotate": g.rotation_deg,
                "iconSize": g.size,
                "speed": g.speed_kmh,
                "direction": g.direction_deg,
                "color": g.color,
                "beaufort": g.beaufort,
            },
        })
    return {"type": "FeatureCollection", "features": features}
