"""Per-segment difficulty ("suffer") scoring.

A segment's raw suffer is the headwind it faces at the selected hour plus a
penalty for climbing. Raw values are normalised by the route-wide maximum so
the hardest segment scores 1.0.
"""
from __future__ import annotations
import logging
from collections import Counter
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from suffermap.backend.geodesy import bearing, headwind_component, midpoint, planar_distance_meters
from suffermap.backend.route_sampling import Coordinate, Route
from suffermap.backend.weather_openmeteo import HourlyWindEntry, WindSeries

log = logging.getLogger('suffermap.scoring')

CLIMB_PENALTY_PER_GRADE = 600.0
MAX_ABS_GRADE = 0.5
MIN_GRADE_DISTANCE_M = 0.1
EDGE_PRECISION = 5
EPSILON = 1e-9

EdgeKey = Tuple[Tuple[float, float], Tuple[float, float]]


@dataclass(frozen=True)
class SegmentScore:
    index: int
    start: Coordinate
    end: Coordinate
    bearing_deg: float
    headwind_kmh: float
    grade: float
    climb_penalty: float
    suffer_raw: float
    score: float
    pass_index: int
    shared_edge: bool

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['start'] = [self.start.lon, self.start.lat]
        d['end'] = [self.end.lon, self.end.lat]
        return d


def edge_key(a: Coordinate, b: Coordinate) -> EdgeKey:
    """Direction-independent identity of the edge between two points."""
    pa = (round(a.lon, EDGE_PRECISION), round(a.lat, EDGE_PRECISION))
    pb = (round(b.lon, EDGE_PRECISION), round(b.lat, EDGE_PRECISION))
    return (pa, pb) if pa <= pb else (pb, pa)


def pass_indices(coords: Sequence[Coordinate]) -> Tuple[List[int], List[bool]]:
    """Mark repeat traversals of the same edge (out-and-back sections).

    Returns (pass_index, shared) per segment: pass_index is 0 for the first
    traversal of an edge and 1 for any later one.
    """
    keys = [edge_key(coords[i], coords[i + 1]) for i in range(len(coords) - 1)]
    counts = Counter(keys)
    seen = set()
    passes: List[int] = []
    shared: List[bool] = []
    for k in keys:
        repeated = counts[k] > 1
        shared.append(repeated)
        passes.append(1 if repeated and k in seen else 0)
        seen.add(k)
    return passes, shared


def _nearest_index(lats: np.ndarray, lons: np.ndarray, lat: float, lon: float) -> int:
    # Squared degree distance; fine at route scale
    d2 = (lats - lat) ** 2 + (lons - lon) ** 2
    return int(np.argmin(d2))


def _wind_at(series: Optional[WindSeries], hour_index: int) -> Optional[HourlyWindEntry]:
    if not series or not (0 <= hour_index < len(series)):
        return None
    return series[hour_index]


def _grade(lat1: float, lon1: float, lat2: float, lon2: float, e1: float, e2: float) -> float:
    dist = planar_distance_meters(lat1, lon1, lat2, lon2)
    if dist <= MIN_GRADE_DISTANCE_M:
        return 0.0
    g = (e2 - e1) / dist
    return max(-MAX_ABS_GRADE, min(MAX_ABS_GRADE, g))


def score_route(
    route: Union[Route, Sequence[Coordinate]],
    sample_points: Sequence[Coordinate],
    wind_series_per_sample: Sequence[Optional[WindSeries]],
    hour_index: int,
    elevation_profile: Optional[Sequence[float]] = None,
    include_elevation: bool = True,
    include_wind: bool = True,
) -> List[SegmentScore]:
    """Score every segment of a route for the given hour.

    `wind_series_per_sample` is aligned with `sample_points`; a None slot (or a
    missing hour) means no wind contribution for segments nearest to it. The
    elevation profile is used only when it has one value per route point.
    Output is deterministic for identical inputs.
    """
    coords = list(route.coordinates) if isinstance(route, Route) else [Coordinate(*c) for c in route]
    if len(coords) < 2:
        return []
    if len(wind_series_per_sample) != len(sample_points):
        raise ValueError('wind_series_per_sample must align with sample_points')

    elev = list(elevation_profile) if elevation_profile is not None else []
    use_elev = include_elevation and len(elev) == len(coords)
    use_wind = include_wind and len(sample_points) > 0
    if use_wind:
        s_lats = np.array([p.lat for p in sample_points], dtype=float)
        s_lons = np.array([p.lon for p in sample_points], dtype=float)

    passes, shared = pass_indices(coords)
    rows = []
    for i in range(len(coords) - 1):
        a, b = coords[i], coords[i + 1]
        brg = bearing(a.lat, a.lon, b.lat, b.lon)

        headwind = 0.0
        if use_wind:
            mlat, mlon = midpoint(a.lat, a.lon, b.lat, b.lon)
            j = _nearest_index(s_lats, s_lons, mlat, mlon)
            entry = _wind_at(wind_series_per_sample[j], hour_index)
            if entry is not None:
                # Tailwind does not make a segment easier than calm
                headwind = max(0.0, headwind_component(brg, entry.direction_deg, entry.speed_kmh))

        grade = 0.0
        penalty = 0.0
        if use_elev:
            grade = _grade(a.lat, a.lon, b.lat, b.lon, float(elev[i]), float(elev[i + 1]))
            if grade > 0:
                penalty = CLIMB_PENALTY_PER_GRADE * grade

        rows.append((brg, headwind, grade, penalty, headwind + penalty))

    raw = np.array([r[4] for r in rows], dtype=float)
    denom = max(float(raw.max()), EPSILON)
    out: List[SegmentScore] = []
    for i, (brg, headwind, grade, penalty, suffer) in enumerate(rows):
        out.append(SegmentScore(
            index=i,
            start=coords[i],
            end=coords[i + 1],
            bearing_deg=brg,
            headwind_kmh=headwind,
            grade=grade,
            climb_penalty=penalty,
            suffer_raw=suffer,
            score=suffer / denom,
            pass_index=passes[i],
            shared_edge=shared[i],
        ))
    log.info('[SCORE] segments=%d max_suffer=%.2f wind=%s elevation=%s', len(out), float(raw.max()), use_wind, use_elev)
    return out


def segments_geojson(scores: Sequence[SegmentScore]) -> Dict[str, Any]:
    """FeatureCollection with one LineString per scored segment."""
    features = []
    for s in scores:
        features.append({
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": [[s.start.lon, s.start.lat], [s.end.lon, s.end.lat]]},
            "properties": {
                "index": s.index,
                "score": s.score,
                "suffer_raw": s.suffer_raw,
                "headwind_kmh": s.headwind_kmh,
                "grade": s.grade,
                "pass_index": s.pass_index,
                "shared_edge": s.shared_edge,
            },
        })
    return {"type": "FeatureCollection", "features": features}
