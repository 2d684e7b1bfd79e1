import math
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Tuple, Dict, Any, NamedTuple, Optional, Union

import gpxpy
from gpxpy.gpx import GPX, GPXException

from suffermap.backend.geodesy import haversine_km

log = logging.getLogger('suffermap.route')


class Coordinate(NamedTuple):
    lon: float
    lat: float


class RouteParseError(ValueError):
    """Raised when an uploaded track cannot be turned into a route."""
    kind = 'parse_error'


class InvalidFormat(RouteParseError):
    kind = 'invalid_format'


class NoPoints(RouteParseError):
    kind = 'no_points'


class InsufficientPoints(RouteParseError):
    kind = 'insufficient_points'


@dataclass(frozen=True)
class Route:
    """Ordered, immutable route. `elevations` is empty or aligned with `coordinates`."""
    coordinates: Tuple[Coordinate, ...]
    elevations: Tuple[float, ...] = field(default_factory=tuple)
    name: Optional[str] = None

    def __len__(self) -> int:
        return len(self.coordinates)

    @property
    def has_elevation(self) -> bool:
        return len(self.elevations) == len(self.coordinates) and len(self.coordinates) > 0


def _is_finite(v: Any) -> bool:
    try:
        return v is not None and math.isfinite(float(v))
    except (TypeError, ValueError):
        return False


def _local_name(tag: Any) -> str:
    return tag.rsplit('}', 1)[-1] if isinstance(tag, str) else ''


def _drop_unparseable_points(text: str) -> Tuple[str, int]:
    """Remove trkpt/rtept elements whose lat or lon is not a finite number.

    gpxpy rejects the whole document on a single bad coordinate, so those
    points are cut out first. The text is returned untouched when nothing
    was removed.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise InvalidFormat(f'Could not parse GPX document: {e}') from e

    bad = [
        (parent, child)
        for parent in root.iter()
        for child in parent
        if _local_name(child.tag) in ('trkpt', 'rtept')
        and not (_is_finite(child.get('lat')) and _is_finite(child.get('lon')))
    ]
    if not bad:
        return text, 0
    for parent, child in bad:
        parent.remove(child)

    # gpxpy looks elements up without the default GPX namespace
    if root.tag.startswith('{'):
        prefix = root.tag.split('}', 1)[0] + '}'
        for el in root.iter():
            if isinstance(el.tag, str) and el.tag.startswith(prefix):
                el.tag = el.tag[len(prefix):]
    return ET.tostring(root, encoding='unicode'), len(bad)


def _longest_track(gpx: GPX) -> Tuple[list, Optional[str]]:
    """Return points and name of the track with the most points (first wins on ties)."""
    best: list = []
    name = None
    for track in gpx.tracks:
        pts = [p for seg in track.segments for p in seg.points]
        if len(pts) > len(best):
            best, name = pts, track.name
    if len(gpx.tracks) > 1:
        log.info('[ROUTE] %d tracks in file; keeping longest with %d points', len(gpx.tracks), len(best))
    return best, name


def _longest_route(gpx: GPX) -> Tuple[list, Optional[str]]:
    best: list = []
    name = None
    for rte in gpx.routes:
        if len(rte.points) > len(best):
            best, name = list(rte.points), rte.name
    return best, name


def parse_route(raw: Union[str, bytes]) -> Route:
    """Parse GPX text into a Route.

    Track points are preferred; route points are used only when the file has no
    track points at all. Points with non-finite coordinates are dropped.
    """
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    raw, dropped = _drop_unparseable_points(raw)
    try:
        gpx: GPX = gpxpy.parse(raw)
    except (GPXException, ValueError) as e:
        raise InvalidFormat(f'Could not parse GPX document: {e}') from e

    points, name = _longest_track(gpx)
    if not points:
        points, name = _longest_route(gpx)
    if not points:
        raise NoPoints('GPX contains no track or route points')

    coords: List[Coordinate] = []
    elevations: List[Optional[float]] = []
    for p in points:
        if not (_is_finite(p.latitude) and _is_finite(p.longitude)):
            dropped += 1
            continue
        coords.append(Coordinate(float(p.longitude), float(p.latitude)))
        elevations.append(float(p.elevation) if _is_finite(p.elevation) else None)
    if dropped:
        log.warning('[ROUTE] dropped %d points with invalid coordinates', dropped)

    if len(coords) < 2:
        raise InsufficientPoints(f'GPX must contain at least two valid points (found {len(coords)})')

    # Elevation is only usable when every kept point carries one
    elev: Tuple[float, ...] = ()
    if all(e is not None for e in elevations):
        elev = tuple(elevations)  # type: ignore[arg-type]
    log.info('[ROUTE] parsed %d points elevation=%s', len(coords), 'yes' if elev else 'no')
    return Route(coordinates=tuple(coords), elevations=elev, name=name)


def load_gpx(gpx_path: str) -> Route:
    """Load GPX file from disk and return its Route."""
    with open(gpx_path, 'r', encoding='utf-8') as f:
        return parse_route(f.read())


def sample_route(route: Route, step_km: float = 5.0) -> List[Coordinate]:
    """Return points every `step_km` along the route, including both ends.

    These are the locations at which wind is fetched for scoring.
    """
    if step_km <= 0:
        raise ValueError('step_km must be > 0')
    coords = route.coordinates
    if not coords:
        return []

    sampled: List[Coordinate] = [coords[0]]
    accumulated = 0.0
    next_mark = step_km
    for i in range(1, len(coords)):
        lon1, lat1 = coords[i - 1]
        lon2, lat2 = coords[i]
        seg_km = haversine_km(lat1, lon1, lat2, lon2)
        if seg_km <= 0:
            continue
        while next_mark <= accumulated + seg_km:
            # proportion along segment
            t = max(0.0, min(1.0, (next_mark - accumulated) / seg_km))
            sampled.append(Coordinate(lon1 + (lon2 - lon1) * t, lat1 + (lat2 - lat1) * t))
            next_mark += step_km
        accumulated += seg_km

    # Ensure last point included
    if sampled[-1] != coords[-1]:
        sampled.append(coords[-1])

    unique: List[Coordinate] = []
    seen = set()
    for c in sampled:
        k = (round(c.lat, 4), round(c.lon, 4))
        if k in seen:
            continue
        seen.add(k)
        unique.append(c)
    return unique


def route_summary(route: Route) -> Dict[str, Any]:
    """Total distance and cumulative climb of a route."""
    coords = route.coordinates
    total_km = 0.0
    for i in range(1, len(coords)):
        total_km += haversine_km(coords[i - 1].lat, coords[i - 1].lon, coords[i].lat, coords[i].lon)
    gain = 0.0
    if route.has_elevation:
        for i in range(1, len(route.elevations)):
            delta = route.elevations[i] - route.elevations[i - 1]
            if delta > 0:
                gain += delta
    return {
        "distance_km": total_km,
        "elevation_gain_m": gain,
        "points": len(coords),
        "name": route.name,
    }


def route_feature(route: Route) -> Dict[str, Any]:
    """Route as a GeoJSON Feature with LineString geometry."""
    line_coords = [[c.lon, c.lat] for c in route.coordinates]
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": line_coords},
        "properties": {"name": route.name},
    }
