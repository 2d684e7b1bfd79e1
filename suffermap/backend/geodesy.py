"""Great-circle helpers and headwind decomposition.

All angles are degrees. Wind directions use the meteorological convention
(direction the wind blows FROM).
"""
import math
from typing import Tuple

EARTH_RADIUS_M = 6371000.0
EARTH_RADIUS_KM = EARTH_RADIUS_M / 1000.0


def bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial compass bearing from point 1 to point 2, in [0, 360)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)
    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute haversine distance between two lat/lon points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return distance_meters(lat1, lon1, lat2, lon2) / 1000.0


def planar_distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Equirectangular distance in meters; accurate enough between adjacent track points."""
    mean_phi = math.radians((lat1 + lat2) / 2.0)
    dx = math.radians(lon2 - lon1) * math.cos(mean_phi)
    dy = math.radians(lat2 - lat1)
    return EARTH_RADIUS_M * math.hypot(dx, dy)


def smallest_angle_between(a: float, b: float) -> float:
    """Minimal absolute difference between two directions, in [0, 180]."""
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def headwind_component(travel_bearing: float, wind_from_deg: float, wind_speed: float) -> float:
    """Signed wind speed along the direction of travel.

    Positive is a headwind (wind blowing from where the rider is heading),
    negative a tailwind. Units follow `wind_speed`.
    """
    angle = smallest_angle_between(travel_bearing, wind_from_deg)
    return wind_speed * math.cos(math.radians(angle))


def midpoint(lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, float]:
    # Linear midpoint; segments are short enough that the great-circle midpoint is not needed
    return (lat1 + lat2) / 2.0, (lon1 + lon2) / 2.0
