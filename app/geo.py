"""Geofence utilities (great-circle distance on a spherical earth).

GPS readings are taken from the requesting device as-is; nothing here
attests that a coordinate is genuine.
"""
from math import atan2, cos, radians, sin, sqrt
from typing import Optional, Tuple

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance between two points in meters."""
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def within_radius(distance_m: float, radius_m: float) -> bool:
    """A point exactly on the boundary is inside."""
    return distance_m <= radius_m


def relaxed_radius(radius_m: float, tolerance: float) -> float:
    """
    Widen a radius by a relative tolerance (0.5 → +50%).

    Used for presence re-checks during a live class, where GPS drift is
    expected.
    """
    return float(radius_m) * (1.0 + float(tolerance))


def check_point_in_geofence(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> Tuple[bool, float]:
    """
    Check if a point lies within radius_m meters of the geofence center.

    Returns (inside, distance_m) so callers can surface the measured
    distance when the check fails.
    """
    distance = haversine_m(lat, lon, center_lat, center_lon)
    return within_radius(distance, radius_m), distance


def session_geofence(session) -> Optional[Tuple[float, float, float]]:
    """(center_lat, center_lon, radius_m) for a session that requires location."""
    if not session.location_required:
        return None
    return (
        float(session.classroom_latitude),
        float(session.classroom_longitude),
        float(session.geofence_radius_meters),
    )
