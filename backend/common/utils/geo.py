"""
Geographic utility functions.

Great-circle distance and a cheap bounding box used to pre-filter driver
positions in SQL before the exact distance check.
"""

from math import radians, degrees, cos, sin, asin, sqrt
from typing import Tuple

EARTH_RADIUS_METERS = 6371000


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return c * EARTH_RADIUS_METERS


def bounding_box(lat: float, lon: float, radius_meters: float) -> Tuple[float, float, float, float]:
    """
    Return (min_lat, max_lat, min_lon, max_lon) enclosing a circle of radius_meters.

    The box is always at least as large as the circle; callers still need the
    exact haversine check. When the circle crosses the antimeridian the box
    spans every longitude.
    """
    lat = float(lat)
    lon = float(lon)
    angular = radius_meters / EARTH_RADIUS_METERS

    dlat = degrees(angular)
    min_lat = max(lat - dlat, -90.0)
    max_lat = min(lat + dlat, 90.0)

    # Near the poles every longitude is in range
    cos_lat = cos(radians(lat))
    if cos_lat < 1e-6 or max_lat >= 90.0 or min_lat <= -90.0:
        return min_lat, max_lat, -180.0, 180.0

    dlon = degrees(angular / cos_lat)
    min_lon = lon - dlon
    max_lon = lon + dlon
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, min_lon, max_lon
