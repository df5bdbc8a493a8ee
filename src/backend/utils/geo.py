"""Great-circle helpers shared by the signal store and the flight analyzer."""

import math

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE_LAT = 111320.0

# Great-circle metres per degree of arc on the haversine sphere
_ARC_METERS_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180
# Bounding boxes are oversized slightly; callers filter by exact distance
_BOX_MARGIN = 1.001


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def meters_per_degree_lon(lat: float) -> float:
    """Length of one degree of longitude at ``lat``, never below a millimetre."""
    return max(METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)), 1e-3)


def degree_offsets(lat: float, radius_m: float) -> tuple[float, float]:
    """
    (lat, lon) half-extents in degrees of a box enclosing a ``radius_m`` circle.

    The longitude extent is taken at the box edge farthest from the equator,
    where a degree of longitude is shortest. Wrapping across the antimeridian
    is not handled.
    """
    lat_range = radius_m / _ARC_METERS_PER_DEGREE * _BOX_MARGIN
    extreme_lat = min(90.0, abs(lat) + lat_range)
    lon_meters = max(_ARC_METERS_PER_DEGREE * math.cos(math.radians(extreme_lat)), 1e-3)
    return lat_range, radius_m / lon_meters * _BOX_MARGIN
