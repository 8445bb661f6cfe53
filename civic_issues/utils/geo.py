import math
from typing import Sequence

from civic_issues.core.errors import InvalidCoordinates

EARTH_RADIUS_M = 6371000
DUPLICATE_DECAY_RADIUS_M = 100.0


def validate_coordinates(longitude: float, latitude: float) -> None:
    """Raise InvalidCoordinates unless both values are finite and in range."""
    try:
        lon = float(longitude)
        lat = float(latitude)
    except (TypeError, ValueError):
        raise InvalidCoordinates(longitude, latitude)
    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise InvalidCoordinates(longitude, latitude)
    if not (-180 <= lon <= 180 and -90 <= lat <= 90):
        raise InvalidCoordinates(longitude, latitude)


def haversine_distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance in meters between two (longitude, latitude) points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)
    a = math.sin(delta_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2.0) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_between(coords1: Sequence[float], coords2: Sequence[float]) -> float:
    """Distance in meters between two [longitude, latitude] pairs."""
    return haversine_distance(coords1[0], coords1[1], coords2[0], coords2[1])


def location_similarity(distance_m: float, radius_m: float = DUPLICATE_DECAY_RADIUS_M) -> float:
    """1.0 at the same spot, decaying linearly to 0.0 at radius_m and beyond."""
    return max(0.0, 1.0 - (distance_m / radius_m))
