"""
Great-circle helpers.
"""
import math
from typing import Iterable, Optional, Tuple

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres, rounded to the millimetre."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 6)


def nearest(lat: float, lon: float,
            points: Iterable[Tuple[str, float, float]]) -> Optional[Tuple[str, float]]:
    """Closest (key, distance_km) among (key, lat, lon) points."""
    best = None
    for key, plat, plon in points:
        distance = haversine_km(lat, lon, plat, plon)
        if best is None or distance < best[1]:
            best = (key, distance)
    return best
