import math
from typing import Any, Optional, Tuple

EARTH_RADIUS_KM = 6371.0


def _coords(point: Any) -> Optional[Tuple[float, float]]:
    if point is None:
        return None
    if isinstance(point, dict):
        lat, lng = point.get("lat"), point.get("lng")
    else:
        lat, lng = getattr(point, "lat", None), getattr(point, "lng", None)
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def distance_km(a: Any, b: Any) -> float:
    """Great-circle distance in km between two ``{lat, lng}`` points (degrees).

    Returns NaN when either point is missing a coordinate; callers filter it out.
    """
    pa, pb = _coords(a), _coords(b)
    if pa is None or pb is None:
        return math.nan
    lat1, lng1 = map(math.radians, pa)
    lat2, lng2 = map(math.radians, pb)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    h = min(1.0, h)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c
