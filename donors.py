import math
from typing import Any, Dict, List, Optional, Union

from pymongo.database import Database

from errors import ValidationError
from geo import distance_km
from schemas import BLOOD_GROUPS, RH_FACTORS

DEFAULT_RADIUS_KM = 25.0


def blood_type_filter(blood_group: Optional[str], rh: Optional[str] = None) -> Union[None, str, Dict[str, Any]]:
    """Mongo filter value for ``blood_group``; a bare group matches both Rh variants.

    An unencoded ``+`` in a query string arrives as a space, so ``" "`` reads as ``+``.
    """
    if not blood_group:
        return None
    if blood_group not in BLOOD_GROUPS:
        raise ValidationError("Invalid blood_group")
    if rh == " ":
        rh = "+"
    if not rh:
        return {"$in": [f"{blood_group}{r}" for r in RH_FACTORS]}
    if rh not in RH_FACTORS:
        raise ValidationError("Invalid rh")
    return f"{blood_group}{rh}"


def find_nearby(db: Database, origin: Dict[str, float], radius_km: Optional[float] = None,
                blood_group: Optional[str] = None, rh: Optional[str] = None) -> List[Dict[str, Any]]:
    """Verified donors within ``radius_km`` of ``origin``, closest first.

    Equal distances are ordered by donor id so results are deterministic.
    """
    radius = radius_km or DEFAULT_RADIUS_KM
    query: Dict[str, Any] = {
        "role": "donor",
        "is_verified": True,
        "location.lat": {"$ne": None},
        "location.lng": {"$ne": None},
    }
    bt = blood_type_filter(blood_group, rh)
    if bt is not None:
        query["blood_group"] = bt

    projection = {"name": 1, "email": 1, "phone": 1, "blood_group": 1, "location": 1}
    nearby = []
    for donor in db["user"].find(query, projection):
        dist = distance_km(origin, donor.get("location"))
        if math.isnan(dist) or dist > radius:
            continue
        nearby.append({
            "id": str(donor["_id"]),
            "name": donor.get("name"),
            "email": donor.get("email"),
            "phone": donor.get("phone"),
            "blood_group": donor.get("blood_group"),
            "location": donor.get("location"),
            "distance_km": dist,
        })
    nearby.sort(key=lambda d: (d["distance_km"], d["id"]))
    return nearby
