"""
Request-to-donor matching.

A run ranks verified donors of exactly the requested blood type by distance
from the request and stores them as ``match`` rows tagged with the run id.
The request's ``match_run_id`` is switched to the new run before the older
rows are removed, so readers only ever see one complete run. A run only
deletes the rows of the run it switched away from, which keeps overlapping
runs from wiping out each other's result.
"""

import logging
import math
from datetime import timedelta
from typing import Any, Dict, List

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import oid, serialize, utcnow
from errors import NotFound
from geo import distance_km
from schemas import Match

logger = logging.getLogger(__name__)

MATCH_RADIUS_KM = 50.0
UNITS_PER_DONOR = 1
ABANDONED_RUN_AGE = timedelta(minutes=10)


def score_for(distance: float) -> float:
    return 1 / (1 + distance)


class RequestMatcher:

    def __init__(self, db: Database, max_reads: int = 3):
        self.db = db
        self.matches = db["match"]
        self.max_reads = max_reads

    def _load_request(self, request_id: str) -> Dict[str, Any]:
        request = self.db["bloodrequest"].find_one({"_id": oid(request_id)})
        if not request:
            raise NotFound("Request not found")
        return request

    def candidates(self, request: Dict[str, Any]) -> List[Dict[str, Any]]:
        # Strict type equality: no universal-donor compatibility
        return list(self.db["user"].find(
            {"role": "donor", "is_verified": True, "blood_group": request.get("blood_type")},
            {"password_hash": 0},
        ))

    def run(self, request_id: str) -> List[Dict[str, Any]]:
        request = self._load_request(request_id)
        request_key = str(request["_id"])
        origin = request.get("location")

        ranked = []
        for donor in self.candidates(request):
            if not donor.get("location"):
                continue
            dist = distance_km(origin, donor["location"])
            if math.isnan(dist) or dist > MATCH_RADIUS_KM:
                continue
            ranked.append((dist, str(donor["_id"])))
        ranked.sort()

        run_id = str(ObjectId())
        now = utcnow()
        docs = [
            Match(
                request_id=request_key,
                donor_id=donor_id,
                run_id=run_id,
                distance_km=dist,
                score=score_for(dist),
                units_available=UNITS_PER_DONOR,
                created_at=now,
            ).model_dump()
            for dist, donor_id in ranked
        ]
        if docs:
            self.matches.insert_many(docs)
        previous = self.db["bloodrequest"].find_one_and_update(
            {"_id": request["_id"]},
            {"$set": {"match_run_id": run_id, "matched_at": now}},
            projection={"match_run_id": 1},
            return_document=ReturnDocument.BEFORE,
        )
        removed = 0
        previous_run = (previous or {}).get("match_run_id")
        if previous_run and previous_run != run_id:
            removed += self.matches.delete_many({"request_id": request_key, "run_id": previous_run}).deleted_count
        removed += self._sweep_abandoned(request, run_id, now)

        logger.info("Matched request %s with %d donors (replaced %d)", request_key, len(docs), removed)
        return [serialize(d) for d in docs]

    def _sweep_abandoned(self, request: Dict[str, Any], run_id: str, now) -> int:
        # Rows of runs that never got switched in. Recent ones may belong to a
        # run that is still about to switch, so only old rows go.
        current = self.db["bloodrequest"].find_one({"_id": request["_id"]}, {"match_run_id": 1}) or {}
        keep = [r for r in (run_id, current.get("match_run_id")) if r]
        return self.matches.delete_many({
            "request_id": str(request["_id"]),
            "run_id": {"$nin": keep},
            "created_at": {"$lt": now - ABANDONED_RUN_AGE},
        }).deleted_count

    def get(self, request_id: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for _ in range(self.max_reads):
            request = self._load_request(request_id)
            run_id = request.get("match_run_id")
            if not run_id:
                return []
            rows = [
                serialize(d) for d in self.matches
                .find({"request_id": str(request["_id"]), "run_id": run_id})
                .sort([("score", -1), ("donor_id", 1)])
            ]
            if rows:
                break
            # empty because the run matched nobody, or because a newer run replaced it meanwhile
            if self._load_request(request_id).get("match_run_id") == run_id:
                break

        donor_ids = [oid(r["donor_id"]) for r in rows]
        donors = {
            str(d["_id"]): serialize(d)
            for d in self.db["user"].find(
                {"_id": {"$in": donor_ids}},
                {"name": 1, "email": 1, "blood_group": 1, "location": 1},
            )
        }
        for row in rows:
            row["donor"] = donors.get(row["donor_id"])
        return rows
