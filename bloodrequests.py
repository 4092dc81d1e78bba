"""
Blood request lifecycle.

Status only moves forward: open -> fulfilled or open -> cancelled. Closed
requests never reopen. Transitions are written conditionally on the status
that was read, so two racing updates cannot both win.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, oid, serialize, utcnow
from errors import InvalidTransition, NotFound
from inventory import InventoryStore
from schemas import BloodRequest, BloodRequestCreate, HospitalById

logger = logging.getLogger(__name__)

COLLECTION = "bloodrequest"

ALLOWED_TRANSITIONS = {
    "open": {"fulfilled", "cancelled"},
    "fulfilled": set(),
    "cancelled": set(),
}

REQUESTER_FIELDS = {"name": 1, "email": 1, "blood_group": 1}


def populate_requester(db: Database, request: Dict[str, Any]) -> Dict[str, Any]:
    request = serialize(request)
    requester = None
    requester_id = request.get("requester_id")
    if requester_id:
        requester = db["user"].find_one({"_id": oid(requester_id)}, REQUESTER_FIELDS)
    request["requester"] = serialize(requester)
    return request


def load_request(db: Database, request_id: str) -> Dict[str, Any]:
    request = db[COLLECTION].find_one({"_id": oid(request_id)})
    if not request:
        raise NotFound("Request not found")
    return request


def create_request(db: Database, requester_id: str, payload: BloodRequestCreate) -> Dict[str, Any]:
    hospital_name = "Unknown Facility"
    if isinstance(payload.hospital, HospitalById):
        hospital = db["hospital"].find_one({"_id": oid(payload.hospital.id)})
        if not hospital:
            raise NotFound("Hospital not found")
        hospital_name = hospital.get("name") or hospital_name
    elif payload.hospital is not None:
        hospital_name = payload.hospital.name

    doc = BloodRequest(
        requester_id=requester_id,
        blood_type=payload.blood_type,
        units=payload.units,
        location=payload.location,
        hospital=payload.hospital,
        hospital_name=hospital_name,
        urgency=payload.urgency,
        patient_name=payload.patient_name or "Anonymous",
        contact=payload.contact or "N/A",
        notes=payload.notes or "",
    )
    request_id = create_document(db, COLLECTION, doc)
    logger.info("Blood request %s opened for %d unit(s) of %s", request_id, doc.units, doc.blood_type)
    return get_request(db, request_id)


def get_request(db: Database, request_id: str) -> Dict[str, Any]:
    return populate_requester(db, load_request(db, request_id))


def list_requests(db: Database, status: Optional[str] = None) -> List[Dict[str, Any]]:
    q: Dict[str, Any] = {}
    if status:
        q["status"] = status
    docs = db[COLLECTION].find(q).sort([("created_at", -1), ("_id", -1)])
    return [populate_requester(db, d) for d in docs]


def change_status(db: Database, request_id: str, new_status: str) -> Dict[str, Any]:
    request = load_request(db, request_id)
    current = request.get("status", "open")
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot change request status from {current} to {new_status}")

    res = db[COLLECTION].update_one(
        {"_id": request["_id"], "status": current},
        {"$set": {"status": new_status, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise InvalidTransition("Request status changed concurrently")
    logger.info("Blood request %s moved %s -> %s", request_id, current, new_status)
    return get_request(db, request_id)


def fulfill(db: Database, request_id: str, hospital_id: str, units: int) -> Dict[str, Any]:
    """Take ``units`` of the requested type from the hospital's stock and close the request."""
    request = load_request(db, request_id)
    if request.get("status") != "open":
        raise InvalidTransition(f"Cannot fulfill a {request.get('status')} request")

    blood_type = request["blood_type"]
    blood_group, rh = blood_type[:-1], blood_type[-1]
    store = InventoryStore(db)
    store.adjust(hospital_id, blood_group, rh, -units)

    try:
        return change_status(db, request_id, "fulfilled")
    except InvalidTransition:
        # someone closed the request after the check above; return the stock
        store.adjust(hospital_id, blood_group, rh, units)
        raise
