"""
Donation records.

A donor records a donation, which stays ``pending`` until an admin or the
receiving hospital settles it as ``completed`` (verified) or ``cancelled``.
Settled donations are final.
"""

import logging
from typing import Any, Dict, List

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, oid, serialize, utcnow
from errors import InvalidTransition, NotFound
from schemas import Donation, DonationCreate, HospitalById

logger = logging.getLogger(__name__)

COLLECTION = "donation"

DONOR_FIELDS = {"name": 1, "email": 1, "blood_group": 1}
HOSPITAL_FIELDS = {"name": 1, "address": 1}


def populate(db: Database, donation: Dict[str, Any]) -> Dict[str, Any]:
    donation = serialize(donation)
    donor = db["user"].find_one({"_id": oid(donation["donor_id"])}, DONOR_FIELDS)
    donation["donor"] = serialize(donor)
    hospital = None
    if donation.get("hospital_id"):
        hospital = db["hospital"].find_one({"_id": oid(donation["hospital_id"])}, HOSPITAL_FIELDS)
    donation["hospital"] = serialize(hospital)
    return donation


def load_donation(db: Database, donation_id: str) -> Dict[str, Any]:
    donation = db[COLLECTION].find_one({"_id": oid(donation_id)})
    if not donation:
        raise NotFound("Donation not found")
    return donation


def record_donation(db: Database, donor_id: str, payload: DonationCreate) -> Dict[str, Any]:
    hospital_id, hospital_name = None, None
    if isinstance(payload.hospital, HospitalById):
        hospital = db["hospital"].find_one({"_id": oid(payload.hospital.id)})
        if not hospital:
            raise NotFound("Hospital not found")
        hospital_id, hospital_name = str(hospital["_id"]), hospital.get("name")
    elif payload.hospital is not None:
        hospital_name = payload.hospital.name.strip()

    doc = Donation(
        donor_id=donor_id,
        hospital_id=hospital_id,
        hospital_name=hospital_name,
        date=utcnow(),
        units=payload.units,
        location=(payload.location or "").strip() or "Not specified",
    )
    donation_id = create_document(db, COLLECTION, doc)
    logger.info("Donation %s of %d unit(s) recorded by donor %s", donation_id, doc.units, donor_id)
    return populate(db, load_donation(db, donation_id))


def donation_history(db: Database, donor_id: str) -> List[Dict[str, Any]]:
    docs = db[COLLECTION].find({"donor_id": donor_id}).sort([("date", -1), ("_id", -1)])
    return [populate(db, d) for d in docs]


def pending_donations(db: Database) -> List[Dict[str, Any]]:
    docs = db[COLLECTION].find({"status": "pending"}).sort([("created_at", -1), ("_id", -1)])
    return [populate(db, d) for d in docs]


def settle_donation(db: Database, donation_id: str, verifier_id: str, verify: bool = True) -> Dict[str, Any]:
    """Mark a pending donation completed (``verify``) or cancelled."""
    status = "completed" if verify else "cancelled"
    now = utcnow()
    updated = db[COLLECTION].find_one_and_update(
        {"_id": oid(donation_id), "status": "pending"},
        {"$set": {
            "status": status,
            "verified": verify,
            "verified_by": verifier_id,
            "verified_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = load_donation(db, donation_id)
        raise InvalidTransition(f"Cannot settle a {current.get('status')} donation")
    logger.info("Donation %s marked %s by %s", donation_id, status, verifier_id)
    return populate(db, updated)
