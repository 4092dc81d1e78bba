"""
Hospital blood inventory: current stock lines, the audit ledger and the
shelf-life projection.

Stock lines live in the ``inventory`` collection, one per
(hospital_id, blood_group, rh). Every mutation appends one ``inventorylog``
entry per line it touched; the ledger is never updated or deleted.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, oid, serialize, utcnow
from errors import ConcurrencyConflict, InvalidAdjustment, NotFound, ValidationError
from schemas import BLOOD_GROUPS, RH_FACTORS, InventoryLog

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 50
MAX_LOG_LIMIT = 200

SHELF_LIFE_DAYS = 42
CRITICAL_DAYS = 2
WARNING_DAYS = 7


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_line_key(blood_group: Any, rh: Any) -> None:
    if blood_group not in BLOOD_GROUPS:
        raise ValidationError("Invalid blood_group")
    if rh not in RH_FACTORS:
        raise ValidationError("Invalid rh")


def validate_items(items: Iterable[Any]) -> List[Tuple[str, str, int]]:
    """Check a whole replace batch before anything is written."""
    validated = []
    seen = set()
    for item in items:
        if item is None:
            raise ValidationError("Missing item")
        blood_group, rh, units = _field(item, "blood_group"), _field(item, "rh"), _field(item, "units")
        validate_line_key(blood_group, rh)
        if not _is_int(units) or units < 0:
            raise ValidationError("Invalid units (must be >= 0)")
        key = f"{blood_group}{rh}"
        if key in seen:
            raise ValidationError(f"Duplicate entry for {key}")
        seen.add(key)
        validated.append((blood_group, rh, units))
    return validated


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return DEFAULT_LOG_LIMIT
    return min(limit, MAX_LOG_LIMIT)


class InventoryLedger:
    """Append-only audit trail of inventory mutations."""

    def __init__(self, db: Database):
        self.collection_name = "inventorylog"
        self.db = db

    def append(self, hospital_id: str, blood_group: str, rh: str, action: str, delta_units: int,
               previous_units: Optional[int], new_units: int) -> str:
        entry = InventoryLog(
            hospital_id=hospital_id,
            blood_group=blood_group,
            rh=rh,
            action=action,
            delta_units=delta_units,
            previous_units=previous_units,
            new_units=new_units,
            at=utcnow(),
        )
        return create_document(self.db, self.collection_name, entry)

    def list_for_hospital(self, hospital_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        # _id breaks ties between entries written in the same millisecond
        cursor = (
            self.db[self.collection_name]
            .find({"hospital_id": hospital_id})
            .sort([("at", -1), ("_id", -1)])
            .limit(clamp_limit(limit))
        )
        return [serialize(d) for d in cursor]


class InventoryStore:
    """Authoritative current stock per (hospital, blood group, rh)."""

    def __init__(self, db: Database, max_retries: int = 5):
        self.db = db
        self.lines = db["inventory"]
        self.ledger = InventoryLedger(db)
        self.max_retries = max_retries

    def require_hospital(self, hospital_id: str) -> Dict[str, Any]:
        hospital = self.db["hospital"].find_one({"_id": oid(hospital_id)})
        if not hospital:
            raise NotFound("Hospital not found")
        return hospital

    def list(self, hospital_id: str) -> List[Dict[str, Any]]:
        cursor = self.lines.find({"hospital_id": hospital_id}).sort([("blood_group", 1), ("rh", 1)])
        return [serialize(d) for d in cursor]

    def replace_all(self, hospital_id: str, items: Iterable[Any]) -> List[Dict[str, Any]]:
        validated = validate_items(items)
        self.require_hospital(hospital_id)

        # Upsert first, then prune, so the hospital never reads as empty mid-replace.
        # Bumping version makes in-flight adjusts retry against the new totals.
        now = utcnow()
        # only lines that existed before this replace, at the version seen, may be pruned
        seen = {
            (d.get("blood_group"), d.get("rh")): (d["_id"], d.get("version"))
            for d in self.lines.find({"hospital_id": hospital_id})
        }
        keep = set()
        for blood_group, rh, units in validated:
            self.lines.update_one(
                {"hospital_id": hospital_id, "blood_group": blood_group, "rh": rh},
                {
                    "$set": {"units": units, "updated_at": now},
                    "$inc": {"version": 1},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
            )
            keep.add((blood_group, rh))

        # A line created or adjusted by someone else since the read above is
        # newer than this replace and keeps its ledger history, so it stays.
        removed = 0
        for key, (line_id, version) in seen.items():
            if key in keep:
                continue
            result = self.lines.delete_one({"_id": line_id, "version": version})
            if result.deleted_count == 0:
                logger.warning("Inventory line %s%s for hospital %s changed during replace, keeping it",
                               key[0], key[1], hospital_id)
            removed += result.deleted_count

        for blood_group, rh, units in validated:
            self.ledger.append(hospital_id, blood_group, rh, "replace", units, None, units)

        logger.info("Replaced inventory for hospital %s with %d lines (%d removed)",
                    hospital_id, len(validated), removed)
        return self.list(hospital_id)

    def adjust(self, hospital_id: str, blood_group: str, rh: str, delta_units: int) -> Dict[str, Any]:
        validate_line_key(blood_group, rh)
        if not _is_int(delta_units):
            raise ValidationError("delta_units must be an integer")
        self.require_hospital(hospital_id)

        key = {"hospital_id": hospital_id, "blood_group": blood_group, "rh": rh}
        for attempt in range(self.max_retries):
            current = self.lines.find_one(key)
            now = utcnow()

            if current is None:
                if delta_units < 0:
                    raise InvalidAdjustment("Cannot create item with negative units")
                line = dict(key, units=delta_units, version=1, created_at=now, updated_at=now)
                try:
                    self.lines.insert_one(line)
                except DuplicateKeyError:
                    logger.warning("Inventory line %s%s for hospital %s created concurrently, retrying",
                                   blood_group, rh, hospital_id)
                    continue
                self.ledger.append(hospital_id, blood_group, rh, "adjust", delta_units, 0, delta_units)
                logger.info("Created inventory line %s%s for hospital %s with %d units",
                            blood_group, rh, hospital_id, delta_units)
                return serialize(line)

            previous_units = current.get("units") or 0
            next_units = previous_units + delta_units
            if next_units < 0:
                raise InvalidAdjustment("Resulting units would be negative")

            version = current.get("version")
            result = self.lines.update_one(
                {"_id": current["_id"], "version": version},
                {"$set": {"units": next_units, "updated_at": now}, "$inc": {"version": 1}},
            )
            if result.matched_count == 0:
                logger.warning("Lost update race on inventory line %s%s for hospital %s (attempt %d)",
                               blood_group, rh, hospital_id, attempt + 1)
                continue

            self.ledger.append(hospital_id, blood_group, rh, "adjust", delta_units, previous_units, next_units)
            logger.info("Adjusted inventory %s%s for hospital %s: %d -> %d",
                        blood_group, rh, hospital_id, previous_units, next_units)
            return serialize(dict(current, units=next_units, updated_at=now, version=(version or 0) + 1))

        raise ConcurrencyConflict("Inventory changed concurrently, retry with fresh state")


def project_expiry(lines: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Synthetic shelf-life view: every unit of a line expires SHELF_LIFE_DAYS after its last update."""
    now = as_utc(now or utcnow())
    projected = []
    for line in lines:
        updated = line.get("updated_at")
        updated = as_utc(updated) if updated else now
        expiry = updated + timedelta(days=SHELF_LIFE_DAYS)
        remaining_days = max(0, math.ceil((expiry - now) / timedelta(days=1)))
        status = "ok"
        if remaining_days <= WARNING_DAYS:
            status = "warning"
        if remaining_days <= CRITICAL_DAYS:
            status = "critical"
        projected.append({
            "blood_group": line.get("blood_group"),
            "rh": line.get("rh"),
            "units": line.get("units", 0),
            "remaining_days": remaining_days,
            "status": status,
            "expiry_date": expiry,
        })
    return projected
