"""
MongoDB access for the BloodLink API.

``db`` is None until ``DATABASE_URL`` is configured; route handlers receive the
database through ``get_db`` so tests can swap in an in-memory one.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bloodlink")

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None else None


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise ValidationError("Invalid object id")
    return ObjectId(id_str)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    # One inventory line per (hospital, blood group, rh)
    database["inventory"].create_index(
        [("hospital_id", ASCENDING), ("blood_group", ASCENDING), ("rh", ASCENDING)],
        unique=True,
    )
    database["inventorylog"].create_index([("hospital_id", ASCENDING), ("at", DESCENDING)])
    database["match"].create_index([("request_id", ASCENDING), ("run_id", ASCENDING)])
    database["bloodrequest"].create_index([("status", ASCENDING)])
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("role", ASCENDING), ("is_verified", ASCENDING)])
    database["donation"].create_index([("status", ASCENDING)])
    database["donation"].create_index([("donor_id", ASCENDING), ("status", ASCENDING)])
    database["hospital"].create_index([("verified", ASCENDING)])
    logger.info("MongoDB indexes ensured on %s", database.name)
