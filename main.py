import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import database
from bloodrequests import change_status, create_request, fulfill, get_request, list_requests
from database import create_document, ensure_indexes, get_db, oid, serialize, utcnow
from donations import donation_history, load_donation, pending_donations, record_donation, settle_donation
from donors import find_nearby
from errors import DomainError, NotFound
from events import RequestEventBus, Subscriber, event_stream
from inventory import InventoryStore, project_expiry
from matching import RequestMatcher
from schemas import (
    BLOOD_TYPE_PATTERN,
    BloodRequestCreate,
    DonationCreate,
    GeoPoint,
    Hospital as HospitalSchema,
    InventoryItem,
    RequestStatus,
    User as UserSchema,
)
from security import (
    Token,
    create_access_token,
    get_current_user,
    get_password_hash,
    require_owner_or_role,
    require_role,
    verify_password,
)

logger = logging.getLogger(__name__)

ADMIN_SECRET_KEY = os.getenv("ADMIN_SECRET_KEY")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
HEARTBEAT_SECONDS = float(os.getenv("STREAM_HEARTBEAT_SECONDS", 30))


# ------------------------------------
# App Setup
# ------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.event_bus = RequestEventBus()
    if database.db is not None:
        ensure_indexes(database.db)
    yield
    app.state.event_bus.close()


app = FastAPI(title="BloodLink API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_event_bus(request: Request) -> RequestEventBus:
    return request.app.state.event_bus


# ------------------------------------
# Payloads
# ------------------------------------
class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str
    role: str = "donor"
    phone: Optional[str] = None
    blood_group: Optional[str] = Field(None, pattern=BLOOD_TYPE_PATTERN)
    location: Optional[GeoPoint] = None
    # Hospital registration (role == "hospital")
    hospital_name: Optional[str] = None
    address: Optional[str] = None


class AdminRegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str
    secret_key: str


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class HospitalPayload(BaseModel):
    name: str
    address: Optional[str] = None
    location: Optional[GeoPoint] = None


class DonorProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    blood_group: Optional[str] = Field(None, pattern=BLOOD_TYPE_PATTERN)
    location: Optional[GeoPoint] = None


class DonorVerificationPayload(BaseModel):
    is_verified: bool


class AdminHospitalPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    address: Optional[str] = None
    location: Optional[GeoPoint] = None

    @field_validator("location", mode="before")
    @classmethod
    def parse_lat_lng(cls, v):
        # "lat,lng" text is accepted; anything unparsable leaves the location unset
        if isinstance(v, str):
            try:
                lat, lng = (float(part) for part in v.split(","))
            except ValueError:
                return None
            return {"lat": lat, "lng": lng}
        return v


class DonationVerificationPayload(BaseModel):
    verify: bool = True


class InventoryAdjustPayload(BaseModel):
    blood_group: str
    rh: str
    delta_units: int


class UpdateStatusPayload(BaseModel):
    status: RequestStatus


class FulfillPayload(BaseModel):
    hospital_id: str
    units: int = Field(..., ge=1)


# ------------------------------------
# Helpers
# ------------------------------------
def load_hospital(db: Database, hospital_id: str) -> Dict[str, Any]:
    hospital = db["hospital"].find_one({"_id": oid(hospital_id)})
    if not hospital:
        raise NotFound("Hospital not found")
    return hospital


def owned_hospital(hospital_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    hospital = load_hospital(db, hospital_id)
    require_owner_or_role(current_user, hospital.get("owner_id"), ["admin"])
    return hospital


def with_owner(db: Database, hospital: Dict[str, Any], fields: Dict[str, int]) -> Dict[str, Any]:
    hospital = serialize(hospital)
    owner = None
    if ObjectId.is_valid(hospital.get("owner_id") or ""):
        owner = db["user"].find_one({"_id": ObjectId(hospital["owner_id"])}, fields)
    hospital["owner"] = serialize(owner)
    return hospital


def register_user(db: Database, user: UserSchema) -> str:
    if db["user"].find_one({"email": user.email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    try:
        return create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")


# ------------------------------------
# Health & Test
# ------------------------------------
@app.get("/")
def read_root():
    return {"message": "BloodLink API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    if database.db is None:
        return response
    response["database_name"] = database.db.name
    try:
        response["collections"] = database.db.list_collection_names()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.exception("Database health check failed")
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ------------------------------------
# Auth & Registration
# ------------------------------------
@app.post("/auth/register", response_model=Token, status_code=201)
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    role = payload.role.lower()
    if role not in ["donor", "hospital"]:
        raise HTTPException(status_code=400, detail="Invalid role")

    user_doc = UserSchema(
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        role=role,
        name=payload.name,
        phone=payload.phone,
        blood_group=payload.blood_group,
        location=payload.location,
    )
    user_id = register_user(db, user_doc)

    if role == "hospital" and payload.hospital_name:
        hospital = HospitalSchema(owner_id=user_id, name=payload.hospital_name, address=payload.address,
                                  location=payload.location)
        hospital_id = create_document(db, "hospital", hospital)
        logger.info("Hospital %s registered for user %s", hospital_id, user_id)

    return Token(access_token=create_access_token(user_id, role))


@app.post("/auth/register-admin", response_model=Token, status_code=201)
def register_admin(payload: AdminRegisterPayload, db: Database = Depends(get_db)):
    if not ADMIN_SECRET_KEY or payload.secret_key != ADMIN_SECRET_KEY:
        raise HTTPException(status_code=403, detail="Invalid Admin Secret Key")
    user_doc = UserSchema(
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        role="admin",
        name=payload.name,
        is_verified=True,
        pending_approval=False,
    )
    user_id = register_user(db, user_doc)
    return Token(access_token=create_access_token(user_id, "admin"))


@app.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    return Token(access_token=create_access_token(str(user["_id"]), user.get("role", "donor")))


@app.get("/me")
def me(current_user=Depends(get_current_user)):
    return current_user


# ------------------------------------
# Hospitals
# ------------------------------------
@app.post("/hospitals", status_code=201)
def create_hospital(payload: HospitalPayload, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["hospital", "admin"])
    hospital = HospitalSchema(owner_id=current_user["_id"], **payload.model_dump())
    hospital_id = create_document(db, "hospital", hospital)
    return serialize(db["hospital"].find_one({"_id": ObjectId(hospital_id)}))


@app.get("/hospitals/me")
def my_hospital(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["hospital", "admin"])
    hospital = db["hospital"].find_one({"owner_id": current_user["_id"]})
    if not hospital:
        raise NotFound("Hospital for this owner not found")
    return serialize(hospital)


@app.get("/hospitals/{hospital_id}")
def get_hospital(hospital_id: str, db: Database = Depends(get_db)):
    return serialize(load_hospital(db, hospital_id))


@app.put("/hospitals/{hospital_id}")
def update_hospital(payload: HospitalPayload, hospital=Depends(owned_hospital), db: Database = Depends(get_db)):
    updates = payload.model_dump() | {"updated_at": utcnow()}
    db["hospital"].update_one({"_id": hospital["_id"]}, {"$set": updates})
    return serialize(db["hospital"].find_one({"_id": hospital["_id"]}))


# ------------------------------------
# Donors
# ------------------------------------
@app.get("/donors/me")
def donor_me(current_user=Depends(get_current_user)):
    require_role(current_user, ["donor"])
    return current_user


@app.put("/donors/me")
def update_donor_me(payload: DonorProfileUpdate, current_user=Depends(get_current_user),
                    db: Database = Depends(get_db)):
    require_role(current_user, ["donor"])
    updates = payload.model_dump(exclude_unset=True)
    if updates:
        updates["updated_at"] = utcnow()
        db["user"].update_one({"_id": ObjectId(current_user["_id"])}, {"$set": updates})
    return serialize(db["user"].find_one({"_id": ObjectId(current_user["_id"])}, {"password_hash": 0}))


@app.get("/donors/nearby")
def nearby_donors(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    km: Optional[float] = Query(None, gt=0),
    bg: Optional[str] = None,
    rh: Optional[str] = None,
    current_user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    require_role(current_user, ["donor"])
    return find_nearby(db, {"lat": lat, "lng": lng}, km, bg, rh)


# ------------------------------------
# Admin: donor verification
# ------------------------------------
@app.get("/admin/pending-donors")
def pending_donors(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    docs = db["user"].find({"role": "donor", "is_verified": False}, {"password_hash": 0}).sort("created_at", -1)
    return [serialize(d) for d in docs]


@app.patch("/admin/donors/{user_id}")
def verify_donor(user_id: str, payload: DonorVerificationPayload, current_user=Depends(get_current_user),
                 db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    res = db["user"].update_one(
        {"_id": oid(user_id), "role": "donor"},
        {"$set": {"is_verified": payload.is_verified, "pending_approval": False, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFound("Donor not found")
    logger.info("Donor %s verification set to %s by %s", user_id, payload.is_verified, current_user["_id"])
    return serialize(db["user"].find_one({"_id": oid(user_id)}, {"password_hash": 0}))


# ------------------------------------
# Admin: hospitals & donations
# ------------------------------------
@app.get("/admin/hospitals")
def all_hospitals(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    docs = db["hospital"].find().sort([("created_at", -1), ("_id", -1)])
    return [with_owner(db, d, {"name": 1, "email": 1}) for d in docs]


@app.get("/admin/pending-hospitals")
def pending_hospitals(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    docs = db["hospital"].find({"verified": False}).sort([("created_at", -1), ("_id", -1)])
    fields = {"name": 1, "email": 1, "pending_approval": 1, "is_verified": 1}
    return [with_owner(db, d, fields) for d in docs]


@app.post("/admin/hospitals", status_code=201)
def onboard_hospital(payload: AdminHospitalPayload, current_user=Depends(get_current_user),
                     db: Database = Depends(get_db)):
    """Create a verified hospital together with its owner account and a one-time password."""
    require_role(current_user, ["admin"])
    password = secrets.token_urlsafe(9)
    user_doc = UserSchema(
        email=payload.email,
        password_hash=get_password_hash(password),
        role="hospital",
        name=payload.name,
        location=payload.location,
        is_verified=True,
        pending_approval=False,
    )
    user_id = register_user(db, user_doc)
    hospital = HospitalSchema(owner_id=user_id, name=payload.name, address=payload.address,
                              location=payload.location, verified=True)
    hospital_id = create_document(db, "hospital", hospital)
    logger.info("Hospital %s onboarded by admin %s", hospital_id, current_user["_id"])
    return {
        "hospital": with_owner(db, load_hospital(db, hospital_id), {"name": 1, "email": 1}),
        "credentials": {"email": payload.email, "password": password},
    }


@app.get("/admin/pending-donations")
def admin_pending_donations(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    return pending_donations(db)


@app.patch("/admin/donations/{donation_id}")
def admin_settle_donation(donation_id: str, payload: DonationVerificationPayload,
                          current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    return settle_donation(db, donation_id, current_user["_id"], payload.verify)


# ------------------------------------
# Donations
# ------------------------------------
@app.post("/donations/record", status_code=201)
def record_my_donation(payload: DonationCreate, current_user=Depends(get_current_user),
                       db: Database = Depends(get_db)):
    require_role(current_user, ["donor"])
    donation = record_donation(db, current_user["_id"], payload)
    return {"message": "Donation recorded successfully and pending verification.", "donation": donation}


@app.get("/donations/me/history")
def my_donations(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["donor"])
    return donation_history(db, current_user["_id"])


@app.patch("/donations/{donation_id}/verify")
def verify_donation(donation_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin", "hospital"])
    donation = load_donation(db, donation_id)
    if current_user.get("role") == "hospital":
        # hospital staff only verify donations made at a hospital they own
        owner_id = None
        if donation.get("hospital_id"):
            owner_id = load_hospital(db, donation["hospital_id"]).get("owner_id")
        require_owner_or_role(current_user, owner_id, ["admin"])
    donation = settle_donation(db, donation_id, current_user["_id"])
    return {"message": "Donation verified successfully.", "donation": donation}


# ------------------------------------
# Inventory
# ------------------------------------
@app.get("/inventory/{hospital_id}")
def get_inventory(hospital_id: str, db: Database = Depends(get_db)):
    store = InventoryStore(db)
    store.require_hospital(hospital_id)
    return store.list(hospital_id)


@app.put("/inventory/{hospital_id}")
def replace_inventory(hospital_id: str, items: List[InventoryItem], hospital=Depends(owned_hospital),
                      db: Database = Depends(get_db)):
    return InventoryStore(db).replace_all(hospital_id, items)


@app.patch("/inventory/{hospital_id}/item")
def adjust_inventory(hospital_id: str, payload: InventoryAdjustPayload, hospital=Depends(owned_hospital),
                     db: Database = Depends(get_db)):
    return InventoryStore(db).adjust(hospital_id, payload.blood_group, payload.rh, payload.delta_units)


@app.get("/inventory/{hospital_id}/logs")
def inventory_logs(hospital_id: str, limit: Optional[int] = None, hospital=Depends(owned_hospital),
                   db: Database = Depends(get_db)):
    return InventoryStore(db).ledger.list_for_hospital(hospital_id, limit)


@app.get("/inventory/{hospital_id}/expiry")
def inventory_expiry(hospital_id: str, db: Database = Depends(get_db)):
    store = InventoryStore(db)
    store.require_hospital(hospital_id)
    return project_expiry(store.list(hospital_id))


# ------------------------------------
# Blood Requests, Matches & Live Events
# ------------------------------------
@app.post("/requests", status_code=201)
def open_request(payload: BloodRequestCreate, current_user=Depends(get_current_user),
                 db: Database = Depends(get_db), bus: RequestEventBus = Depends(get_event_bus)):
    req = create_request(db, current_user["_id"], payload)
    bus.publish("request.created", req)
    return req


@app.get("/requests")
def all_requests(status: Optional[RequestStatus] = None, db: Database = Depends(get_db)):
    return list_requests(db, status)


# Declared before /requests/{request_id} so "stream" is not taken for an id
@app.get("/requests/stream")
async def stream_requests(bus: RequestEventBus = Depends(get_event_bus)):
    subscriber = Subscriber()
    return StreamingResponse(
        event_stream(bus, subscriber, HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@app.get("/requests/{request_id}")
def one_request(request_id: str, db: Database = Depends(get_db)):
    return get_request(db, request_id)


@app.patch("/requests/{request_id}/status")
def update_request_status(request_id: str, payload: UpdateStatusPayload, current_user=Depends(get_current_user),
                          db: Database = Depends(get_db), bus: RequestEventBus = Depends(get_event_bus)):
    existing = get_request(db, request_id)
    require_owner_or_role(current_user, existing.get("requester_id"), ["donor", "admin"])
    req = change_status(db, request_id, payload.status)
    bus.publish("request.updated", req)
    return req


@app.post("/requests/{request_id}/fulfill")
def fulfill_request(request_id: str, payload: FulfillPayload, current_user=Depends(get_current_user),
                    db: Database = Depends(get_db), bus: RequestEventBus = Depends(get_event_bus)):
    require_role(current_user, ["hospital", "admin"])
    hospital = load_hospital(db, payload.hospital_id)
    require_owner_or_role(current_user, hospital.get("owner_id"), ["admin"])
    req = fulfill(db, request_id, payload.hospital_id, payload.units)
    bus.publish("request.fulfilled", req)
    return {"message": "Request fulfilled successfully", "request": req}


@app.post("/requests/{request_id}/match")
def run_matches(request_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_role(current_user, ["admin"])
    return RequestMatcher(db).run(request_id)


@app.get("/requests/{request_id}/matches")
def get_matches(request_id: str, db: Database = Depends(get_db)):
    return RequestMatcher(db).get(request_id)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
