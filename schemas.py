"""
Database Schemas for BloodLink

Each Pydantic model corresponds to a MongoDB collection (lowercased class name),
except the payload and value types at the bottom of each section.
References between documents are stored as string ids.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator

BLOOD_GROUPS = ("A", "B", "O", "AB")
RH_FACTORS = ("+", "-")
BLOOD_TYPE_PATTERN = "^(A|B|AB|O)[+-]$"

Role = Literal["donor", "hospital", "admin"]
Urgency = Literal["critical", "urgent", "normal"]
RequestStatus = Literal["open", "fulfilled", "cancelled"]
DonationStatus = Literal["pending", "completed", "cancelled"]


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    label: Optional[str] = None


# Users and Hospitals
class User(BaseModel):
    email: EmailStr = Field(..., description="Login email (unique)")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = "donor"
    name: str
    phone: Optional[str] = None
    blood_group: Optional[str] = Field(None, pattern=BLOOD_TYPE_PATTERN, description="Full blood type, e.g. O+")
    location: Optional[GeoPoint] = None
    is_verified: bool = Field(False, description="Donors are matched only once an admin verified them")
    pending_approval: bool = True


class Hospital(BaseModel):
    owner_id: str = Field(..., description="_id of the owning hospital user")
    name: str
    address: Optional[str] = None
    location: Optional[GeoPoint] = None
    verified: bool = False


# Inventory
class InventoryItem(BaseModel):
    """One line of a bulk inventory replace; enums and bounds are checked by the store."""
    blood_group: str
    rh: str
    units: int


class InventoryLog(BaseModel):
    hospital_id: str
    blood_group: str
    rh: str
    action: Literal["replace", "adjust"]
    delta_units: int = Field(..., description="For replace the new total, for adjust the signed difference")
    previous_units: Optional[int] = None
    new_units: int
    at: datetime


# Requests and Matches
class HospitalById(BaseModel):
    kind: Literal["id"] = "id"
    id: str


class HospitalByName(BaseModel):
    kind: Literal["name"] = "name"
    name: str = Field(..., min_length=1)


HospitalRef = Annotated[Union[HospitalById, HospitalByName], Field(discriminator="kind")]


class BloodRequestCreate(BaseModel):
    blood_type: str = Field(..., pattern=BLOOD_TYPE_PATTERN)
    units: int = Field(..., ge=1)
    location: GeoPoint
    hospital: Optional[HospitalRef] = None
    urgency: Urgency = "normal"
    patient_name: Optional[str] = None
    contact: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("urgency", mode="before")
    @classmethod
    def lower_urgency(cls, v):
        return v.lower() if isinstance(v, str) else v


class BloodRequest(BaseModel):
    requester_id: str
    blood_type: str = Field(..., pattern=BLOOD_TYPE_PATTERN)
    units: int = Field(..., ge=1)
    location: GeoPoint
    hospital: Optional[HospitalRef] = None
    hospital_name: str = "Unknown Facility"
    urgency: Urgency = "normal"
    patient_name: str = "Anonymous"
    contact: str = "N/A"
    notes: str = ""
    status: RequestStatus = "open"
    match_run_id: Optional[str] = Field(None, description="run_id of the match set readers should see")


class Match(BaseModel):
    request_id: str
    donor_id: str
    run_id: str
    distance_km: float
    score: float = Field(..., gt=0, le=1)
    units_available: int = 1
    created_at: datetime


# Donations
class DonationCreate(BaseModel):
    units: int = Field(..., ge=1)
    location: Optional[str] = None
    hospital: Optional[HospitalRef] = None


class Donation(BaseModel):
    donor_id: str
    hospital_id: Optional[str] = None
    hospital_name: Optional[str] = None
    date: datetime
    units: int = Field(..., ge=1)
    location: str = "Not specified"
    status: DonationStatus = "pending"
    verified: bool = False
    verified_by: Optional[str] = Field(None, description="_id of the admin or hospital user who settled it")
    verified_at: Optional[datetime] = None
