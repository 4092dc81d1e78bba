import math

import mongomock
import pytest
from fastapi.testclient import TestClient

from bloodrequests import create_request
from database import create_document, ensure_indexes, get_db
from geo import EARTH_RADIUS_KM
from main import app
from schemas import BloodRequestCreate
from security import create_access_token

KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180
ORIGIN = {"lat": 0.0, "lng": 0.0}


def point_at_km(km, origin=ORIGIN):
    """A point ``km`` north of ``origin`` along its meridian."""
    return {"lat": origin["lat"] + km / KM_PER_DEGREE, "lng": origin["lng"]}


def auth(token):
    return {"Authorization": f"Bearer {token}"}


class InterleavedCollection:
    """Runs a competing write around each of the next calls to ``method`` on the wrapped collection.

    Hooks run right after the call by default, or right before it with ``before=True``.
    """

    def __init__(self, inner, hooks, method="find_one", before=False):
        self._inner = inner
        self._hooks = list(hooks)
        self._method = method
        self._before = before

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if name != self._method:
            return attr

        def call(*args, **kwargs):
            if self._before:
                self._next_hook()
            result = attr(*args, **kwargs)
            if not self._before:
                self._next_hook()
            return result

        return call

    def _next_hook(self):
        if self._hooks:
            self._hooks.pop(0)()


@pytest.fixture
def db():
    database = mongomock.MongoClient()["bloodlink_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="donor", **fields):
        counter["n"] += 1
        doc = {
            "email": f"{role}{counter['n']}@example.com",
            "password_hash": "not-used",
            "role": role,
            "name": f"{role.title()} {counter['n']}",
            "is_verified": role != "donor",
        }
        doc.update(fields)
        user_id = create_document(db, "user", doc)
        return user_id, create_access_token(user_id, role)

    return _make


@pytest.fixture
def add_donor(make_user):
    def _add(blood_group, km=None, verified=True, **fields):
        location = point_at_km(km) if km is not None else None
        user_id, _ = make_user("donor", blood_group=blood_group, location=location, is_verified=verified, **fields)
        return user_id

    return _add


@pytest.fixture
def hospital(db, make_user):
    owner_id, token = make_user("hospital")
    hospital_id = create_document(db, "hospital", {"owner_id": owner_id, "name": "City General", "verified": True})
    return {"id": hospital_id, "owner_id": owner_id, "token": token}


@pytest.fixture
def open_request(db, make_user):
    def _open(blood_type="O+", location=ORIGIN, units=2, **fields):
        requester_id, _ = make_user("donor")
        payload = BloodRequestCreate(blood_type=blood_type, units=units, location=location, **fields)
        return create_request(db, requester_id, payload)

    return _open
