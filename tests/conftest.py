"""
Shared fixtures: an in-memory SQLite store seeded with the system roles and a
small two-clinic world.
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from clinic_access.api.app import create_app
from clinic_access.api.auth import generate_token
from clinic_access.database import create_schema
from clinic_access.models import Principal
from clinic_access.seeds import seed_roles
from clinic_access.store import AccessStore


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return AccessStore(engine)


@pytest.fixture
def seeded_store(store):
    seed_roles(store)
    return store


@pytest.fixture
def world(seeded_store):
    """
    Two clinics. C1 has a doctor, a nurse and a receptionist; the admin has
    no membership anywhere. The doctor reaches p1 (appointment) and p2
    (prescription) but not p3; p4 lives in C2.
    """
    s = seeded_store
    c1 = s.create_clinic("North Clinic", "C1")
    c2 = s.create_clinic("South Clinic", "C2")

    admin = s.create_user("Admin", "admin@example.com", "admin", api_key="admin-key")
    doctor = s.create_user("Dr. Grey", "grey@example.com", "doctor", api_key="doctor-key")
    nurse = s.create_user("Nurse Joy", "joy@example.com", "nurse", api_key="nurse-key")
    receptionist = s.create_user("Rita", "rita@example.com", "receptionist", api_key="rita-key")
    inactive = s.create_user("Gone", "gone@example.com", "staff", api_key="gone-key", is_active=False)

    s.add_member(doctor, c1, "doctor")
    s.add_member(nurse, c1, "nurse")
    s.add_member(receptionist, c1, "receptionist")

    p1 = s.add_patient(c1, "Ann", "Lee")
    p2 = s.add_patient(c1, "Bob", "Ray")
    p3 = s.add_patient(c1, "Cid", "Moe")
    p4 = s.add_patient(c2, "Dee", "Fox")

    s.add_appointment(c1, p1, doctor, nurse_id=nurse)
    s.add_prescription(c1, p2, doctor)

    return SimpleNamespace(
        store=s, c1=c1, c2=c2,
        admin=admin, doctor=doctor, nurse=nurse, receptionist=receptionist, inactive=inactive,
        p1=p1, p2=p2, p3=p3, p4=p4,
    )


@pytest.fixture
def app(seeded_store):
    app = create_app(store=seeded_store)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def headers_for(seeded_store):
    """Build request headers carrying a token for *user_id*."""
    def _headers(user_id, clinic_id=None, token_clinic=None):
        user = seeded_store.get_user(user_id)
        principal = Principal(user_id=user.id, display_name=user.display_name, role=user.role)
        headers = {"Authorization": f"Bearer {generate_token(principal, clinic_id=token_clinic)}"}
        if clinic_id is not None:
            headers["X-Clinic-Id"] = str(clinic_id)
        return headers
    return _headers
