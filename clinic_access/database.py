"""
Database engine initialisation and table definitions.
"""

import sys
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)

from clinic_access.config import get_env

metadata = MetaData()

users = Table(
    "users", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("display_name", String(200), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("role", String(50), nullable=False),
    Column("api_key", String(100), unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
)

clinics = Table(
    "clinics", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("code", String(50), nullable=False, unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
)

roles = Table(
    "roles", metadata,
    Column("name", String(50), primary_key=True),
    Column("display_name", String(100), nullable=False),
    Column("description", String(500), nullable=False, default=""),
    Column("priority", Integer, nullable=False, default=50),
    Column("inherits_from", String(50), ForeignKey("roles.name"), nullable=True),
    Column("is_system_role", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

role_permissions = Table(
    "role_permissions", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_name", String(50), ForeignKey("roles.name"), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("permission_name", String(100), nullable=False),
    Column("granted", Boolean, nullable=False, default=True),
)

# One row per (user, clinic): re-inviting reactivates the same row, so a
# pair can never hold two active memberships.
clinic_memberships = Table(
    "clinic_memberships", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("clinic_id", Integer, ForeignKey("clinics.id"), nullable=False),
    Column("role", String(50), ForeignKey("roles.name"), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("joined_at", DateTime, nullable=False, default=datetime.utcnow),
    UniqueConstraint("user_id", "clinic_id", name="uq_membership_user_clinic"),
)

membership_overrides = Table(
    "membership_overrides", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("membership_id", Integer, ForeignKey("clinic_memberships.id"), nullable=False, index=True),
    Column("permission_name", String(100), nullable=False),
    Column("granted", Boolean, nullable=False),
)

patients = Table(
    "patients", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("clinic_id", Integer, ForeignKey("clinics.id"), nullable=False, index=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

appointments = Table(
    "appointments", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("clinic_id", Integer, ForeignKey("clinics.id"), nullable=False, index=True),
    Column("patient_id", Integer, ForeignKey("patients.id"), nullable=False),
    Column("doctor_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("nurse_id", Integer, ForeignKey("users.id"), nullable=True),
    Column("scheduled_at", DateTime, nullable=False, default=datetime.utcnow),
)

prescriptions = Table(
    "prescriptions", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("clinic_id", Integer, ForeignKey("clinics.id"), nullable=False, index=True),
    Column("patient_id", Integer, ForeignKey("patients.id"), nullable=False),
    Column("doctor_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

settings = Table(
    "settings", metadata,
    Column("name", String(100), primary_key=True),
    Column("value", Text, nullable=True),
)


def init_engine():
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = get_env("DB_URI")
    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    print("[init] Connected to DB.")
    return engine


def create_schema(engine) -> None:
    """Create any missing tables."""
    metadata.create_all(engine)
    print(f"[init] Schema ready ({len(metadata.tables)} tables).")
