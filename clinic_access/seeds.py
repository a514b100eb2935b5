"""
Seed data – the system roles every deployment starts with, plus Faker-based
demo clinics, staff and patients for local development.
"""

import random
import secrets
import string
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, List

from faker import Faker

from clinic_access.models import PermissionGrant, Role
from clinic_access.permissions import is_known_permission

SYSTEM_ROLES = [
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "Full system access with all permissions",
        "priority": 100,
        "permissions": [
            "users.view", "users.create", "users.edit", "users.delete", "users.activate_deactivate",
            "users.assign_roles", "users.manage_permissions", "users.export",
            "clinics.view", "clinics.create", "clinics.edit", "clinics.delete", "clinics.settings",
            "clinics.switch_clinic",
            "patients.view", "patients.create", "patients.edit", "patients.delete", "patients.export",
            "patients.import",
            "appointments.view", "appointments.create", "appointments.edit", "appointments.delete",
            "appointments.reschedule", "appointments.assign", "appointments.export",
            "invoices.view", "invoices.create", "invoices.edit", "invoices.delete", "invoices.send",
            "invoices.print",
            "payments.view", "payments.process", "payments.refund",
            "expenses.view", "expenses.create", "expenses.edit", "expenses.delete", "expenses.approve",
            "payroll.view", "payroll.create", "payroll.edit", "payroll.process",
            "inventory.view", "inventory.create", "inventory.edit", "inventory.delete",
            "inventory.stock_update",
            "tests.view", "tests.create", "tests.edit", "tests.delete",
            "test_reports.view", "test_reports.create", "test_reports.edit", "test_reports.verify",
            "lab_vendors.view", "lab_vendors.create", "lab_vendors.edit", "lab_vendors.delete",
            "departments.view", "departments.create", "departments.edit", "departments.delete",
            "services.view", "services.create", "services.edit", "services.delete",
            "prescriptions.view", "prescriptions.create", "prescriptions.edit", "prescriptions.delete",
            "prescriptions.print", "prescriptions.dispense",
            "leads.view", "leads.create", "leads.edit", "leads.delete", "leads.convert",
            "training.view", "training.create", "training.edit", "training.assign",
            "odontogram.view", "odontogram.create", "odontogram.edit",
            "xray_analysis.view", "xray_analysis.create",
            "analytics.dashboard", "analytics.reports", "analytics.export",
            "settings.view", "settings.general", "settings.notifications", "settings.integrations",
            "settings.backup",
            "permissions.view", "permissions.create_role", "permissions.edit_role",
            "permissions.delete_role", "permissions.assign_permissions", "permissions.assign_roles",
            "permissions.audit_log",
        ],
    },
    {
        "name": "doctor",
        "display_name": "Doctor",
        "description": "Medical practitioner with patient care permissions",
        "priority": 90,
        "permissions": [
            "patients.view", "patients.create", "patients.edit",
            "appointments.view", "appointments.create", "appointments.edit", "appointments.reschedule",
            "prescriptions.view", "prescriptions.create", "prescriptions.edit", "prescriptions.print",
            "prescriptions.dispense",
            "test_reports.view", "test_reports.create", "test_reports.edit", "test_reports.verify",
            "tests.view",
            "services.view",
            "departments.view",
            "odontogram.view", "odontogram.create", "odontogram.edit",
            "xray_analysis.view", "xray_analysis.create",
            "analytics.dashboard", "analytics.reports",
            "training.view",
        ],
    },
    {
        "name": "nurse",
        "display_name": "Nurse",
        "description": "Nursing staff with patient care and administrative permissions",
        "priority": 80,
        "permissions": [
            "patients.view", "patients.create", "patients.edit", "patients.export",
            "appointments.view", "appointments.create", "appointments.edit", "appointments.reschedule",
            "appointments.assign", "appointments.export",
            "prescriptions.view", "prescriptions.create", "prescriptions.edit", "prescriptions.print",
            "prescriptions.dispense",
            "test_reports.view", "test_reports.create", "test_reports.edit", "test_reports.verify",
            "tests.view", "tests.create", "tests.edit",
            "odontogram.view", "odontogram.create", "odontogram.edit",
            "xray_analysis.view", "xray_analysis.create",
            "inventory.view", "inventory.create", "inventory.edit", "inventory.stock_update",
            "services.view", "services.create", "services.edit",
            "departments.view",
            "lab_vendors.view",
            "invoices.view", "payments.view", "expenses.view", "payroll.view",
            "leads.view", "leads.create", "leads.edit", "leads.convert",
            "analytics.dashboard", "analytics.reports", "analytics.export",
            "clinics.view", "clinics.switch_clinic",
            "training.view",
        ],
    },
    {
        "name": "accountant",
        "display_name": "Accountant",
        "description": "Financial management and reporting specialist",
        "priority": 75,
        "permissions": [
            "patients.view",
            "appointments.view",
            "invoices.view", "invoices.create", "invoices.edit", "invoices.delete", "invoices.send",
            "invoices.print",
            "payments.view", "payments.process", "payments.refund",
            "expenses.view", "expenses.create", "expenses.edit", "expenses.delete", "expenses.approve",
            "payroll.view", "payroll.create", "payroll.edit", "payroll.process",
            "services.view",
            "analytics.dashboard", "analytics.reports", "analytics.export",
            "training.view",
        ],
    },
    {
        "name": "receptionist",
        "display_name": "Receptionist",
        "description": "Front desk staff with patient and appointment management",
        "priority": 70,
        "permissions": [
            "patients.view", "patients.create", "patients.edit",
            "appointments.view", "appointments.create", "appointments.edit", "appointments.reschedule",
            "appointments.assign",
            "leads.view", "leads.create", "leads.edit", "leads.convert",
            "invoices.view", "invoices.create", "invoices.send", "invoices.print",
            "payments.view", "payments.process",
            "services.view",
            "departments.view",
            "training.view",
        ],
    },
    {
        "name": "staff",
        "display_name": "Staff",
        "description": "General staff member with limited access",
        "priority": 60,
        "permissions": [
            "patients.view",
            "appointments.view",
            "services.view",
            "departments.view",
            "training.view",
        ],
    },
]


def generate_api_key(prefix: str = "clinic", length: int = 32) -> str:
    """Generate a secure random API key."""
    chars = string.ascii_letters + string.digits
    random_part = "".join(secrets.choice(chars) for _ in range(length))
    return f"{prefix}_{random_part}"


def generate_secret_key() -> str:
    return secrets.token_hex(32)


def seed_roles(store) -> Dict[str, int]:
    """Create the system roles, or restore their attributes and grants when they already exist."""
    created = updated = 0
    for data in SYSTEM_ROLES:
        names = [p for p in data["permissions"] if is_known_permission(p)]
        for missing in sorted(set(data["permissions"]) - set(names)):
            print(f"[WARN] Permission '{missing}' not in catalog for role '{data['name']}'", file=sys.stderr)

        role = Role(
            name=data["name"],
            display_name=data["display_name"],
            description=data["description"],
            permissions=[PermissionGrant(p, True) for p in names],
            priority=data["priority"],
            is_system_role=True,
        )
        if store.get_role(role.name) is None:
            store.create_role(role)
            created += 1
            print(f"[seed] Created role: {data['name']}")
        else:
            store.reset_system_role(role)
            updated += 1
            print(f"[seed] Updated role: {data['name']}")

    return {"created": created, "updated": updated, "total": len(SYSTEM_ROLES)}


# ── Demo data ────────────────────────────────────────────────────────

STAFF_ROLES = ("doctor", "nurse", "receptionist", "accountant")


def random_datetime_within(days_back=365):
    now = datetime.utcnow()
    delta = timedelta(days=random.randint(0, days_back), seconds=random.randint(0, 86400))
    return now - delta


def seed_demo_data(store, num_clinics: int = 2, patients_per_clinic: int = 20,
                   seed: int = 42) -> Dict[str, Any]:
    """
    Populate clinics, one member per staff role in each clinic, patients,
    appointments and prescriptions. System roles must already exist.

    Returns the created ids and the API keys issued to each user.
    """
    fake = Faker()
    random.seed(seed)
    Faker.seed(seed)

    summary: Dict[str, Any] = {"clinics": [], "users": []}

    admin_key = generate_api_key()
    admin_id = store.create_user("System Admin", fake.unique.email(), "admin", api_key=admin_key)
    summary["users"].append({"id": admin_id, "role": "admin", "clinic_id": None, "api_key": admin_key})

    for _ in range(num_clinics):
        city = fake.city()
        clinic_id = store.create_clinic(
            name=f"{city} Clinic",
            code=fake.unique.bothify(text="CL-####"),
        )
        summary["clinics"].append(clinic_id)

        members: Dict[str, int] = {}
        for role in STAFF_ROLES:
            key = generate_api_key()
            name = fake.name()
            if role == "doctor":
                name = f"Dr. {name}"
            user_id = store.create_user(name, fake.unique.email(), role, api_key=key)
            store.add_member(user_id, clinic_id, role)
            members[role] = user_id
            summary["users"].append({"id": user_id, "role": role, "clinic_id": clinic_id, "api_key": key})

        patient_ids: List[int] = []
        for _ in range(patients_per_clinic):
            patient_ids.append(store.add_patient(clinic_id, fake.first_name(), fake.last_name()))

        for patient_id in patient_ids:
            for _ in range(random.randint(0, 3)):
                store.add_appointment(
                    clinic_id, patient_id, members["doctor"],
                    nurse_id=members["nurse"] if random.random() < 0.5 else None,
                    scheduled_at=random_datetime_within(),
                )
            if random.random() < 0.3:
                store.add_prescription(clinic_id, patient_id, members["doctor"])

        print(f"[seed] Clinic {clinic_id}: {len(STAFF_ROLES)} staff, {len(patient_ids)} patients")

    return summary
