"""
Resource table, verb → action mapping and the catalog of known permissions.
"""

from typing import Iterable, List, Optional, Tuple

from clinic_access.config import PUBLIC_PREFIXES
from clinic_access.errors import ConfigurationError

# First path segment after /api/ → permission module name.
RESOURCE_MAP = {
    "users": "users",
    "clinics": "clinics",
    "patients": "patients",
    "appointments": "appointments",
    "medical-records": "medical_records",
    "prescriptions": "prescriptions",
    "invoices": "invoices",
    "payments": "payments",
    "inventory": "inventory",
    "departments": "departments",
    "services": "services",
    "tests": "tests",
    "test-reports": "test_reports",
    "lab-vendors": "lab_vendors",
    "xray-analysis": "xray_analysis",
    "odontograms": "odontogram",
    "payroll": "payroll",
    "expenses": "expenses",
    "settings": "settings",
    "roles": "permissions",
    "permissions": "permissions",
}

# Segments deliberately left to the route's own checks (the caller's own
# clinic list and clinic selection).
UNGUARDED_SEGMENTS = {"user"}

METHOD_TO_ACTION = {
    "GET": "view",
    "POST": "create",
    "PUT": "edit",
    "PATCH": "edit",
    "DELETE": "delete",
}

BASE_ACTIONS = ("view", "create", "edit", "delete")

SETTINGS_WRITE_PERMISSION = "settings.general"

# Finer-grained names granted by the seeded system roles.
EXTENDED_PERMISSIONS = {
    "users.activate_deactivate", "users.assign_roles", "users.manage_permissions", "users.export",
    "clinics.settings", "clinics.switch_clinic",
    "patients.export", "patients.import",
    "appointments.reschedule", "appointments.assign", "appointments.export",
    "invoices.send", "invoices.print",
    "payments.process", "payments.refund",
    "expenses.approve",
    "payroll.process",
    "inventory.stock_update",
    "test_reports.verify",
    "prescriptions.print", "prescriptions.dispense",
    "leads.view", "leads.create", "leads.edit", "leads.delete", "leads.convert",
    "training.view", "training.create", "training.edit", "training.assign",
    "analytics.dashboard", "analytics.reports", "analytics.export",
    "settings.general", "settings.notifications", "settings.integrations", "settings.backup",
    "permissions.create_role", "permissions.edit_role", "permissions.delete_role",
    "permissions.assign_permissions", "permissions.assign_roles", "permissions.audit_log",
}


def _build_catalog():
    names = {f"{module}.{action}" for module in set(RESOURCE_MAP.values()) for action in BASE_ACTIONS}
    return frozenset(names | EXTENDED_PERMISSIONS)


PERMISSION_CATALOG = _build_catalog()


def is_known_permission(name: str) -> bool:
    return name in PERMISSION_CATALOG


def is_public_path(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in PUBLIC_PREFIXES)


def first_api_segment(path: str) -> Optional[str]:
    """Return the segment right after ``/api/``, or None for non-API paths."""
    if not path.startswith("/api/"):
        return None
    segment = path[len("/api/"):].split("/", 1)[0]
    return segment or None


def derive_permission(method: str, path: str) -> Optional[Tuple[str, str]]:
    """
    Map a request to ``(resource, permission_name)``.

    Returns None when the path does not map to a known resource.
    """
    segment = first_api_segment(path)
    resource = RESOURCE_MAP.get(segment) if segment else None
    if resource is None:
        return None

    method = method.upper()
    action = METHOD_TO_ACTION.get(method, "view")
    permission_name = f"{resource}.{action}"

    # Settings writes share one coarse permission.
    if resource == "settings" and method in {"POST", "PUT", "PATCH"}:
        permission_name = SETTINGS_WRITE_PERMISSION

    return resource, permission_name


def check_route_table(rules: Iterable[str]) -> List[str]:
    """
    Verify that every registered ``/api/...`` route maps to exactly one
    resource (or is public / explicitly unguarded).

    Returns the checked rules; raises ConfigurationError listing offenders.
    """
    overlap = UNGUARDED_SEGMENTS & set(RESOURCE_MAP)
    if overlap:
        raise ConfigurationError(f"Segments both mapped and unguarded: {sorted(overlap)}")

    for module in set(RESOURCE_MAP.values()):
        missing = [a for a in BASE_ACTIONS if f"{module}.{a}" not in PERMISSION_CATALOG]
        if missing:
            raise ConfigurationError(f"Resource '{module}' lacks catalog entries for {missing}")

    checked, unmapped = [], []
    for rule in rules:
        if not rule.startswith("/api/") or is_public_path(rule):
            continue
        segment = first_api_segment(rule)
        if segment in RESOURCE_MAP or segment in UNGUARDED_SEGMENTS:
            checked.append(rule)
        else:
            unmapped.append(rule)

    if unmapped:
        raise ConfigurationError(
            "Routes without a resource mapping: " + ", ".join(sorted(unmapped))
        )
    return checked
