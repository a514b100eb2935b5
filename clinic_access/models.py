"""
Domain dataclasses used across the application.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class PermissionGrant:
    """One entry of a role's (or membership's) grant list."""
    permission_name: str
    granted: bool = True


@dataclass
class Role:
    """Named role with its own grants and an optional base role."""
    name: str
    display_name: str
    description: str = ""
    permissions: List[PermissionGrant] = field(default_factory=list)
    priority: int = 50
    inherits_from: Optional[str] = None
    is_system_role: bool = False
    is_active: bool = True

    def own_grants(self) -> Dict[str, bool]:
        """Grant map for this role alone; later entries win over earlier ones."""
        return {g.permission_name: g.granted for g in self.permissions}


@dataclass
class Clinic:
    """Tenant boundary."""
    id: int
    name: str
    code: str
    is_active: bool = True


@dataclass
class User:
    id: int
    display_name: str
    email: str
    role: str                  # global role, "admin" bypasses clinic checks
    is_active: bool = True


@dataclass
class ClinicMembership:
    """User ↔ clinic link carrying the per-clinic role."""
    user_id: int
    clinic_id: int
    role: str
    permission_overrides: List[PermissionGrant] = field(default_factory=list)
    is_active: bool = True
    joined_at: Optional[datetime] = None
    id: Optional[int] = None

    def override_grants(self) -> Dict[str, bool]:
        return {g.permission_name: g.granted for g in self.permission_overrides}


@dataclass
class Principal:
    """The authenticated caller for the duration of one request."""
    user_id: int
    display_name: str
    role: str
    clinic_id: Optional[int] = None


@dataclass
class FilterSpec:
    """
    Row-level scope for a (role, resource) pair.

    ``field_filter`` is applied directly as equality predicates. When
    ``requires_patient_subquery`` is set the caller must first resolve the
    patient ids reachable through ``via`` ("doctor" or "nurse") for
    ``owner_id`` and restrict the query to them.
    """
    field_filter: Dict[str, Any] = field(default_factory=dict)
    requires_patient_subquery: bool = False
    via: Optional[str] = None
    owner_id: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.field_filter and not self.requires_patient_subquery
