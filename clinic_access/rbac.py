"""
Role-Based Access Control – effective permissions, clinic-scoped permission
checks and row-level filters.
"""

from typing import Callable, Dict, List, Optional

from clinic_access.config import ADMIN_ROLE
from clinic_access.errors import AuthenticationError
from clinic_access.models import ClinicMembership, FilterSpec, Principal, Role
from clinic_access.permissions import is_known_permission

RoleLookup = Callable[[str], Optional[Role]]


def load_access_context(store, api_key: str) -> Principal:
    """Look up a user by API key and return their Principal."""
    user = store.get_user_by_api_key(api_key)
    if user is None:
        raise AuthenticationError("Invalid key or user inactive")
    return Principal(user_id=user.id, display_name=user.display_name, role=user.role)


# ── Effective permissions ────────────────────────────────────────────

def effective_grants(role: Optional[Role], lookup: RoleLookup) -> Dict[str, bool]:
    """
    Merge the ``inherits_from`` chain into one grant map.

    The most distant ancestor is applied first and each descendant overrides
    it, so ``granted=False`` on a child revokes an inherited grant. Inactive
    ancestors contribute nothing; an inactive role yields an empty map.
    """
    if role is None or not role.is_active:
        return {}

    chain: List[Role] = []
    seen = set()
    current: Optional[Role] = role
    while current is not None and current.name not in seen:
        seen.add(current.name)
        chain.append(current)
        current = lookup(current.inherits_from) if current.inherits_from else None

    grants: Dict[str, bool] = {}
    for ancestor in reversed(chain):
        if ancestor.is_active:
            grants.update(ancestor.own_grants())
    return grants


def effective_permissions(role: Optional[Role], lookup: RoleLookup) -> List[str]:
    """Sorted names granted by *role* including inherited grants."""
    return sorted(name for name, granted in effective_grants(role, lookup).items() if granted)


def membership_grants(store, membership: ClinicMembership) -> Dict[str, bool]:
    """Role grants with the membership's own overrides applied last."""
    grants = effective_grants(store.get_role(membership.role), store.get_role)
    grants.update(membership.override_grants())
    return grants


def membership_permissions(store, membership: ClinicMembership) -> List[str]:
    return sorted(name for name, granted in membership_grants(store, membership).items() if granted)


# ── Permission checks ────────────────────────────────────────────────

def _global_role(store, user_id: int, global_role: Optional[str]) -> Optional[str]:
    if global_role is not None:
        return global_role
    user = store.get_user(user_id)
    if user is None or not user.is_active:
        return None
    return user.role


def has_permission(store, user_id: int, clinic_id: int, permission_name: str,
                   global_role: Optional[str] = None) -> bool:
    """
    Return True iff *user_id* holds *permission_name* in *clinic_id*.

    Platform admins are allowed before any membership lookup. Everyone else
    needs an active membership whose resolved grants include the permission;
    unknown permission names are always denied.
    """
    role = _global_role(store, user_id, global_role)
    if role is None:
        return False
    if role == ADMIN_ROLE:
        return True
    if not is_known_permission(permission_name):
        return False

    membership = store.get_membership(user_id, clinic_id)
    if membership is None:
        return False
    return membership_grants(store, membership).get(permission_name) is True


def has_permission_in_any_clinic(store, user_id: int, permission_name: str,
                                 global_role: Optional[str] = None) -> bool:
    """Check resources that live outside a clinic against every active membership."""
    role = _global_role(store, user_id, global_role)
    if role is None:
        return False
    if role == ADMIN_ROLE:
        return True
    if not is_known_permission(permission_name):
        return False

    for membership, _clinic in store.list_memberships(user_id):
        if membership_grants(store, membership).get(permission_name) is True:
            return True
    return False


# ── Row-level filters ────────────────────────────────────────────────

def get_role_based_filter(principal: Principal, resource_type: str) -> FilterSpec:
    """Derive the row-level scope for *principal* on *resource_type*."""

    if principal.role == "doctor":
        if resource_type in {"appointment", "prescription", "odontogram"}:
            return FilterSpec(field_filter={"doctor_id": principal.user_id})
        if resource_type == "patient":
            # Patients are not owned by doctors; reach them through
            # appointments and prescriptions.
            return FilterSpec(requires_patient_subquery=True, via="doctor",
                              owner_id=principal.user_id)
        return FilterSpec()

    if principal.role == "nurse":
        if resource_type == "appointment":
            return FilterSpec(field_filter={"nurse_id": principal.user_id})
        if resource_type in {"patient", "prescription"}:
            return FilterSpec(requires_patient_subquery=True, via="nurse",
                              owner_id=principal.user_id)
        return FilterSpec()

    # Admin, receptionist, staff and any other role see the whole clinic.
    return FilterSpec()


def resolve_patient_scope(store, clinic_id: int, scope: FilterSpec) -> Optional[List[int]]:
    """
    Turn a patient-subquery marker into an explicit id list.

    Returns None when the filter places no restriction on patients.
    """
    if not scope.requires_patient_subquery:
        return None
    if scope.via == "doctor":
        return store.patient_ids_for_doctor(clinic_id, scope.owner_id)
    if scope.via == "nurse":
        return store.patient_ids_for_nurse(clinic_id, scope.owner_id)
    raise ValueError(f"Unknown patient scope: {scope.via}")
