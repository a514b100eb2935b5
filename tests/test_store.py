"""
AccessStore against an in-memory SQLite database.
"""

import pytest

from clinic_access.errors import ConflictError, NotFound, ValidationError
from clinic_access.models import PermissionGrant, Role
from clinic_access.rbac import has_permission


# ── Roles ────────────────────────────────────────────────────────────

def test_seeded_roles_ordered_by_priority(seeded_store):
    names = [r.name for r in seeded_store.list_roles()]
    assert names == ["admin", "doctor", "nurse", "accountant", "receptionist", "staff"]


def test_create_custom_role_with_base(seeded_store):
    seeded_store.create_role(Role(
        "front_desk", "Front Desk", inherits_from="receptionist",
        permissions=[PermissionGrant("invoices.print", False)],
    ))
    role = seeded_store.get_role("front_desk")
    assert role.inherits_from == "receptionist"
    assert role.own_grants() == {"invoices.print": False}
    assert not role.is_system_role


def test_create_role_conflicts_and_validation(seeded_store):
    with pytest.raises(ConflictError):
        seeded_store.create_role(Role("doctor", "Doctor again"))
    with pytest.raises(NotFound):
        seeded_store.create_role(Role("orphan", "Orphan", inherits_from="ghost"))
    with pytest.raises(ValidationError):
        seeded_store.create_role(Role("loop", "Loop", inherits_from="loop"))


def test_replace_role_permissions_is_idempotent(seeded_store):
    first = seeded_store.replace_role_permissions("staff", ["patients.view", "tests.view", "patients.view"])
    second = seeded_store.replace_role_permissions("staff", ["patients.view", "tests.view", "patients.view"])
    assert first == second
    assert [(g.permission_name, g.granted) for g in second.permissions] == [
        ("patients.view", True), ("tests.view", True),
    ]


def test_replace_role_permissions_missing_role(seeded_store):
    with pytest.raises(NotFound):
        seeded_store.replace_role_permissions("ghost", ["patients.view"])


def test_reset_system_role_missing_role(seeded_store):
    with pytest.raises(NotFound):
        seeded_store.reset_system_role(Role(name="ghost", display_name="Ghost"))


def test_delete_role_rules(world):
    s = world.store
    with pytest.raises(ConflictError) as e:
        s.delete_role("doctor")
    assert e.value.message == "This role cannot be deleted"

    s.create_role(Role("temp", "Temp", permissions=[PermissionGrant("patients.view")]))
    s.add_member(world.admin, world.c2, "temp")
    with pytest.raises(ConflictError):
        s.delete_role("temp")

    s.remove_member(world.admin, world.c2)
    s.delete_role("temp")
    assert s.get_role("temp") is None

    with pytest.raises(NotFound):
        s.delete_role("temp")


def test_delete_role_with_children(seeded_store):
    seeded_store.create_role(Role("parent_role", "Parent"))
    seeded_store.create_role(Role("child_role", "Child", inherits_from="parent_role"))
    with pytest.raises(ConflictError):
        seeded_store.delete_role("parent_role")


# ── Memberships ──────────────────────────────────────────────────────

def test_membership_lifecycle(world):
    s = world.store
    assert s.get_membership(world.doctor, world.c1).role == "doctor"

    s.remove_member(world.doctor, world.c1)
    assert s.get_membership(world.doctor, world.c1) is None
    assert s.get_membership(world.doctor, world.c1, active_only=False).is_active is False
    assert not has_permission(s, world.doctor, world.c1, "patients.view")

    # Re-inviting reactivates the same row.
    again = s.add_member(world.doctor, world.c1, "staff")
    assert again.role == "staff"
    assert len(s.list_memberships(world.doctor)) == 1

    with pytest.raises(NotFound):
        s.remove_member(world.doctor, world.c2)


def test_add_member_validates_references(world):
    s = world.store
    with pytest.raises(NotFound):
        s.add_member(world.doctor, world.c2, "ghost")
    with pytest.raises(NotFound):
        s.add_member(world.doctor, 999, "staff")
    with pytest.raises(NotFound):
        s.add_member(999, world.c2, "staff")


def test_inactive_clinic_hides_memberships(world):
    s = world.store
    closed = s.create_clinic("Closed", "C9", is_active=False)
    assert s.get_clinic(closed) is None
    assert s.get_clinic(closed, active_only=False).code == "C9"
    with pytest.raises(NotFound):
        s.add_member(world.doctor, closed, "doctor")


def test_overrides_replace_previous_set(world):
    s = world.store
    s.set_overrides(world.receptionist, world.c1, [PermissionGrant("settings.general", True)])
    m = s.set_overrides(world.receptionist, world.c1, [PermissionGrant("patients.view", False)])
    assert m.override_grants() == {"patients.view": False}
    assert not has_permission(s, world.receptionist, world.c1, "patients.view")
    assert not has_permission(s, world.receptionist, world.c1, "settings.general")


def test_set_overrides_requires_membership(world):
    with pytest.raises(NotFound):
        world.store.set_overrides(world.admin, world.c1, [])


# ── Clinic-scoped records ────────────────────────────────────────────

def test_patient_scope_queries(world):
    s = world.store
    assert s.patient_ids_for_doctor(world.c1, world.doctor) == sorted([world.p1, world.p2])
    assert s.patient_ids_for_nurse(world.c1, world.nurse) == [world.p1]
    assert s.patient_ids_for_doctor(world.c2, world.doctor) == []


def test_list_patients_respects_clinic_and_restriction(world):
    s = world.store
    assert {p["id"] for p in s.list_patients(world.c1)} == {world.p1, world.p2, world.p3}
    assert [p["id"] for p in s.list_patients(world.c1, [world.p3, world.p4])] == [world.p3]
    assert s.list_patients(world.c1, []) == []


def test_patient_clinic_is_immutable(world):
    s = world.store
    with pytest.raises(ValidationError) as e:
        s.update_patient(world.c1, world.p1, {"clinic_id": world.c2})
    assert "cannot be changed" in e.value.message
    assert s.get_patient(world.c1, world.p1)["clinic_id"] == world.c1


def test_update_patient(world):
    s = world.store
    updated = s.update_patient(world.c1, world.p1, {"first_name": "Anna"})
    assert updated["first_name"] == "Anna"
    with pytest.raises(ValidationError):
        s.update_patient(world.c1, world.p1, {"ssn": "x"})
    with pytest.raises(NotFound):
        s.update_patient(world.c1, world.p4, {"first_name": "Nope"})


# ── Settings ─────────────────────────────────────────────────────────

def test_settings_upsert(store):
    assert store.get_settings() == {}
    store.update_settings({"timezone": "UTC", "max_upload_mb": 10})
    out = store.update_settings({"timezone": "America/Toronto"})
    assert out == {"max_upload_mb": "10", "timezone": "America/Toronto"}
