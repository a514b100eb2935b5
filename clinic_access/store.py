"""
AccessStore – the persistence client for users, clinics, roles, memberships
and the clinic-scoped records the role filter applies to.

One instance is created at process start and passed to whoever needs it.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import bindparam, text

from clinic_access.database import (
    appointments,
    clinic_memberships,
    clinics,
    membership_overrides,
    patients,
    prescriptions,
    role_permissions,
    roles,
    settings,
    users,
)
from clinic_access.errors import ConflictError, NotFound, ValidationError
from clinic_access.models import Clinic, ClinicMembership, PermissionGrant, Role, User

PATIENT_EDITABLE_FIELDS = {"first_name", "last_name"}


def _user_from_row(row) -> User:
    return User(
        id=int(row["id"]),
        display_name=str(row["display_name"]),
        email=str(row["email"]),
        role=str(row["role"]).strip().lower(),
        is_active=bool(row["is_active"]),
    )


def _clinic_from_row(row) -> Clinic:
    return Clinic(
        id=int(row["id"]),
        name=str(row["name"]),
        code=str(row["code"]),
        is_active=bool(row["is_active"]),
    )


def _role_from_row(row, grants: List[PermissionGrant]) -> Role:
    return Role(
        name=str(row["name"]),
        display_name=str(row["display_name"]),
        description=row["description"] or "",
        permissions=grants,
        priority=int(row["priority"]),
        inherits_from=row["inherits_from"],
        is_system_role=bool(row["is_system_role"]),
        is_active=bool(row["is_active"]),
    )


class AccessStore:
    """Thin query layer over a SQLAlchemy engine."""

    def __init__(self, engine):
        self.engine = engine

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ── Users ────────────────────────────────────────────────────────

    def get_user(self, user_id: int) -> Optional[User]:
        sql = text("""
            SELECT id, display_name, email, role, is_active
            FROM users WHERE id = :id
        """)
        with self.engine.connect() as conn:
            row = conn.execute(sql, {"id": user_id}).mappings().first()
        return _user_from_row(row) if row else None

    def get_user_by_api_key(self, api_key: str) -> Optional[User]:
        sql = text("""
            SELECT id, display_name, email, role, is_active
            FROM users WHERE api_key = :k AND is_active = :active
        """)
        with self.engine.connect() as conn:
            row = conn.execute(sql, {"k": api_key, "active": True}).mappings().first()
        return _user_from_row(row) if row else None

    def create_user(self, display_name: str, email: str, role: str,
                    api_key: Optional[str] = None, is_active: bool = True) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(users.insert().values(
                display_name=display_name, email=email, role=role.lower(),
                api_key=api_key, is_active=is_active,
            ))
            return int(result.inserted_primary_key[0])

    # ── Clinics ──────────────────────────────────────────────────────

    def get_clinic(self, clinic_id: int, active_only: bool = True) -> Optional[Clinic]:
        sql = "SELECT id, name, code, is_active FROM clinics WHERE id = :id"
        params: Dict[str, Any] = {"id": clinic_id}
        if active_only:
            sql += " AND is_active = :active"
            params["active"] = True
        with self.engine.connect() as conn:
            row = conn.execute(text(sql), params).mappings().first()
        return _clinic_from_row(row) if row else None

    def create_clinic(self, name: str, code: str, is_active: bool = True) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(clinics.insert().values(name=name, code=code, is_active=is_active))
            return int(result.inserted_primary_key[0])

    # ── Roles ────────────────────────────────────────────────────────

    def _load_grants(self, conn, role_names: Iterable[str]) -> Dict[str, List[PermissionGrant]]:
        names = list(role_names)
        grants: Dict[str, List[PermissionGrant]] = {n: [] for n in names}
        if not names:
            return grants
        sql = text("""
            SELECT role_name, permission_name, granted
            FROM role_permissions
            WHERE role_name IN :names
            ORDER BY role_name, position
        """).bindparams(bindparam("names", expanding=True))
        for row in conn.execute(sql, {"names": names}).mappings():
            grants[row["role_name"]].append(
                PermissionGrant(str(row["permission_name"]), bool(row["granted"]))
            )
        return grants

    def get_role(self, name: str) -> Optional[Role]:
        sql = text("""
            SELECT name, display_name, description, priority, inherits_from,
                   is_system_role, is_active
            FROM roles WHERE name = :n
        """)
        with self.engine.connect() as conn:
            row = conn.execute(sql, {"n": name}).mappings().first()
            if not row:
                return None
            grants = self._load_grants(conn, [name])[name]
        return _role_from_row(row, grants)

    def list_roles(self, active_only: bool = True) -> List[Role]:
        """Roles ordered by priority (highest first), then name."""
        sql = """
            SELECT name, display_name, description, priority, inherits_from,
                   is_system_role, is_active
            FROM roles
        """
        params: Dict[str, Any] = {}
        if active_only:
            sql += " WHERE is_active = :active"
            params["active"] = True
        sql += " ORDER BY priority DESC, name"
        with self.engine.connect() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
            grants = self._load_grants(conn, [r["name"] for r in rows])
        return [_role_from_row(r, grants[r["name"]]) for r in rows]

    def _insert_grants(self, conn, role_name: str, grants: List[PermissionGrant]) -> None:
        if not grants:
            return
        conn.execute(role_permissions.insert(), [
            {"role_name": role_name, "position": i,
             "permission_name": g.permission_name, "granted": g.granted}
            for i, g in enumerate(grants)
        ])

    def create_role(self, role: Role) -> Role:
        if role.inherits_from == role.name:
            raise ValidationError("Role cannot inherit from itself")
        with self.engine.begin() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM roles WHERE name = :n"), {"n": role.name}
            ).first()
            if exists:
                raise ConflictError(f"Role '{role.name}' already exists")
            if role.inherits_from:
                parent = conn.execute(
                    text("SELECT 1 FROM roles WHERE name = :n"), {"n": role.inherits_from}
                ).first()
                if not parent:
                    raise NotFound(f"Base role '{role.inherits_from}' not found")
            conn.execute(roles.insert().values(
                name=role.name,
                display_name=role.display_name,
                description=role.description,
                priority=role.priority,
                inherits_from=role.inherits_from,
                is_system_role=role.is_system_role,
                is_active=role.is_active,
                created_at=datetime.utcnow(),
            ))
            self._insert_grants(conn, role.name, role.permissions)
        return role

    def replace_role_permissions(self, name: str, permission_names: List[str]) -> Role:
        """Replace the whole grant list with granted=True entries for *permission_names*."""
        # Duplicates collapse so repeating the same request yields the same rows.
        unique_names = list(dict.fromkeys(permission_names))
        with self.engine.begin() as conn:
            exists = conn.execute(text("SELECT 1 FROM roles WHERE name = :n"), {"n": name}).first()
            if not exists:
                raise NotFound("Role not found")
            conn.execute(text("DELETE FROM role_permissions WHERE role_name = :n"), {"n": name})
            self._insert_grants(conn, name, [PermissionGrant(p, True) for p in unique_names])
        return self.get_role(name)

    def reset_system_role(self, role: Role) -> Role:
        """Restore an existing role's attributes and grants to *role*'s definition."""
        with self.engine.begin() as conn:
            result = conn.execute(
                roles.update().where(roles.c.name == role.name).values(
                    display_name=role.display_name,
                    description=role.description,
                    priority=role.priority,
                    inherits_from=role.inherits_from,
                    is_system_role=True,
                    is_active=True,
                )
            )
            if result.rowcount == 0:
                raise NotFound("Role not found")
            conn.execute(text("DELETE FROM role_permissions WHERE role_name = :n"), {"n": role.name})
            self._insert_grants(conn, role.name, role.permissions)
        return self.get_role(role.name)

    def delete_role(self, name: str) -> None:
        role = self.get_role(name)
        if role is None:
            raise NotFound("Role not found")
        if role.is_system_role:
            raise ConflictError("This role cannot be deleted")
        with self.engine.begin() as conn:
            in_use = conn.execute(text("""
                SELECT COUNT(*) FROM clinic_memberships
                WHERE role = :n AND is_active = :active
            """), {"n": name, "active": True}).scalar()
            if in_use:
                raise ConflictError("Cannot delete role that is assigned to users")
            children = conn.execute(
                text("SELECT COUNT(*) FROM roles WHERE inherits_from = :n"), {"n": name}
            ).scalar()
            if children:
                raise ConflictError("Cannot delete role that other roles inherit from")
            conn.execute(text("DELETE FROM role_permissions WHERE role_name = :n"), {"n": name})
            conn.execute(text("DELETE FROM clinic_memberships WHERE role = :n"), {"n": name})
            conn.execute(text("DELETE FROM roles WHERE name = :n"), {"n": name})

    # ── Memberships ──────────────────────────────────────────────────

    def _load_overrides(self, conn, membership_id: int) -> List[PermissionGrant]:
        rows = conn.execute(text("""
            SELECT permission_name, granted FROM membership_overrides
            WHERE membership_id = :m ORDER BY id
        """), {"m": membership_id}).mappings().all()
        return [PermissionGrant(str(r["permission_name"]), bool(r["granted"])) for r in rows]

    @staticmethod
    def _membership_from_row(row, overrides: List[PermissionGrant]) -> ClinicMembership:
        return ClinicMembership(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            clinic_id=int(row["clinic_id"]),
            role=str(row["role"]),
            permission_overrides=overrides,
            is_active=bool(row["is_active"]),
            joined_at=row["joined_at"],
        )

    def get_membership(self, user_id: int, clinic_id: int,
                       active_only: bool = True) -> Optional[ClinicMembership]:
        sql = """
            SELECT id, user_id, clinic_id, role, is_active, joined_at
            FROM clinic_memberships
            WHERE user_id = :u AND clinic_id = :c
        """
        params: Dict[str, Any] = {"u": user_id, "c": clinic_id}
        if active_only:
            sql += " AND is_active = :active"
            params["active"] = True
        with self.engine.connect() as conn:
            row = conn.execute(text(sql), params).mappings().first()
            if not row:
                return None
            overrides = self._load_overrides(conn, int(row["id"]))
        return self._membership_from_row(row, overrides)

    def list_memberships(self, user_id: int) -> List[Tuple[ClinicMembership, Clinic]]:
        """Active memberships of *user_id* in active clinics, oldest first."""
        sql = text("""
            SELECT m.id, m.user_id, m.clinic_id, m.role, m.is_active, m.joined_at,
                   c.name AS clinic_name, c.code AS clinic_code, c.is_active AS clinic_active
            FROM clinic_memberships m
            JOIN clinics c ON c.id = m.clinic_id
            WHERE m.user_id = :u AND m.is_active = :active AND c.is_active = :active
            ORDER BY m.joined_at, m.id
        """)
        out = []
        with self.engine.connect() as conn:
            rows = conn.execute(sql, {"u": user_id, "active": True}).mappings().all()
            for row in rows:
                membership = self._membership_from_row(row, self._load_overrides(conn, int(row["id"])))
                clinic = Clinic(
                    id=int(row["clinic_id"]),
                    name=str(row["clinic_name"]),
                    code=str(row["clinic_code"]),
                    is_active=bool(row["clinic_active"]),
                )
                out.append((membership, clinic))
        return out

    def add_member(self, user_id: int, clinic_id: int, role: str) -> ClinicMembership:
        """Create the membership, or reactivate the existing row with *role*."""
        if self.get_role(role) is None:
            raise NotFound(f"Role '{role}' not found")
        if self.get_clinic(clinic_id) is None:
            raise NotFound("Clinic not found or inactive")
        if self.get_user(user_id) is None:
            raise NotFound("User not found")

        with self.engine.begin() as conn:
            existing = conn.execute(text("""
                SELECT id FROM clinic_memberships WHERE user_id = :u AND clinic_id = :c
            """), {"u": user_id, "c": clinic_id}).first()
            if existing:
                conn.execute(text("""
                    UPDATE clinic_memberships SET role = :r, is_active = :active
                    WHERE id = :id
                """), {"r": role, "active": True, "id": existing[0]})
            else:
                conn.execute(clinic_memberships.insert().values(
                    user_id=user_id, clinic_id=clinic_id, role=role,
                    is_active=True, joined_at=datetime.utcnow(),
                ))
        return self.get_membership(user_id, clinic_id)

    def remove_member(self, user_id: int, clinic_id: int) -> None:
        """Soft-delete: the row stays so a later invite reactivates it."""
        with self.engine.begin() as conn:
            result = conn.execute(text("""
                UPDATE clinic_memberships SET is_active = :inactive
                WHERE user_id = :u AND clinic_id = :c AND is_active = :active
            """), {"inactive": False, "active": True, "u": user_id, "c": clinic_id})
            if result.rowcount == 0:
                raise NotFound("Membership not found")

    def set_overrides(self, user_id: int, clinic_id: int,
                      overrides: List[PermissionGrant]) -> ClinicMembership:
        membership = self.get_membership(user_id, clinic_id)
        if membership is None:
            raise NotFound("Membership not found")
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM membership_overrides WHERE membership_id = :m"),
                         {"m": membership.id})
            if overrides:
                conn.execute(membership_overrides.insert(), [
                    {"membership_id": membership.id,
                     "permission_name": o.permission_name, "granted": o.granted}
                    for o in overrides
                ])
        return self.get_membership(user_id, clinic_id)

    # ── Clinic-scoped records ────────────────────────────────────────

    def add_patient(self, clinic_id: int, first_name: str, last_name: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(patients.insert().values(
                clinic_id=clinic_id, first_name=first_name, last_name=last_name,
                created_at=datetime.utcnow(),
            ))
            return int(result.inserted_primary_key[0])

    def add_appointment(self, clinic_id: int, patient_id: int, doctor_id: int,
                        nurse_id: Optional[int] = None,
                        scheduled_at: Optional[datetime] = None) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(appointments.insert().values(
                clinic_id=clinic_id, patient_id=patient_id, doctor_id=doctor_id,
                nurse_id=nurse_id, scheduled_at=scheduled_at or datetime.utcnow(),
            ))
            return int(result.inserted_primary_key[0])

    def add_prescription(self, clinic_id: int, patient_id: int, doctor_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(prescriptions.insert().values(
                clinic_id=clinic_id, patient_id=patient_id, doctor_id=doctor_id,
                created_at=datetime.utcnow(),
            ))
            return int(result.inserted_primary_key[0])

    def patient_ids_for_doctor(self, clinic_id: int, doctor_id: int) -> List[int]:
        """Patients the doctor has appointments or prescriptions with, in one clinic."""
        sql = text("""
            SELECT patient_id FROM appointments WHERE clinic_id = :c AND doctor_id = :d
            UNION
            SELECT patient_id FROM prescriptions WHERE clinic_id = :c AND doctor_id = :d
        """)
        with self.engine.connect() as conn:
            return sorted(int(r[0]) for r in conn.execute(sql, {"c": clinic_id, "d": doctor_id}))

    def patient_ids_for_nurse(self, clinic_id: int, nurse_id: int) -> List[int]:
        sql = text("""
            SELECT DISTINCT patient_id FROM appointments
            WHERE clinic_id = :c AND nurse_id = :n
        """)
        with self.engine.connect() as conn:
            return sorted(int(r[0]) for r in conn.execute(sql, {"c": clinic_id, "n": nurse_id}))

    def list_patients(self, clinic_id: int,
                      restrict_ids: Optional[List[int]] = None) -> List[Dict[str, Any]]:
        """Patients of one clinic, newest first; *restrict_ids* narrows further."""
        if restrict_ids is not None and not restrict_ids:
            return []
        sql = """
            SELECT id, clinic_id, first_name, last_name, created_at
            FROM patients WHERE clinic_id = :c
        """
        params: Dict[str, Any] = {"c": clinic_id}
        if restrict_ids is not None:
            sql += " AND id IN :ids"
            params["ids"] = list(restrict_ids)
        stmt = text(sql + " ORDER BY created_at DESC, id DESC")
        if restrict_ids is not None:
            stmt = stmt.bindparams(bindparam("ids", expanding=True))
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt, params).mappings().all()]

    def get_patient(self, clinic_id: int, patient_id: int) -> Optional[Dict[str, Any]]:
        sql = text("""
            SELECT id, clinic_id, first_name, last_name, created_at
            FROM patients WHERE id = :id AND clinic_id = :c
        """)
        with self.engine.connect() as conn:
            row = conn.execute(sql, {"id": patient_id, "c": clinic_id}).mappings().first()
        return dict(row) if row else None

    def update_patient(self, clinic_id: int, patient_id: int,
                       fields: Dict[str, Any]) -> Dict[str, Any]:
        if "clinic_id" in fields:
            raise ValidationError("clinic_id cannot be changed after creation")
        unknown = set(fields) - PATIENT_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown patient fields: {sorted(unknown)}")
        if self.get_patient(clinic_id, patient_id) is None:
            raise NotFound("Patient not found")
        if fields:
            assignments = ", ".join(f"{k} = :{k}" for k in sorted(fields))
            params = dict(fields, id=patient_id, c=clinic_id)
            with self.engine.begin() as conn:
                conn.execute(
                    text(f"UPDATE patients SET {assignments} WHERE id = :id AND clinic_id = :c"),
                    params,
                )
        return self.get_patient(clinic_id, patient_id)

    # ── Settings ─────────────────────────────────────────────────────

    def get_settings(self) -> Dict[str, Optional[str]]:
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT name, value FROM settings ORDER BY name")).all()
        return {r[0]: r[1] for r in rows}

    def update_settings(self, values: Dict[str, Any]) -> Dict[str, Optional[str]]:
        with self.engine.begin() as conn:
            for key, value in values.items():
                conn.execute(text("DELETE FROM settings WHERE name = :k"), {"k": key})
                conn.execute(settings.insert().values(
                    name=key, value=None if value is None else str(value)
                ))
        return self.get_settings()
