"""
Flask route handlers for the REST API.
"""

import re
import sys
from datetime import datetime, timedelta

from flask import g, jsonify, request

from clinic_access.analysis import compare_reports
from clinic_access.config import ADMIN_ROLE, DEFAULT_MEMBER_ROLE, TOKEN_EXPIRY_HOURS
from clinic_access.errors import (
    AccessError,
    ClinicContextMissing,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from clinic_access.models import PermissionGrant, Role
from clinic_access.permissions import PERMISSION_CATALOG, is_known_permission
from clinic_access.rbac import (
    effective_permissions,
    get_role_based_filter,
    load_access_context,
    membership_permissions,
    resolve_patient_scope,
)
from clinic_access.api.auth import admin_required, generate_token, token_required

ROLE_NAME_PATTERN = re.compile(r"^[a-z_]+$")


# ── Request / response helpers ───────────────────────────────────────

def _json_body() -> dict:
    if not request.is_json:
        raise ValidationError("Content-Type must be application/json")
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require_clinic() -> int:
    clinic_id = getattr(g, "clinic_id", None)
    if clinic_id is None:
        raise ClinicContextMissing()
    return clinic_id


def _int_field(data: dict, name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{name} is required")
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Invalid {name} format")


def _permission_list(data: dict, field: str = "permissions") -> list:
    names = data.get(field, [])
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ValidationError(f"{field} must be an array of permission names")
    unknown = sorted({n for n in names if not is_known_permission(n)})
    if unknown:
        raise ValidationError("Unknown permissions", unknown=unknown)
    return names


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def _user_json(principal):
    return {
        "id": principal.user_id,
        "display_name": principal.display_name,
        "role": principal.role,
    }


def _role_json(store, role: Role):
    return {
        "name": role.name,
        "display_name": role.display_name,
        "description": role.description,
        "priority": role.priority,
        "inherits_from": role.inherits_from,
        "is_system_role": role.is_system_role,
        "is_active": role.is_active,
        "permissions": [
            {"permission_name": p.permission_name, "granted": p.granted} for p in role.permissions
        ],
        "effective_permissions": effective_permissions(role, store.get_role),
    }


def _membership_json(store, membership, clinic=None):
    out = {
        "user_id": membership.user_id,
        "clinic_id": membership.clinic_id,
        "role": membership.role,
        "is_active": membership.is_active,
        "joined_at": _iso(membership.joined_at),
        "permission_overrides": [
            {"permission_name": o.permission_name, "granted": o.granted}
            for o in membership.permission_overrides
        ],
        "permissions": membership_permissions(store, membership),
    }
    if clinic is not None:
        out["clinic"] = {"id": clinic.id, "name": clinic.name, "code": clinic.code}
    return out


def _patient_json(row):
    return {k: _iso(v) for k, v in row.items()}


def _token_response(principal, clinic_id=None):
    return {
        "token": generate_token(principal, clinic_id=clinic_id),
        "expires_at": (datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS)).isoformat(),
    }


def register_routes(app, store, llm):
    """Register all API routes on the Flask *app*."""

    def patient_scope(clinic_id):
        scope = get_role_based_filter(g.principal, "patient")
        return resolve_patient_scope(store, clinic_id, scope)

    def visible_patient(clinic_id, patient_id):
        patient = store.get_patient(clinic_id, patient_id)
        if patient is None:
            raise NotFound("Patient not found")
        scope = patient_scope(clinic_id)
        if scope is not None and patient_id not in scope:
            raise PermissionDenied(message="Access denied to this patient")
        return patient

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "Clinic Access Service API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "auth": "/api/auth/login",
                "clinics": "/api/user/clinics",
                "roles": "/api/roles",
                "patients": "/api/patients",
                "compare": "/api/test-reports/compare",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False, "llm": llm is not None}
        try:
            checks["database"] = store.ping()
        except Exception as e:
            print(f"[WARN] Health check database ping failed: {e}", file=sys.stderr)

        healthy = checks["database"]
        return jsonify({
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
        }), 200 if healthy else 503

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        data = _json_body()
        api_key = str(data.get("api_key", "")).strip()
        if not api_key:
            raise ValidationError("api_key is required")

        principal = load_access_context(store, api_key)
        print(f"[auth] Login: {principal.display_name} (role={principal.role})")
        return jsonify({
            "success": True,
            "user": _user_json(principal),
            **_token_response(principal),
        }), 200

    # ── Current user & clinic selection ──────────────────────────────

    @app.route("/api/user/profile", methods=["GET"])
    @token_required
    def get_profile():
        principal = g.principal
        profile = {"success": True, "user": _user_json(principal), "clinic_id": g.clinic_id}
        if g.clinic_id is not None:
            membership = store.get_membership(principal.user_id, g.clinic_id)
            if membership is not None:
                profile["membership"] = _membership_json(store, membership)
        return jsonify(profile), 200

    @app.route("/api/user/clinics", methods=["GET"])
    @token_required
    def get_user_clinics():
        memberships = store.list_memberships(g.principal.user_id)
        return jsonify({
            "success": True,
            "data": {
                "clinics": [_membership_json(store, m, c) for m, c in memberships],
                "total": len(memberships),
            },
        }), 200

    @app.route("/api/user/select-clinic", methods=["POST"])
    @app.route("/api/user/switch-clinic", methods=["POST"])
    @token_required
    def select_clinic():
        principal = g.principal
        clinic_id = _int_field(_json_body(), "clinic_id")

        clinic = store.get_clinic(clinic_id)
        if clinic is None:
            raise NotFound("Clinic not found or inactive")

        membership = store.get_membership(principal.user_id, clinic_id)
        if membership is None and principal.role != ADMIN_ROLE:
            raise PermissionDenied(message="Access denied to this clinic")

        print(f"[auth] User {principal.user_id} selected clinic {clinic_id}")
        return jsonify({
            "success": True,
            "data": {
                "clinic": {"id": clinic.id, "name": clinic.name, "code": clinic.code},
                "role": membership.role if membership else principal.role,
                "permissions": (
                    membership_permissions(store, membership) if membership
                    else sorted(PERMISSION_CATALOG)
                ),
                **_token_response(principal, clinic_id=clinic_id),
            },
        }), 200

    @app.route("/api/user/current-clinic", methods=["GET"])
    @token_required
    def current_clinic():
        clinic_id = _require_clinic()
        clinic = store.get_clinic(clinic_id)
        if clinic is None:
            raise NotFound("Clinic not found or inactive")
        membership = store.get_membership(g.principal.user_id, clinic_id)
        if membership is None and g.principal.role != ADMIN_ROLE:
            raise NotFound("Clinic access not found")
        return jsonify({
            "success": True,
            "data": {
                "clinic": {"id": clinic.id, "name": clinic.name, "code": clinic.code},
                "role": membership.role if membership else g.principal.role,
            },
        }), 200

    @app.route("/api/user/clear-clinic", methods=["POST"])
    @token_required
    def clear_clinic():
        return jsonify({"success": True, "data": _token_response(g.principal)}), 200

    # ── Roles & permissions ──────────────────────────────────────────

    @app.route("/api/roles", methods=["GET"])
    @token_required
    def list_roles():
        roles = store.list_roles()
        return jsonify({
            "success": True,
            "data": {"roles": [_role_json(store, r) for r in roles]},
        }), 200

    @app.route("/api/roles", methods=["POST"])
    @admin_required
    def create_role():
        data = _json_body()
        name = str(data.get("name", "")).strip().lower()
        display_name = str(data.get("display_name", "")).strip()
        if not name or not display_name:
            raise ValidationError("name and display_name are required")
        if not ROLE_NAME_PATTERN.match(name):
            raise ValidationError("Role name must contain only lowercase letters and underscores")

        priority = data.get("priority", 50)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer")

        inherits_from = data.get("inherits_from") or None
        if inherits_from is not None and (
                not isinstance(inherits_from, str) or not ROLE_NAME_PATTERN.match(inherits_from)):
            raise ValidationError("inherits_from must be a role name")

        role = store.create_role(Role(
            name=name,
            display_name=display_name,
            description=str(data.get("description", "")),
            permissions=[PermissionGrant(p, True) for p in dict.fromkeys(_permission_list(data))],
            priority=priority,
            inherits_from=inherits_from,
        ))
        print(f"[roles] Created role '{role.name}' by user {g.principal.user_id}")
        return jsonify({
            "success": True,
            "message": "Role created successfully",
            "data": _role_json(store, store.get_role(role.name)),
        }), 201

    @app.route("/api/roles/<name>/permissions", methods=["PUT"])
    @admin_required
    def update_role_permissions(name):
        names = _permission_list(_json_body())
        role = store.replace_role_permissions(name, names)
        print(f"[roles] Replaced permissions of '{name}' ({len(role.permissions)} grants)")
        return jsonify({
            "success": True,
            "message": "Role permissions updated successfully",
            "data": _role_json(store, role),
        }), 200

    @app.route("/api/roles/<name>", methods=["DELETE"])
    @admin_required
    def delete_role(name):
        store.delete_role(name)
        print(f"[roles] Deleted role '{name}' by user {g.principal.user_id}")
        return jsonify({"success": True, "message": "Role deleted successfully"}), 200

    @app.route("/api/permissions", methods=["GET"])
    @token_required
    def list_permissions():
        modules = {}
        for name in sorted(PERMISSION_CATALOG):
            modules.setdefault(name.split(".", 1)[0], []).append(name)
        return jsonify({
            "success": True,
            "data": {"permissions": sorted(PERMISSION_CATALOG), "modules": modules},
        }), 200

    # ── Clinic membership ────────────────────────────────────────────

    @app.route("/api/clinics/<int:clinic_id>/members", methods=["POST"])
    @token_required
    def add_member(clinic_id):
        data = _json_body()
        user_id = _int_field(data, "user_id")
        role = str(data.get("role") or DEFAULT_MEMBER_ROLE).strip().lower()
        membership = store.add_member(user_id, clinic_id, role)
        print(f"[members] User {user_id} joined clinic {clinic_id} as {role}")
        return jsonify({"success": True, "data": _membership_json(store, membership)}), 201

    @app.route("/api/clinics/<int:clinic_id>/members/<int:user_id>", methods=["DELETE"])
    @token_required
    def remove_member(clinic_id, user_id):
        store.remove_member(user_id, clinic_id)
        print(f"[members] User {user_id} removed from clinic {clinic_id}")
        return jsonify({"success": True, "message": "Member removed"}), 200

    @app.route("/api/clinics/<int:clinic_id>/members/<int:user_id>/overrides", methods=["PUT"])
    @token_required
    def set_member_overrides(clinic_id, user_id):
        raw = _json_body().get("overrides", [])
        if not isinstance(raw, list):
            raise ValidationError("overrides must be an array")

        overrides = []
        for item in raw:
            if (not isinstance(item, dict)
                    or not isinstance(item.get("permission_name"), str)
                    or not isinstance(item.get("granted"), bool)):
                raise ValidationError("Each override needs permission_name and a boolean granted")
            if not is_known_permission(item["permission_name"]):
                raise ValidationError("Unknown permissions", unknown=[item["permission_name"]])
            overrides.append(PermissionGrant(item["permission_name"], item["granted"]))

        membership = store.set_overrides(user_id, clinic_id, overrides)
        return jsonify({"success": True, "data": _membership_json(store, membership)}), 200

    # ── Patients ─────────────────────────────────────────────────────

    @app.route("/api/patients", methods=["GET"])
    @token_required
    def list_patients():
        clinic_id = _require_clinic()
        rows = store.list_patients(clinic_id, patient_scope(clinic_id))
        return jsonify({
            "success": True,
            "data": {"patients": [_patient_json(r) for r in rows], "total": len(rows)},
        }), 200

    @app.route("/api/patients/<int:patient_id>", methods=["GET"])
    @token_required
    def get_patient(patient_id):
        clinic_id = _require_clinic()
        return jsonify({"success": True, "data": _patient_json(visible_patient(clinic_id, patient_id))}), 200

    @app.route("/api/patients/<int:patient_id>", methods=["PUT"])
    @token_required
    def update_patient(patient_id):
        clinic_id = _require_clinic()
        data = _json_body()
        visible_patient(clinic_id, patient_id)
        patient = store.update_patient(clinic_id, patient_id, data)
        return jsonify({"success": True, "data": _patient_json(patient)}), 200

    # ── Settings ─────────────────────────────────────────────────────

    @app.route("/api/settings", methods=["GET"])
    @token_required
    def get_settings():
        return jsonify({"success": True, "data": store.get_settings()}), 200

    @app.route("/api/settings", methods=["PUT"])
    @token_required
    def update_settings():
        data = _json_body()
        if not data:
            raise ValidationError("No settings provided")
        bad = sorted(k for k, v in data.items() if isinstance(v, (dict, list)))
        if bad:
            raise ValidationError("Setting values must be scalars", fields=bad)
        return jsonify({"success": True, "data": store.update_settings(data)}), 200

    # ── Test-report comparison ───────────────────────────────────────

    @app.route("/api/test-reports/compare", methods=["POST"])
    @token_required
    def compare_test_reports():
        clinic_id = _require_clinic()
        data = _json_body()
        patient_id = _int_field(data, "patient_id")
        visible_patient(clinic_id, patient_id)

        result = compare_reports(data.get("reports"), llm=llm)
        print(f"[compare] {result['report_count']} reports for patient {patient_id}, "
              f"{len(result['parameter_comparisons'])} parameters")
        return jsonify({
            "success": True,
            "data": {
                "patient_id": patient_id,
                "comparison_name": data.get("comparison_name") or f"Comparison for patient {patient_id}",
                **result,
            },
        }), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(AccessError)
    def access_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"success": False, "error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"success": False, "error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"success": False, "error": "Internal server error", "message": str(e)}), 500
