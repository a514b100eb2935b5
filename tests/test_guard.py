"""
Permission guard behaviour through the Flask test client.
"""

from flask import jsonify

from clinic_access.api.app import create_app
from clinic_access.models import PermissionGrant
from clinic_access.store import AccessStore


class ExplodingMembershipStore(AccessStore):
    def get_membership(self, user_id, clinic_id, active_only=True):
        raise RuntimeError("database went away")


class ExplodingUserStore(AccessStore):
    def get_user(self, user_id):
        raise RuntimeError("database went away")


# ── Authentication ───────────────────────────────────────────────────

def test_public_paths_need_no_token(client, world):
    assert client.get("/health").status_code == 200
    resp = client.post("/api/auth/login", json={"api_key": "doctor-key"})
    assert resp.status_code == 200
    assert resp.get_json()["user"]["role"] == "doctor"


def test_login_rejects_bad_key(client, world):
    resp = client.post("/api/auth/login", json={"api_key": "wrong"})
    assert resp.status_code == 401
    assert resp.get_json()["success"] is False
    assert client.post("/api/auth/login", json={}).status_code == 400


def test_missing_token_on_protected_route(client, world):
    resp = client.get("/api/patients", headers={"X-Clinic-Id": str(world.c1)})
    assert resp.status_code == 401
    assert resp.get_json() == {"success": False, "message": "Authentication required"}


def test_garbage_token_is_401(client, world):
    resp = client.get("/api/patients", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Authentication required"


def test_inactive_user_is_401(client, world, headers_for):
    resp = client.get("/api/user/profile", headers=headers_for(world.inactive))
    assert resp.status_code == 401


def test_store_failure_before_principal_is_401(world, headers_for):
    app = create_app(store=ExplodingUserStore(world.store.engine))
    resp = app.test_client().get("/api/patients", headers=headers_for(world.doctor, world.c1))
    assert resp.status_code == 401


# ── Clinic context ───────────────────────────────────────────────────

def test_clinic_scoped_resource_without_clinic_is_400(client, world, headers_for):
    resp = client.get("/api/patients", headers=headers_for(world.doctor))
    assert resp.status_code == 400
    assert resp.get_json() == {"success": False, "message": "Clinic context required"}


def test_invalid_clinic_header_is_400(client, world, headers_for):
    headers = headers_for(world.doctor)
    headers["X-Clinic-Id"] = "abc"
    resp = client.get("/api/patients", headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Invalid clinic ID format"


def test_member_of_other_clinic_is_403_not_400(client, world, headers_for):
    resp = client.get("/api/patients", headers=headers_for(world.doctor, world.c2))
    assert resp.status_code == 403
    assert resp.get_json() == {
        "success": False, "message": "Permission denied", "required": "patients.view",
    }


def test_token_clinic_claim_is_context(client, world, headers_for):
    resp = client.get("/api/patients", headers=headers_for(world.doctor, token_clinic=world.c1))
    assert resp.status_code == 200


def test_header_overrides_token_clinic(client, world, headers_for):
    headers = headers_for(world.doctor, clinic_id=world.c2, token_clinic=world.c1)
    assert client.get("/api/patients", headers=headers).status_code == 403


# ── Evaluation ───────────────────────────────────────────────────────

def test_receptionist_can_create_appointment(app, world, headers_for):
    @app.route("/api/appointments", methods=["POST"])
    def create_appointment():
        return jsonify({"success": True}), 201

    client = app.test_client()
    resp = client.post("/api/appointments", json={}, headers=headers_for(world.receptionist, world.c1))
    assert resp.status_code == 201


def test_receptionist_cannot_delete_appointment(app, world, headers_for):
    @app.route("/api/appointments/<int:appointment_id>", methods=["DELETE"])
    def delete_appointment(appointment_id):
        return jsonify({"success": True}), 200

    resp = app.test_client().delete("/api/appointments/1", headers=headers_for(world.receptionist, world.c1))
    assert resp.status_code == 403
    assert resp.get_json()["required"] == "appointments.delete"


def test_settings_write_requires_settings_general(client, world, headers_for):
    headers = headers_for(world.receptionist)
    resp = client.put("/api/settings", json={"timezone": "UTC"}, headers=headers)
    assert resp.status_code == 403
    assert resp.get_json()["required"] == "settings.general"

    world.store.set_overrides(world.receptionist, world.c1, [PermissionGrant("settings.general", True)])
    resp = client.put("/api/settings", json={"timezone": "UTC"}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"] == {"timezone": "UTC"}


def test_admin_bypasses_membership(client, world, headers_for):
    resp = client.get("/api/patients", headers=headers_for(world.admin, world.c2))
    assert resp.status_code == 200
    assert [p["id"] for p in resp.get_json()["data"]["patients"]] == [world.p4]


def test_admin_ignores_malformed_clinic_header(client, world, headers_for):
    headers = headers_for(world.admin)
    headers["X-Clinic-Id"] = "64f0c0ffee"
    resp = client.get("/api/settings", headers=headers)
    assert resp.status_code == 200

    headers = headers_for(world.admin, token_clinic=world.c2)
    headers["X-Clinic-Id"] = "abc"
    resp = client.get("/api/patients", headers=headers)
    assert resp.status_code == 200
    assert [p["id"] for p in resp.get_json()["data"]["patients"]] == [world.p4]


def test_admin_still_needs_clinic_for_clinic_data(client, world, headers_for):
    assert client.get("/api/patients", headers=headers_for(world.admin)).status_code == 400


def test_clinic_path_must_match_context(client, world, headers_for):
    world.store.set_overrides(world.receptionist, world.c1, [PermissionGrant("clinics.create", True)])
    headers = headers_for(world.receptionist, world.c1)

    resp = client.post(f"/api/clinics/{world.c2}/members",
                       json={"user_id": world.nurse}, headers=headers)
    assert resp.status_code == 403

    resp = client.post(f"/api/clinics/{world.c1}/members",
                       json={"user_id": world.admin, "role": "staff"}, headers=headers)
    assert resp.status_code == 201
    assert resp.get_json()["data"]["role"] == "staff"


def test_unmapped_segment_fails_open_by_default(client, world, headers_for):
    resp = client.get("/api/unknown-thing", headers=headers_for(world.doctor, world.c1))
    assert resp.status_code == 404


def test_unmapped_segment_fail_closed(world, headers_for):
    app = create_app(store=world.store, fail_closed=True)
    client = app.test_client()
    resp = client.get("/api/unknown-thing", headers=headers_for(world.doctor, world.c1))
    assert resp.status_code == 403
    assert resp.get_json()["required"] == "unknown-thing"

    # Explicitly unguarded routes keep working.
    assert client.get("/api/user/clinics", headers=headers_for(world.doctor)).status_code == 200


def test_store_failure_after_principal_is_500(world, headers_for):
    app = create_app(store=ExplodingMembershipStore(world.store.engine))
    resp = app.test_client().get("/api/patients", headers=headers_for(world.doctor, world.c1))
    assert resp.status_code == 500
    assert resp.get_json() == {"success": False, "message": "Internal permission guard error"}


def test_denial_is_logged(client, world, headers_for, capsys):
    client.get("/api/patients", headers=headers_for(world.doctor, world.c2))
    assert "[guard] Denied doctor user" in capsys.readouterr().err
