"""
Per-request permission guard.

Runs as a ``before_request`` hook: authenticates the caller when a token is
present, resolves the clinic context, maps the request to a permission and
evaluates it before the route handler is reached.
"""

import sys
import traceback
from typing import Optional

from flask import current_app, g, request

from clinic_access.api.auth import authenticate
from clinic_access.config import ADMIN_ROLE, CLINIC_HEADER, GUARD_FAIL_CLOSED, UNSCOPED_RESOURCES
from clinic_access.errors import (
    AccessError,
    AuthenticationError,
    ClinicContextMissing,
    InternalError,
    PermissionDenied,
    ValidationError,
)
from clinic_access.permissions import (
    UNGUARDED_SEGMENTS,
    derive_permission,
    first_api_segment,
    is_public_path,
)
from clinic_access.rbac import has_permission, has_permission_in_any_clinic


def parse_clinic_header(value: Optional[str]) -> Optional[int]:
    """Parse the ``X-Clinic-Id`` header; absent or blank means no context."""
    if value is None or not value.strip():
        return None
    try:
        clinic_id = int(value.strip())
    except ValueError:
        raise ValidationError("Invalid clinic ID format")
    if clinic_id <= 0:
        raise ValidationError("Invalid clinic ID format")
    return clinic_id


def clinic_id_from_path(path: str) -> Optional[int]:
    """Return ``<id>`` for ``/api/clinics/<id>/...`` paths."""
    parts = path.strip("/").split("/")
    if len(parts) >= 3 and parts[0] == "api" and parts[1] == "clinics" and parts[2].isdigit():
        return int(parts[2])
    return None


def register_guard(app, store):
    """Install the permission guard on *app*."""
    app.config.setdefault("GUARD_FAIL_CLOSED", GUARD_FAIL_CLOSED)

    @app.before_request
    def permission_guard():
        g.principal = None
        g.clinic_id = None

        path = request.path
        if is_public_path(path):
            return None

        auth_header = request.headers.get("Authorization")
        if not auth_header:
            # No credentials: leave it to the route's own authentication.
            return None

        # ── Before a principal exists every failure is a 401 ─────────
        try:
            principal = authenticate(store, auth_header)
        except AccessError:
            raise AuthenticationError()
        except Exception:
            traceback.print_exc()
            raise AuthenticationError()

        g.principal = principal

        try:
            raw_clinic = request.headers.get(CLINIC_HEADER)
            if principal.role == ADMIN_ROLE:
                # Admins pass whatever the header holds; a bad value is just ignored.
                try:
                    header_clinic = parse_clinic_header(raw_clinic)
                except ValidationError:
                    header_clinic = None
                g.clinic_id = header_clinic if header_clinic is not None else principal.clinic_id
                return None

            header_clinic = parse_clinic_header(raw_clinic)
            clinic_id = header_clinic if header_clinic is not None else principal.clinic_id
            g.clinic_id = clinic_id

            mapping = derive_permission(request.method, path)
            if mapping is None:
                segment = first_api_segment(path)
                if (current_app.config["GUARD_FAIL_CLOSED"]
                        and segment is not None and segment not in UNGUARDED_SEGMENTS):
                    print(f"[guard] Denied unmapped path {request.method} {path}", file=sys.stderr)
                    raise PermissionDenied(required=segment)
                return None

            resource, permission_name = mapping
            clinic_scoped = resource not in UNSCOPED_RESOURCES
            if clinic_scoped and clinic_id is None:
                raise ClinicContextMissing()

            path_clinic = clinic_id_from_path(path)
            if path_clinic is not None and path_clinic != clinic_id:
                print(f"[guard] User {principal.user_id} addressed clinic {path_clinic} "
                      f"from context {clinic_id}", file=sys.stderr)
                raise PermissionDenied(required=permission_name)

            if clinic_id is not None:
                allowed = has_permission(store, principal.user_id, clinic_id,
                                         permission_name, global_role=principal.role)
            else:
                allowed = has_permission_in_any_clinic(store, principal.user_id,
                                                       permission_name, global_role=principal.role)

            if not allowed:
                print(f"[guard] Denied {principal.role} user {principal.user_id} "
                      f"{permission_name} in clinic {clinic_id}", file=sys.stderr)
                raise PermissionDenied(required=permission_name)
            return None

        except AccessError:
            raise
        except Exception as e:
            print(f"[ERROR] Permission guard failed: {e}", file=sys.stderr)
            traceback.print_exc()
            raise InternalError()

    return permission_guard
