"""
JWT authentication helpers and the ``token_required`` decorator.
"""

import sys
import traceback
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, request

from clinic_access.config import ADMIN_ROLE, SECRET_KEY, TOKEN_EXPIRY_HOURS
from clinic_access.errors import AccessError, AuthenticationError, PermissionDenied
from clinic_access.models import Principal

STORE_EXTENSION = "access_store"


def generate_token(principal: Principal, clinic_id: Optional[int] = None) -> str:
    """Generate a JWT for *principal*, optionally carrying a selected clinic."""
    now = datetime.utcnow()
    payload = {
        "user_id": principal.user_id,
        "role": principal.role,
        "display_name": principal.display_name,
        "iat": now,
        "exp": now + timedelta(hours=TOKEN_EXPIRY_HOURS),
    }
    if clinic_id is not None:
        payload["clinic_id"] = clinic_id
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify a JWT and return the decoded payload (or None)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


def authenticate(store, auth_header: Optional[str]) -> Principal:
    """
    Resolve the caller behind an ``Authorization`` header.

    Every failure, whatever its cause, surfaces as AuthenticationError.
    """
    token = bearer_token(auth_header)
    if not token:
        raise AuthenticationError()
    payload = verify_token(token)
    if not payload or "user_id" not in payload:
        raise AuthenticationError()

    try:
        user = store.get_user(int(payload["user_id"]))
    except Exception as e:
        print(f"[WARN] User lookup failed during authentication: {e}", file=sys.stderr)
        raise AuthenticationError()

    if user is None or not user.is_active:
        raise AuthenticationError()

    clinic_id = payload.get("clinic_id")
    return Principal(
        user_id=user.id,
        display_name=user.display_name,
        role=user.role,
        clinic_id=int(clinic_id) if clinic_id is not None else None,
    )


def token_required(f):
    """Decorator that requires an authenticated principal on ``flask.g``."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "principal", None) is None:
            # Guard skipped this path (public prefix or no header).
            store = current_app.extensions[STORE_EXTENSION]
            try:
                g.principal = authenticate(store, request.headers.get("Authorization"))
            except AccessError:
                raise
            except Exception:
                traceback.print_exc()
                raise AuthenticationError()
            if getattr(g, "clinic_id", None) is None:
                g.clinic_id = g.principal.clinic_id
        return f(*args, **kwargs)

    return decorated


def admin_required(f):
    """Restrict a route to users whose global role is admin.

    Clinic memberships and overrides never satisfy this check; roles are
    shared by every clinic.
    """
    @wraps(f)
    @token_required
    def decorated(*args, **kwargs):
        if g.principal.role != ADMIN_ROLE:
            print(f"[guard] Denied non-admin user {g.principal.user_id} on {request.path}",
                  file=sys.stderr)
            raise PermissionDenied(message="Admin access required")
        return f(*args, **kwargs)

    return decorated
