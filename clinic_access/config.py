"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Roles ────────────────────────────────────────────────────────────
ADMIN_ROLE = "admin"
DEFAULT_MEMBER_ROLE = "staff"

# ── Request context ──────────────────────────────────────────────────
CLINIC_HEADER = "X-Clinic-Id"

# Paths the permission guard never inspects.
PUBLIC_PREFIXES = ("/api/auth", "/api/public", "/api/health", "/health", "/docs")

# Resources that do not live inside a clinic (tenant) boundary.
UNSCOPED_RESOURCES = {"users", "settings"}

# Unmapped /api/<segment> paths are allowed unless this is switched on.
GUARD_FAIL_CLOSED = os.getenv("GUARD_FAIL_CLOSED", "0").lower() in {"1", "true", "yes"}

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 24

# ── Test-report comparison ───────────────────────────────────────────
MODEL_NAME = "gpt-4.1-mini"
MIN_COMPARISON_REPORTS = 2
MAX_COMPARISON_REPORTS = 10
TREND_CHANGE_THRESHOLD = 20.0      # % first → last
FLUCTUATION_THRESHOLD = 15.0       # mean % step variation
HEMATOLOGY_CHANGE_THRESHOLD = 15.0


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
