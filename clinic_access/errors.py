"""
Access-control error taxonomy and its HTTP mapping.
"""

from typing import Any, Dict, Optional


class AccessError(Exception):
    """Base class; each subclass carries the HTTP status it maps to."""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "message": self.message}
        body.update(self.extra)
        return body


class AuthenticationError(AccessError):
    status_code = 401
    default_message = "Authentication required"


class ClinicContextMissing(AccessError):
    status_code = 400
    default_message = "Clinic context required"


class ValidationError(AccessError):
    status_code = 400
    default_message = "Invalid request"


class PermissionDenied(AccessError):
    status_code = 403
    default_message = "Permission denied"

    def __init__(self, required: Optional[str] = None, message: Optional[str] = None):
        if required is None:
            super().__init__(message)
        else:
            super().__init__(message, required=required)
        self.required = required


class NotFound(AccessError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AccessError):
    status_code = 409
    default_message = "Conflict"


class InternalError(AccessError):
    status_code = 500
    default_message = "Internal permission guard error"


class ConfigurationError(Exception):
    """Raised at boot when the route/resource table is inconsistent."""
