"""
Error taxonomy for the MFA service.

Every failure the core surfaces is an MFAError subclass carrying a stable
machine code and an HTTP-style status class. The API layer renders them;
the core never raises HTTPException itself.
"""
from typing import Any, Dict, Optional


class MFAError(Exception):
    """Base class for all MFA service errors."""

    status_code = 500
    code = "MFA_ERROR"
    retryable = False

    def __init__(self, message: str = "MFA error", details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": type(self).__name__,
            "detail": self.message,
            "code": self.code,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(MFAError):
    """Malformed input: bad code format, short password, missing field."""
    status_code = 400
    code = "VALIDATION_ERROR"


class Unauthorized(MFAError):
    """Wrong password, wrong code, or an unusable token."""
    status_code = 401
    code = "UNAUTHORIZED"


class NotFound(MFAError):
    """No such user, MFA session or pending activation."""
    status_code = 404
    code = "NOT_FOUND"


class InvalidState(MFAError):
    """The account is not in a state that allows the operation."""
    status_code = 409
    code = "INVALID_STATE"


class Conflict(MFAError):
    """The request no longer matches current state (e.g. already active)."""
    status_code = 409
    code = "CONFLICT"


class Expired(MFAError):
    """A pending activation passed its window."""
    status_code = 410
    code = "EXPIRED"


class Locked(MFAError):
    """Lockout threshold reached; attempts are refused until unlocked."""
    status_code = 423
    code = "LOCKED"


class UpstreamUnavailable(MFAError):
    """The Identity Gateway could not be reached or timed out."""
    status_code = 503
    code = "UPSTREAM_UNAVAILABLE"
    retryable = True
