"""
core/errors.py -- Error taxonomy for the token lifecycle engine.

Each exception carries the HTTP status_code and the stable error_code the
API layer renders. The engine raises these; api/main.py maps them to the
ErrorResponse envelope in a single exception handler.

Enumeration resistance: InvalidCredentials deliberately covers unknown
email, wrong password, expired/revoked/reused refresh tokens, and
deactivated accounts on refresh/verify. Callers cannot tell these apart.

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class AuthError(Exception):
    """Base class for errors surfaced to callers of the engine."""

    status_code: int = 400
    error_code: str = "error"
    default_message: str = "Request failed."

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationFailure(AuthError):
    status_code = 400
    error_code = "validation_error"
    default_message = "Request validation failed."


class WeakPassword(ValidationFailure):
    """Password rejected by the strength policy. reason is safe to show the user."""

    error_code = "weak_password"
    default_message = "Password does not meet the strength policy."

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(self.default_message, detail=reason)


class PasswordMismatch(ValidationFailure):
    error_code = "password_mismatch"
    default_message = "Passwords do not match."


class AlreadyExists(AuthError):
    status_code = 409
    error_code = "already_exists"
    default_message = "An account already exists for this email."


class NotFound(AuthError):
    """Internal lookup miss. The engine reshapes it where enumeration matters."""

    status_code = 404
    error_code = "not_found"
    default_message = "Resource not found."


class InvalidCredentials(AuthError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid credentials."


class AccountLocked(AuthError):
    """Login suspended after repeated failures. Distinct from 401 so clients know to wait."""

    status_code = 403
    error_code = "account_locked"
    default_message = "Account temporarily locked after too many failed attempts."

    def __init__(self, locked_until: Optional[datetime] = None) -> None:
        self.locked_until = locked_until
        detail = locked_until.isoformat() if locked_until is not None else None
        super().__init__(self.default_message, detail=detail)


class AccountDisabled(AuthError):
    status_code = 403
    error_code = "account_disabled"
    default_message = "Account is disabled."


class Forbidden(AuthError):
    """Authenticated, but the role does not allow the operation."""

    status_code = 403
    error_code = "forbidden"
    default_message = "Not allowed."


class ServiceUnavailable(AuthError):
    """A backing store was unreachable or timed out. Always fail closed."""

    status_code = 503
    error_code = "service_unavailable"
    default_message = "Authentication service temporarily unavailable."
