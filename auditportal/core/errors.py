"""
core/errors.py

Typed failures raised by the authentication and authorization core.

Each error carries a stable machine-readable `code` and the HTTP status the
route layer should answer with. Services raise these; the exception handler
registered in main.py turns them into the JSON error envelope, so no
service module imports FastAPI's HTTPException.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for every failure surfaced to API callers."""

    code = "AUTH_ERROR"
    status_code = 400
    default_message = "Authentication error."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    # Same message for "no such user" and "wrong password"
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "ACCOUNT_LOCKED"
    status_code = 423
    default_message = "Account is locked due to too many failed login attempts. Try again later."


class AccountInactive(AuthError):
    code = "ACCOUNT_INACTIVE"
    status_code = 403
    default_message = "Account is inactive. Contact your firm administrator."


class SessionConflict(AuthError):
    code = "SESSION_CONFLICT"
    status_code = 409
    default_message = (
        "You already have an active session for this tool. "
        "Log out of the other session first."
    )


class ToolAccessDenied(AuthError):
    code = "TOOL_ACCESS_DENIED"
    status_code = 403
    default_message = "You do not have access to this tool. Request access from your firm administrator."


class InvalidOrExpiredToken(AuthError):
    code = "INVALID_TOKEN"
    status_code = 401
    default_message = "Invalid or expired token."


class InvalidRefreshToken(InvalidOrExpiredToken):
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token."


class InvalidOldPassword(AuthError):
    code = "INVALID_OLD_PASSWORD"
    status_code = 400
    default_message = "Invalid old password."


class Unauthenticated(AuthError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required."


class Forbidden(AuthError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Insufficient permissions."


class NotFound(AuthError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found."


class PolicyViolation(AuthError):
    """Rejected role/permission administration request."""

    code = "POLICY_VIOLATION"
    status_code = 400
    default_message = "Request violates firm policy."
