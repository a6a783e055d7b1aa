from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. Messages are safe to surface to the caller verbatim.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "Validation error."


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Unauthorized."


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password or wrong login-time MFA code.

    The three cases share one message so callers cannot tell them apart.
    """
    error_code = "invalid_credentials"
    default_message = "Invalid credentials."


class InvalidTokenError(AuthenticationError):
    """Session token is missing, malformed, expired or badly signed (401)."""
    error_code = "invalid_token"
    default_message = "Invalid token."


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is unknown, expired or already rotated (401)."""
    error_code = "invalid_refresh_token"
    default_message = "Invalid refresh token."


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden."


class InsufficientPermissionsError(ForbiddenError):
    """Permission level does not allow the operation (403)."""
    error_code = "insufficient_permissions"
    default_message = "Insufficient permissions."


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "User not found."


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict."


class AccountLockedError(ServiceError):
    """Too many failed logins; the account is temporarily locked (429)."""
    status_code = 429
    error_code = "account_locked"
    default_message = "Account locked. Try again later."


class MfaNotConfiguredError(ValidationError):
    error_code = "mfa_not_configured"
    default_message = "MFA not configured."


class MfaAlreadyEnabledError(ValidationError):
    error_code = "mfa_already_enabled"
    default_message = "MFA already enabled."


class InvalidMfaTokenError(ValidationError):
    error_code = "invalid_mfa_token"
    default_message = "Invalid MFA token."


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidRefreshTokenError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "MfaNotConfiguredError",
    "MfaAlreadyEnabledError",
    "InvalidMfaTokenError",
    "ServerError",
]
