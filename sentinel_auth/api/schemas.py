from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sentinel_auth.storage.models import PermissionLevel


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "mfa_not_configured",
    "mfa_already_enabled",
    "invalid_mfa_token",
    "invalid_refresh_token",
    "invalid_token",
    "insufficient_permissions",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=256)
    mfa_code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    user_id: str
    permission_level: PermissionLevel
    mfa_enabled: bool
    mfa_required: bool
    csrf_token: Optional[str] = None


class SessionResponse(BaseModel):
    user_id: str
    permission_level: PermissionLevel
    mfa_enabled: bool = False
    csrf_token: Optional[str] = None


class MeResponse(BaseModel):
    user_id: str
    permission_level: PermissionLevel
    mfa_enabled: bool
    mfa_verified: bool


class CreateCredentialsRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str = Field(..., max_length=256)
    confirm_password: str = Field(..., max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_credentials_email(cls, value: str) -> str:
        return _validate_email(value)


class CredentialsResponse(BaseModel):
    user_id: str
    email: str


class MfaSetupRequest(BaseModel):
    label: Optional[str] = Field(default=None, min_length=2, max_length=120)


class MfaSetupResponse(BaseModel):
    secret_base32: str
    otpauth_url: str


class MfaVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)


class MfaStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether MFA is currently enabled")
    configured: bool = Field(
        ..., description="Whether an MFA secret is provisioned (possibly pending verification)"
    )
