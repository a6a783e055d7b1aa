from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PermissionLevel(str, Enum):
    """Closed set of account permission levels, highest first."""

    HIGH_COMMAND = "ALTO-COMANDO"
    COMMAND = "COMANDO"
    ADMIN = "ADMIN"
    BASE = "BASE"
    RECRUIT = "RECRUTA"


# Levels allowed to provision credentials for other accounts
CREDENTIAL_ADMIN_LEVELS = frozenset(
    {PermissionLevel.HIGH_COMMAND, PermissionLevel.COMMAND, PermissionLevel.ADMIN}
)


@dataclass
class UserAccount:
    id: str
    permission_level: PermissionLevel = PermissionLevel.BASE
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, permission_level: PermissionLevel = PermissionLevel.BASE
    ) -> "UserAccount":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            permission_level=PermissionLevel(permission_level),
            created_at=now,
            updated_at=now,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_until is not None and self.lockout_until > now


@dataclass
class Credential:
    user_id: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaEnrollment:
    user_id: str
    secret_base32: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, expires_at: datetime
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
        )

    def is_valid(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now
