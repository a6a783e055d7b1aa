"""Opaque refresh token generation and hashing.

Refresh tokens are 32 random bytes rendered as hex. Only the SHA-256 hex
digest is ever stored, so a leaked table cannot be replayed.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sentinel_auth.storage.models import utcnow


class RefreshTokenIssuer:
    def __init__(self, ttl: timedelta, *, token_bytes: int = 32) -> None:
        self.ttl = ttl
        self.token_bytes = token_bytes

    def generate(self) -> str:
        return secrets.token_hex(self.token_bytes)

    @staticmethod
    def hash(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + self.ttl
