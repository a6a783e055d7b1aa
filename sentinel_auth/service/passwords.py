from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sentinel_auth.logging import get_logger
from sentinel_auth.service.errors import ValidationError

logger = get_logger(__name__)

# Checked in order; the first failing rule is reported
_PASSWORD_RULES = (
    (lambda pw: len(pw) >= 8, "Password must be at least 8 characters."),
    (lambda pw: re.search(r"[A-Z]", pw) is not None, "Password must include an uppercase letter."),
    (lambda pw: re.search(r"[a-z]", pw) is not None, "Password must include a lowercase letter."),
    (lambda pw: re.search(r"[0-9]", pw) is not None, "Password must include a number."),
    (lambda pw: re.search(r"[^A-Za-z0-9]", pw) is not None, "Password must include a symbol."),
)


def validate_password_policy(password: str) -> None:
    """Raise ``ValidationError`` naming the first password rule that fails."""
    for check, message in _PASSWORD_RULES:
        if not check(password or ""):
            raise ValidationError(message, detail={"field": "password"})


class Argon2PasswordHasher:
    """argon2id hashing with a boolean compare."""

    algo = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, raw: str) -> str:
        return self._hasher.hash(raw)

    def compare(self, raw: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, raw)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False
