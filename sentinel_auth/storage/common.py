"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str]) -> Fernet:
    """Build the Fernet cipher used to encrypt MFA secrets at rest."""
    if not key_material:
        raise RuntimeError("MFA encryption key material is required")
    try:
        return Fernet(derive_cipher_key(key_material))
    except Exception as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, stored: str) -> str:
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken as exc:
        raise RuntimeError("MFA secret could not be decrypted; key changed?") from exc


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "normalize_email",
    "derive_cipher_key",
    "build_mfa_cipher",
    "encrypt_secret",
    "decrypt_secret",
    "ensure_utc",
]
