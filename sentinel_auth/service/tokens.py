from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sentinel_auth.logging import get_logger
from sentinel_auth.service.errors import InvalidTokenError
from sentinel_auth.storage.models import PermissionLevel

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionTokenPayload:
    user_id: str
    permission_level: PermissionLevel
    mfa_verified: bool = True


class TokenMinter:
    """Signs and verifies HS256 session tokens.

    Tokens carry ``sub``, ``permission_level`` and ``mfa_verified`` on top of
    the registered ``iss``/``aud``/``iat``/``exp``/``jti`` claims.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, payload: SessionTokenPayload, *, now: Optional[float] = None) -> str:
        issued_at = int(time.time() if now is None else now)
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
            "sub": payload.user_id,
            "permission_level": PermissionLevel(payload.permission_level).value,
            "mfa_verified": bool(payload.mfa_verified),
            "jti": str(uuid.uuid4()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str, *, now: Optional[float] = None) -> SessionTokenPayload:
        # Well-formed tokens are base64url segments only
        if not token or not token.isascii():
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        # Reject "none" and asymmetric algorithms outright
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(claims, dict):
            raise InvalidTokenError()

        if claims.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError()

        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        current = time.time() if now is None else now
        if exp_ts <= current:
            raise InvalidTokenError("Token expired.")

        subject = claims.get("sub")
        if not subject or not isinstance(subject, str):
            raise InvalidTokenError()
        try:
            level = PermissionLevel(claims.get("permission_level"))
        except ValueError:
            raise InvalidTokenError()
        # Tokens minted before MFA existed carry no flag and count as verified
        mfa_verified = claims.get("mfa_verified", True)
        return SessionTokenPayload(
            user_id=subject,
            permission_level=level,
            mfa_verified=mfa_verified is not False,
        )
