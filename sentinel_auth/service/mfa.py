from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
import time
from typing import Optional
from urllib.parse import quote, urlencode

from sentinel_auth.logging import get_logger

logger = get_logger(__name__)


class TotpMfaService:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1, 30 s steps, 6 digits).

    SHA1 is what authenticator apps assume when the otpauth URI names no
    algorithm, so codes generated here match the ones on the user's device.
    """

    def __init__(
        self,
        issuer: str = "Sentinel",
        *,
        window_steps: int = 1,
        interval: int = 30,
        digits: int = 6,
    ) -> None:
        self.issuer = issuer
        self.window_steps = max(0, int(window_steps))
        self.interval = interval
        self.digits = digits

    def generate_secret(self) -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def build_otpauth_url(self, secret_base32: str, label: str) -> str:
        account = quote(f"{self.issuer}:{label}", safe=":@")
        query = urlencode(
            {
                "secret": secret_base32,
                "issuer": self.issuer,
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{account}?{query}"

    def generate_code(self, secret_base32: str, timestamp: Optional[float] = None) -> str:
        if timestamp is None:
            timestamp = time.time()
        padded = secret_base32 + "=" * ((8 - len(secret_base32) % 8) % 8)
        try:
            key = base64.b32decode(padded.upper(), True)
        except Exception:
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(
        self, secret_base32: str, code: str, *, timestamp: Optional[float] = None
    ) -> bool:
        """Check ``code`` against the current step and ``window_steps`` either side."""
        # Authenticator apps often display "123 456"
        candidate = re.sub(r"[^0-9]", "", code or "")
        if len(candidate) != self.digits:
            return False
        now = time.time() if timestamp is None else timestamp
        for offset in range(-self.window_steps, self.window_steps + 1):
            generated = self.generate_code(secret_base32, now + offset * self.interval)
            if generated and hmac.compare_digest(generated.encode(), candidate.encode()):
                return True
        return False
