from __future__ import annotations

import hmac
import secrets
from typing import Optional

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def csrf_tokens_match(header_token: Optional[str], cookie_token: Optional[str]) -> bool:
    """Double-submit check: header and cookie must both be present and equal."""
    if not header_token or not cookie_token:
        return False
    return hmac.compare_digest(header_token.encode(), cookie_token.encode())
