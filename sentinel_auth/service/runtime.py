from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sentinel_auth.config import Settings, get_settings
from sentinel_auth.logging import get_logger
from sentinel_auth.service.auth import AuthService
from sentinel_auth.service.mfa import TotpMfaService
from sentinel_auth.service.passwords import Argon2PasswordHasher
from sentinel_auth.service.refresh_tokens import RefreshTokenIssuer
from sentinel_auth.service.tokens import TokenMinter
from sentinel_auth.storage.memory import MemoryStore
from sentinel_auth.storage.postgres import PostgresStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Service instances shared by every request of one app."""

    def __init__(self, settings: Settings, store: Store, auth: AuthService) -> None:
        self.settings = settings
        self.store = store
        self.auth = auth


def build_store(settings: Settings) -> Store:
    mfa_key = settings.mfa_encryption_key or settings.jwt_secret
    if settings.use_memory_store:
        return MemoryStore(
            fs_root=settings.shared_fs_root, mfa_encryption_key=mfa_key
        )
    return PostgresStore(settings.database_url, mfa_encryption_key=mfa_key)


def build_runtime(
    settings: Optional[Settings] = None, *, store: Optional[Store] = None
) -> Runtime:
    settings = settings or get_settings()
    logger.info(
        "runtime_init_started",
        use_memory_store=settings.use_memory_store,
        test_mode=settings.test_mode,
    )
    try:
        store = store or build_store(settings)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            error=str(exc),
            database_url=_mask_url_password(settings.database_url),
        )
        raise

    auth = AuthService(
        credentials=store,
        users=store,
        mfa=store,
        refresh_tokens=store,
        hasher=Argon2PasswordHasher(),
        mfa_service=TotpMfaService(
            settings.mfa_issuer, window_steps=settings.mfa_window_steps
        ),
        minter=TokenMinter(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=settings.access_token_ttl,
        ),
        refresh_issuer=RefreshTokenIssuer(settings.refresh_token_ttl),
        settings=settings,
    )
    logger.info("runtime_init_completed", store=type(store).__name__)
    return Runtime(settings, store, auth)
