from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Collection, NoReturn, Optional, Protocol

from sentinel_auth.config import Settings
from sentinel_auth.logging import get_logger
from sentinel_auth.service.errors import (
    AccountLockedError,
    ConflictError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    InvalidMfaTokenError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    MfaAlreadyEnabledError,
    MfaNotConfiguredError,
    NotFoundError,
    ValidationError,
)
from sentinel_auth.service.passwords import validate_password_policy
from sentinel_auth.service.refresh_tokens import RefreshTokenIssuer
from sentinel_auth.service.tokens import SessionTokenPayload, TokenMinter
from sentinel_auth.storage.errors import ConstraintViolation
from sentinel_auth.storage.models import (
    Credential,
    MfaEnrollment,
    PermissionLevel,
    RefreshToken,
    UserAccount,
)

logger = get_logger(__name__)


class UserAccountStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_window: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[UserAccount]: ...

    def reset_login_failures(self, user_id: str) -> None: ...


class CredentialStore(Protocol):
    def create_credential(
        self, user_id: str, email: str, password_hash: str
    ) -> Credential: ...

    def get_credential_by_email(self, email: str) -> Optional[Credential]: ...

    def get_credential_by_user(self, user_id: str) -> Optional[Credential]: ...


class MfaEnrollmentStore(Protocol):
    def get_mfa_enrollment(self, user_id: str) -> Optional[MfaEnrollment]: ...

    def provision_mfa_secret(self, user_id: str, secret_base32: str) -> MfaEnrollment: ...

    def set_mfa_enabled(
        self, user_id: str, enabled: bool = True
    ) -> Optional[MfaEnrollment]: ...

    def clear_mfa_enrollment(self, user_id: str) -> bool: ...


class RefreshTokenLedger(Protocol):
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def find_valid_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        replaced_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool: ...


class PasswordHasher(Protocol):
    def hash(self, raw: str) -> str: ...

    def compare(self, raw: str, hashed: str) -> bool: ...


class MfaService(Protocol):
    def generate_secret(self) -> str: ...

    def build_otpauth_url(self, secret_base32: str, label: str) -> str: ...

    def verify(self, secret_base32: str, code: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    permission_level: PermissionLevel
    mfa_verified: bool = True


@dataclass
class LoginResult:
    user_id: str
    permission_level: PermissionLevel
    mfa_enabled: bool
    mfa_required: bool
    session_token: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass
class SessionTokens:
    session_token: str
    refresh_token: str
    user_id: str
    permission_level: PermissionLevel


@dataclass
class MfaSetupResult:
    secret_base32: str
    otpauth_url: str


@dataclass
class MfaStatus:
    enabled: bool
    configured: bool


class AuthService:
    """Login, refresh rotation, logout and MFA enrollment.

    Collaborators are passed in explicitly; a single store object may serve
    as all four repositories. Every method is synchronous and safe to call
    from concurrent request threads, with the stores providing atomicity for
    the lockout counter and refresh rotation.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        users: UserAccountStore,
        mfa: MfaEnrollmentStore,
        refresh_tokens: RefreshTokenLedger,
        hasher: PasswordHasher,
        mfa_service: MfaService,
        minter: TokenMinter,
        refresh_issuer: RefreshTokenIssuer,
        settings: Settings,
    ) -> None:
        self.credentials = credentials
        self.users = users
        self.mfa = mfa
        self.refresh_tokens = refresh_tokens
        self.hasher = hasher
        self.mfa_service = mfa_service
        self.minter = minter
        self.refresh_issuer = refresh_issuer
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- login -------------------------------------------------------------

    def login(
        self, email: str, password: str, mfa_code: Optional[str] = None
    ) -> LoginResult:
        credential = self.credentials.get_credential_by_email(email)
        if not credential:
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()

        user = self.users.get_user(credential.user_id)
        if not user:
            logger.error("login_user_missing", user_id=credential.user_id)
            raise NotFoundError("User not found.")

        now = self._now()
        if user.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user.id,
                lockout_until=user.lockout_until.isoformat(),
            )
            raise AccountLockedError()

        if not self.hasher.compare(password, credential.password_hash):
            self._record_failure(user.id, now, reason="password")

        enrollment = self.mfa.get_mfa_enrollment(user.id)
        mfa_enabled = bool(enrollment and enrollment.enabled)
        if mfa_enabled:
            if not mfa_code:
                pending = self.minter.sign(
                    SessionTokenPayload(
                        user_id=user.id,
                        permission_level=user.permission_level,
                        mfa_verified=False,
                    )
                )
                logger.info("login_mfa_pending", user_id=user.id)
                return LoginResult(
                    user_id=user.id,
                    permission_level=user.permission_level,
                    mfa_enabled=True,
                    mfa_required=True,
                    session_token=pending,
                )
            if not enrollment.secret_base32:
                raise MfaNotConfiguredError()
            if not self.mfa_service.verify(enrollment.secret_base32, mfa_code):
                self._record_failure(user.id, now, reason="mfa_code")

        self.users.reset_login_failures(user.id)
        issued = self.issue_session(user)
        logger.info("login_succeeded", user_id=user.id, mfa=mfa_enabled)
        return LoginResult(
            user_id=user.id,
            permission_level=user.permission_level,
            mfa_enabled=mfa_enabled,
            mfa_required=False,
            session_token=issued.session_token,
            refresh_token=issued.refresh_token,
        )

    def _record_failure(self, user_id: str, now: datetime, *, reason: str) -> NoReturn:
        updated = self.users.record_login_failure(
            user_id,
            max_attempts=self.settings.max_login_attempts,
            lockout_window=self.settings.lockout_window,
            now=now,
        )
        attempts = updated.failed_login_attempts if updated else None
        if updated and updated.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user_id,
                reason=reason,
                attempts=attempts,
                lockout_until=updated.lockout_until.isoformat(),
            )
            raise AccountLockedError()
        logger.info("login_failed", user_id=user_id, reason=reason, attempts=attempts)
        raise InvalidCredentialsError()

    # -- sessions ----------------------------------------------------------

    def _sign(self, user: UserAccount, *, mfa_verified: bool = True) -> str:
        return self.minter.sign(
            SessionTokenPayload(
                user_id=user.id,
                permission_level=user.permission_level,
                mfa_verified=mfa_verified,
            )
        )

    def issue_session(self, user: UserAccount) -> SessionTokens:
        """Mint a full session token and record a fresh refresh token."""
        refresh_token = self.refresh_issuer.generate()
        self.refresh_tokens.create_refresh_token(
            user.id,
            self.refresh_issuer.hash(refresh_token),
            self.refresh_issuer.expiry(self._now()),
        )
        return SessionTokens(
            session_token=self._sign(user),
            refresh_token=refresh_token,
            user_id=user.id,
            permission_level=user.permission_level,
        )

    def refresh(self, presented: Optional[str]) -> SessionTokens:
        if not presented:
            raise InvalidRefreshTokenError()
        now = self._now()
        token_hash = self.refresh_issuer.hash(presented)
        current = self.refresh_tokens.find_valid_refresh_token(token_hash, now)
        if not current:
            self._log_refresh_rejection(token_hash, now)
            raise InvalidRefreshTokenError()

        user = self.users.get_user(current.user_id)
        if not user:
            raise NotFoundError("User not found.")

        replacement = self.refresh_issuer.generate()
        successor = self.refresh_tokens.rotate_refresh_token(
            token_hash,
            self.refresh_issuer.hash(replacement),
            self.refresh_issuer.expiry(now),
            now,
        )
        if not successor:
            logger.warning(
                "refresh_rejected", user_id=user.id, reason="concurrent_rotation"
            )
            raise InvalidRefreshTokenError()

        logger.info(
            "refresh_rotated",
            user_id=user.id,
            previous_id=current.id,
            successor_id=successor.id,
        )
        return SessionTokens(
            session_token=self._sign(user),
            refresh_token=replacement,
            user_id=user.id,
            permission_level=user.permission_level,
        )

    def _log_refresh_rejection(self, token_hash: str, now: datetime) -> None:
        record = self.refresh_tokens.get_refresh_token_by_hash(token_hash)
        if not record:
            reason = "unknown"
        elif record.revoked_at is None:
            reason = "expired" if record.expires_at <= now else "unknown"
        else:
            reason = "revoked"
        reused = bool(record and record.revoked_at and record.replaced_by)
        logger.warning(
            "refresh_rejected",
            user_id=record.user_id if record else None,
            reason=reason,
            reused=reused,
        )

    def logout(self, presented: Optional[str]) -> None:
        """Revoke the presented refresh token; unknown or spent tokens are ignored."""
        if not presented:
            return
        now = self._now()
        current = self.refresh_tokens.find_valid_refresh_token(
            self.refresh_issuer.hash(presented), now
        )
        if not current:
            return
        if self.refresh_tokens.revoke_refresh_token(current.id, replaced_by=None, now=now):
            logger.info("logout_revoked", user_id=current.user_id)

    # -- request authentication -------------------------------------------

    def authenticate(
        self, token: Optional[str], *, allow_pending_mfa: bool = False
    ) -> AuthContext:
        if not token:
            raise InvalidTokenError("Missing token.")
        payload = self.minter.verify(token)
        if not payload.mfa_verified and not allow_pending_mfa:
            raise InvalidTokenError("MFA required.")
        return AuthContext(
            user_id=payload.user_id,
            permission_level=payload.permission_level,
            mfa_verified=payload.mfa_verified,
        )

    @staticmethod
    def require_permission(
        ctx: AuthContext, allowed: Collection[PermissionLevel]
    ) -> None:
        if ctx.permission_level not in allowed:
            logger.warning(
                "permission_denied",
                user_id=ctx.user_id,
                permission_level=ctx.permission_level.value,
            )
            raise InsufficientPermissionsError()

    def get_user(self, user_id: str) -> UserAccount:
        user = self.users.get_user(user_id)
        if not user:
            raise NotFoundError("User not found.")
        return user

    # -- MFA enrollment ----------------------------------------------------

    def mfa_status(self, user_id: str) -> MfaStatus:
        enrollment = self.mfa.get_mfa_enrollment(user_id)
        return MfaStatus(
            enabled=bool(enrollment and enrollment.enabled),
            configured=enrollment is not None,
        )

    def _default_label(self, user_id: str) -> str:
        credential = self.credentials.get_credential_by_user(user_id)
        return credential.email if credential else user_id

    def setup_mfa(self, user_id: str, label: Optional[str] = None) -> MfaSetupResult:
        if not user_id:
            raise NotFoundError("User not found.")
        label = label or self._default_label(user_id)
        existing = self.mfa.get_mfa_enrollment(user_id)
        if existing and existing.enabled:
            raise MfaAlreadyEnabledError()
        if existing:
            secret = existing.secret_base32
        else:
            self.get_user(user_id)
            try:
                stored = self.mfa.provision_mfa_secret(
                    user_id, self.mfa_service.generate_secret()
                )
            except ConstraintViolation:
                raise NotFoundError("User not found.")
            # another request may have provisioned and activated in between
            if stored.enabled:
                raise MfaAlreadyEnabledError()
            secret = stored.secret_base32
            logger.info("mfa_provisioned", user_id=user_id)
        return MfaSetupResult(
            secret_base32=secret,
            otpauth_url=self.mfa_service.build_otpauth_url(secret, label),
        )

    def verify_mfa(self, user_id: str, code: str) -> None:
        enrollment = self.mfa.get_mfa_enrollment(user_id)
        if not enrollment or not enrollment.secret_base32:
            raise MfaNotConfiguredError("MFA not setup.")
        if not self.mfa_service.verify(enrollment.secret_base32, code):
            logger.info("mfa_verify_failed", user_id=user_id)
            raise InvalidMfaTokenError()
        if not enrollment.enabled:
            self.mfa.set_mfa_enabled(user_id, True)
            logger.info("mfa_activated", user_id=user_id)

    def disable_mfa(self, user_id: str) -> None:
        if self.mfa.clear_mfa_enrollment(user_id):
            logger.info("mfa_disabled", user_id=user_id)

    # -- credential provisioning -------------------------------------------

    def provision_credentials(
        self, user_id: str, email: str, password: str, confirm_password: str
    ) -> Credential:
        if password != confirm_password:
            raise ValidationError(
                "Passwords do not match.", detail={"field": "confirm_password"}
            )
        validate_password_policy(password)
        self.get_user(user_id)
        if self.credentials.get_credential_by_user(user_id):
            raise ConflictError(
                "Credentials already exist for this user.", detail={"field": "user_id"}
            )
        if self.credentials.get_credential_by_email(email):
            raise ConflictError("Email already in use.", detail={"field": "email"})
        try:
            credential = self.credentials.create_credential(
                user_id, email, self.hasher.hash(password)
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent provisioning call
            field = "email" if exc.constraint == "credential_email" else "user_id"
            raise ConflictError(
                "Email already in use." if field == "email"
                else "Credentials already exist for this user.",
                detail={"field": field},
            )
        logger.info("credentials_provisioned", user_id=user_id)
        return credential
