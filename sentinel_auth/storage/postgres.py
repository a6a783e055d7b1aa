from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sentinel_auth.logging import get_logger
from sentinel_auth.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    ensure_utc,
    normalize_email,
)
from sentinel_auth.storage.errors import ConstraintViolation
from sentinel_auth.storage.models import (
    Credential,
    MfaEnrollment,
    PermissionLevel,
    RefreshToken,
    UserAccount,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id TEXT PRIMARY KEY,
        permission_level TEXT NOT NULL DEFAULT 'BASE',
        failed_login_attempts INTEGER NOT NULL DEFAULT 0
            CHECK (failed_login_attempts >= 0),
        lockout_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES user_account(id) ON DELETE CASCADE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_enrollment (
        user_id TEXT PRIMARY KEY REFERENCES user_account(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES user_account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)

# Unique constraints Postgres names by default for the tables above
_CONSTRAINT_NAMES = {
    "auth_credential_pkey": "credential_user",
    "auth_credential_email_key": "credential_email",
    "user_account_pkey": "user_account",
    "refresh_token_token_hash_key": "refresh_token_hash",
}


def _constraint_name(exc: errors.Error) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    raw = getattr(diag, "constraint_name", None) if diag else None
    return _CONSTRAINT_NAMES.get(raw or "", raw)


class PostgresStore:
    """Postgres-backed store for accounts, credentials, MFA and refresh tokens."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self.logger.info("postgres_store_initialized")

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    # -- row mappers -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> UserAccount:
        return UserAccount(
            id=str(row["id"]),
            permission_level=PermissionLevel(row.get("permission_level") or "BASE"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            lockout_until=ensure_utc(row.get("lockout_until")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            user_id=str(row["user_id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    def _enrollment_from_row(self, row: Dict[str, Any]) -> MfaEnrollment:
        return MfaEnrollment(
            user_id=str(row["user_id"]),
            secret_base32=decrypt_secret(self._mfa_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            revoked_at=ensure_utc(row.get("revoked_at")),
            replaced_by=row.get("replaced_by"),
        )

    # -- user accounts -----------------------------------------------------

    def create_user(
        self,
        permission_level: PermissionLevel | str = PermissionLevel.BASE,
        *,
        user_id: Optional[str] = None,
    ) -> UserAccount:
        user = UserAccount.new(PermissionLevel(permission_level))
        if user_id:
            user.id = user_id
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_account (id, permission_level, failed_login_attempts, created_at, updated_at)
                    VALUES (%s, %s, 0, %s, %s)
                    """,
                    (user.id, user.permission_level.value, user.created_at, user.updated_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already exists", {"user_id": user.id}, constraint="user_account"
            )
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_window: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[UserAccount]:
        """Increment the failure counter and engage the lockout in one statement."""
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_account
                SET failed_login_attempts = failed_login_attempts + 1,
                    lockout_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE NULL
                    END,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, now + lockout_window, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def reset_login_failures(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_account
                SET failed_login_attempts = 0, lockout_until = NULL, updated_at = now()
                WHERE id = %s AND (failed_login_attempts <> 0 OR lockout_until IS NOT NULL)
                """,
                (user_id,),
            )

    # -- credentials -------------------------------------------------------

    def create_credential(
        self, user_id: str, email: str, password_hash: str
    ) -> Credential:
        credential = Credential(
            user_id=user_id, email=normalize_email(email), password_hash=password_hash
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_credential (user_id, email, password_hash, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        credential.user_id,
                        credential.email,
                        credential.password_hash,
                        credential.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = _constraint_name(exc)
            field = "email" if constraint == "credential_email" else "user_id"
            raise ConstraintViolation(
                "credentials already exist", {"field": field}, constraint=constraint
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials",
                {"user_id": user_id},
                constraint="user_account",
            )
        return credential

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_credential WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_by_user(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    # -- MFA enrollments ---------------------------------------------------

    def get_mfa_enrollment(self, user_id: str) -> Optional[MfaEnrollment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_enrollment WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._enrollment_from_row(row) if row else None

    def provision_mfa_secret(self, user_id: str, secret_base32: str) -> MfaEnrollment:
        """Insert a not-yet-enabled secret unless one exists; return the stored row."""
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO mfa_enrollment (user_id, secret, enabled, created_at, updated_at)
                    VALUES (%s, %s, FALSE, now(), now())
                    ON CONFLICT (user_id) DO NOTHING
                    """,
                    (user_id, encrypt_secret(self._mfa_cipher, secret_base32)),
                )
                row = conn.execute(
                    "SELECT * FROM mfa_enrollment WHERE user_id = %s", (user_id,)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for mfa", {"user_id": user_id}, constraint="user_account"
            )
        return self._enrollment_from_row(row)

    def set_mfa_enabled(
        self, user_id: str, enabled: bool = True
    ) -> Optional[MfaEnrollment]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_enrollment SET enabled = %s, updated_at = now()
                WHERE user_id = %s
                RETURNING *
                """,
                (enabled, user_id),
            ).fetchone()
        return self._enrollment_from_row(row) if row else None

    def clear_mfa_enrollment(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM mfa_enrollment WHERE user_id = %s RETURNING user_id",
                (user_id,),
            ).fetchone()
        return row is not None

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        record = RefreshToken.new(user_id, token_hash, expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_hash,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", constraint=_constraint_name(exc)
            )
        return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def find_valid_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Insert the successor and revoke the current row in one transaction.

        The current row is locked with ``FOR UPDATE`` so two concurrent
        rotations of the same token cannot both succeed.
        """
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s FOR UPDATE",
                (old_hash,),
            ).fetchone()
            if not row:
                return None
            current = self._refresh_from_row(row)
            if not current.is_valid(now):
                return None
            successor = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=current.user_id,
                token_hash=new_hash,
                expires_at=new_expires_at,
                created_at=now,
            )
            conn.execute(
                """
                INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    successor.id,
                    successor.user_id,
                    successor.token_hash,
                    successor.expires_at,
                    successor.created_at,
                ),
            )
            conn.execute(
                "UPDATE refresh_token SET revoked_at = %s, replaced_by = %s WHERE id = %s",
                (now, successor.id, current.id),
            )
        return successor

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        replaced_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, replaced_by = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now or utcnow(), replaced_by, token_id),
            ).fetchone()
        return row is not None
