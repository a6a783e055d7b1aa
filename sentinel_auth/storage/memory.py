from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

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


class MemoryStore:
    """In-process store for development and tests.

    Every table is a dict guarded by one re-entrant lock; each mutation is
    snapshotted to ``fs_root/state/memory_store.json`` and reloaded on start.
    MFA secrets are kept Fernet-encrypted, both in memory and on disk.
    """

    def __init__(
        self, fs_root: str = "/tmp/sentinel", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        # keyed by user_id; email uniqueness is checked on insert
        self.credentials: Dict[str, Credential] = {}
        self.mfa_enrollments: Dict[str, MfaEnrollment] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)

        if not self._load_state():
            self._persist_state()
        self.logger.info(
            "memory_store_initialized",
            fs_root=str(self.fs_root),
            users=len(self.users),
        )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        return ensure_utc(datetime.fromisoformat(raw))

    # -- user accounts -----------------------------------------------------

    def create_user(
        self,
        permission_level: PermissionLevel | str = PermissionLevel.BASE,
        *,
        user_id: Optional[str] = None,
    ) -> UserAccount:
        with self._data_lock:
            user = UserAccount.new(PermissionLevel(permission_level))
            if user_id:
                if user_id in self.users:
                    raise ConstraintViolation(
                        "user already exists",
                        {"user_id": user_id},
                        constraint="user_account",
                    )
                user.id = user_id
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_window: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[UserAccount]:
        """Increment the failure counter and engage the lockout in one step."""
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.lockout_until = now + lockout_window
            else:
                user.lockout_until = None
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def reset_login_failures(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            if user.failed_login_attempts == 0 and user.lockout_until is None:
                return
            user.failed_login_attempts = 0
            user.lockout_until = None
            user.updated_at = utcnow()
            self._persist_state()

    # -- credentials -------------------------------------------------------

    def create_credential(
        self, user_id: str, email: str, password_hash: str
    ) -> Credential:
        normalized = normalize_email(email)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials",
                    {"user_id": user_id},
                    constraint="user_account",
                )
            if user_id in self.credentials:
                raise ConstraintViolation(
                    "credentials already exist for user",
                    {"user_id": user_id},
                    constraint="credential_user",
                )
            if any(c.email == normalized for c in self.credentials.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint="credential_email",
                )
            credential = Credential(
                user_id=user_id, email=normalized, password_hash=password_hash
            )
            self.credentials[user_id] = credential
            self._persist_state()
            return replace(credential)

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        normalized = normalize_email(email)
        with self._data_lock:
            found = next(
                (c for c in self.credentials.values() if c.email == normalized), None
            )
            return replace(found) if found else None

    def get_credential_by_user(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            found = self.credentials.get(user_id)
            return replace(found) if found else None

    # -- MFA enrollments ---------------------------------------------------

    def _decrypted(self, record: MfaEnrollment) -> MfaEnrollment:
        return replace(
            record, secret_base32=decrypt_secret(self._mfa_cipher, record.secret_base32)
        )

    def get_mfa_enrollment(self, user_id: str) -> Optional[MfaEnrollment]:
        with self._data_lock:
            record = self.mfa_enrollments.get(user_id)
            return self._decrypted(record) if record else None

    def provision_mfa_secret(self, user_id: str, secret_base32: str) -> MfaEnrollment:
        """Store a not-yet-enabled secret unless the user already has one.

        Returns whichever enrollment ends up stored, so concurrent callers all
        see the same secret.
        """
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for mfa",
                    {"user_id": user_id},
                    constraint="user_account",
                )
            existing = self.mfa_enrollments.get(user_id)
            if existing:
                return self._decrypted(existing)
            now = utcnow()
            record = MfaEnrollment(
                user_id=user_id,
                secret_base32=encrypt_secret(self._mfa_cipher, secret_base32),
                enabled=False,
                created_at=now,
                updated_at=now,
            )
            self.mfa_enrollments[user_id] = record
            self._persist_state()
            return self._decrypted(record)

    def set_mfa_enabled(
        self, user_id: str, enabled: bool = True
    ) -> Optional[MfaEnrollment]:
        with self._data_lock:
            record = self.mfa_enrollments.get(user_id)
            if not record:
                return None
            if record.enabled != enabled:
                record.enabled = enabled
                record.updated_at = utcnow()
                self._persist_state()
            return self._decrypted(record)

    def clear_mfa_enrollment(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa_enrollments.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # -- refresh tokens ----------------------------------------------------

    def _insert_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        if token_hash in self._refresh_by_hash:
            raise ConstraintViolation(
                "refresh token hash already exists", constraint="refresh_token_hash"
            )
        record = RefreshToken.new(user_id, token_hash, expires_at)
        self.refresh_tokens[record.id] = record
        self._refresh_by_hash[token_hash] = record.id
        return record

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            record = self._insert_refresh_token(user_id, token_hash, expires_at)
            self._persist_state()
            return replace(record)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(token_id) if token_id else None
            return replace(record) if record else None

    def find_valid_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        record = self.get_refresh_token_by_hash(token_hash)
        if record and record.is_valid(now):
            return record
        return None

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Replace a valid token with a new one; None if it is no longer valid."""
        now = now or utcnow()
        with self._data_lock:
            token_id = self._refresh_by_hash.get(old_hash)
            current = self.refresh_tokens.get(token_id) if token_id else None
            if not current or not current.is_valid(now):
                return None
            successor = self._insert_refresh_token(
                current.user_id, new_hash, new_expires_at
            )
            current.revoked_at = now
            current.replaced_by = successor.id
            self._persist_state()
            return replace(successor)

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        replaced_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = now or utcnow()
            record.replaced_by = replaced_by
            self._persist_state()
            return True

    # -- persistence -------------------------------------------------------

    def _prune_refresh_tokens(self, now: datetime) -> None:
        """Drop refresh tokens past expiry; they can never be presented again."""
        expired = [t for t in self.refresh_tokens.values() if t.expires_at <= now]
        for record in expired:
            self.refresh_tokens.pop(record.id, None)
            self._refresh_by_hash.pop(record.token_hash, None)

    def _persist_state(self) -> None:
        self._prune_refresh_tokens(utcnow())
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "mfa_enrollments": [
                self._serialize_mfa_enrollment(m)
                for m in self.mfa_enrollments.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.mfa_enrollments = {
            m["user_id"]: self._deserialize_mfa_enrollment(m)
            for m in data.get("mfa_enrollments", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self._refresh_by_hash = {
            t.token_hash: t.id for t in self.refresh_tokens.values()
        }
        return True

    def _serialize_user(self, user: UserAccount) -> dict:
        return {
            "id": user.id,
            "permission_level": user.permission_level.value,
            "failed_login_attempts": user.failed_login_attempts,
            "lockout_until": self._serialize_datetime(user.lockout_until),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> UserAccount:
        return UserAccount(
            id=data["id"],
            permission_level=PermissionLevel(data.get("permission_level", "BASE")),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            lockout_until=self._deserialize_datetime(data.get("lockout_until")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_credential(self, credential: Credential) -> dict:
        return {
            "user_id": credential.user_id,
            "email": credential.email,
            "password_hash": credential.password_hash,
            "created_at": self._serialize_datetime(credential.created_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            user_id=data["user_id"],
            email=normalize_email(data["email"]),
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_mfa_enrollment(self, record: MfaEnrollment) -> dict:
        # secret_base32 is already ciphertext here
        return {
            "user_id": record.user_id,
            "secret": record.secret_base32,
            "enabled": record.enabled,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_mfa_enrollment(self, data: dict) -> MfaEnrollment:
        return MfaEnrollment(
            user_id=data["user_id"],
            secret_base32=data["secret"],
            enabled=bool(data.get("enabled", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by": record.replaced_by,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
        )
