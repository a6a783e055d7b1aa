import os
import tempfile

# Configure the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sentinel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from sentinel_auth.app import create_app  # noqa: E402
from sentinel_auth.config import Settings, reset_settings_cache  # noqa: E402
from sentinel_auth.service.auth import AuthService  # noqa: E402
from sentinel_auth.service.mfa import TotpMfaService  # noqa: E402
from sentinel_auth.service.passwords import Argon2PasswordHasher  # noqa: E402
from sentinel_auth.service.refresh_tokens import RefreshTokenIssuer  # noqa: E402
from sentinel_auth.service.runtime import Runtime  # noqa: E402
from sentinel_auth.service.tokens import TokenMinter  # noqa: E402
from sentinel_auth.storage.memory import MemoryStore  # noqa: E402
from sentinel_auth.storage.models import PermissionLevel  # noqa: E402

TEST_PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Settings for one test, isolated under tmp_path."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        cookie_secure=False,
    )


@pytest.fixture
def memory_store(tmp_path, settings):
    return MemoryStore(
        fs_root=str(tmp_path / "store"), mfa_encryption_key=settings.jwt_secret
    )


@pytest.fixture
def hasher():
    """argon2id with minimal cost so the suite stays fast."""
    return Argon2PasswordHasher(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)
    )


@pytest.fixture
def mfa_service(settings):
    return TotpMfaService(settings.mfa_issuer, window_steps=settings.mfa_window_steps)


@pytest.fixture
def minter(settings):
    return TokenMinter(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        ttl=settings.access_token_ttl,
    )


@pytest.fixture
def auth_service(memory_store, settings, hasher, mfa_service, minter):
    return AuthService(
        credentials=memory_store,
        users=memory_store,
        mfa=memory_store,
        refresh_tokens=memory_store,
        hasher=hasher,
        mfa_service=mfa_service,
        minter=minter,
        refresh_issuer=RefreshTokenIssuer(settings.refresh_token_ttl),
        settings=settings,
    )


@pytest.fixture
def make_account(memory_store, auth_service):
    """Create an account with credentials and return the UserAccount."""

    def _make(
        email: str = "operator@example.com",
        password: str = TEST_PASSWORD,
        level: PermissionLevel = PermissionLevel.BASE,
    ):
        user = memory_store.create_user(level)
        auth_service.provision_credentials(user.id, email, password, password)
        return user

    return _make


@pytest.fixture
def runtime(settings, memory_store, auth_service):
    return Runtime(settings, memory_store, auth_service)


@pytest.fixture
def app(runtime):
    return create_app(runtime)


@pytest.fixture
def client(app):
    return TestClient(app)
