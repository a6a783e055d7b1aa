"""HTTP-level tests for the /v1/auth endpoints.

Covers login, refresh rotation, logout, CSRF enforcement on cookie
sessions, the MFA enrollment flow and credential provisioning.
"""

import pytest

from conftest import TEST_PASSWORD
from sentinel_auth.service.csrf import CSRF_HEADER_NAME
from sentinel_auth.service.mfa import TotpMfaService
from sentinel_auth.storage.models import PermissionLevel

EMAIL = "operator@example.com"


def _login(client, email=EMAIL, password=TEST_PASSWORD, **extra):
    return client.post(
        "/v1/auth/login", json={"email": email, "password": password, **extra}
    )


def _csrf(client):
    return {CSRF_HEADER_NAME: client.cookies["csrf_token"]}


def _cleared(response, name):
    return any(
        header.startswith(f"{name}=") and "max-age=0" in header.lower()
        for header in response.headers.get_list("set-cookie")
    )


@pytest.fixture
def account(make_account):
    return make_account(EMAIL)


class TestLogin:
    def test_sets_session_cookies(self, client, account):
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == account.id
        assert data["permission_level"] == "BASE"
        assert data["mfa_required"] is False
        assert data["csrf_token"] == response.cookies["csrf_token"]
        assert {"access_token", "refresh_token", "csrf_token"} <= set(response.cookies.keys())
        access_header = next(
            h for h in response.headers.get_list("set-cookie") if h.startswith("access_token=")
        )
        assert "httponly" in access_header.lower()

    def test_email_case_insensitive(self, client, account):
        assert _login(client, email="OPERATOR@Example.com").status_code == 200

    def test_wrong_password(self, client, account):
        response = _login(client, password="Wr0ng!Password")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert "access_token" not in response.cookies

    def test_unknown_email_looks_like_wrong_password(self, client, account):
        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="Wr0ng!Password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout(self, client, account):
        for _ in range(4):
            assert _login(client, password="Wr0ng!Password").status_code == 401

        locked = _login(client, password="Wr0ng!Password")
        assert locked.status_code == 429
        assert locked.json()["error"]["code"] == "account_locked"

        # correct password is still refused while locked
        assert _login(client).status_code == 429

    def test_login_is_not_csrf_checked(self, client, account):
        _login(client)

        assert _login(client).status_code == 200


class TestSession:
    def test_me_with_cookie(self, client, account):
        _login(client)

        response = client.get("/v1/auth/me")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == account.id
        assert data["mfa_verified"] is True
        assert data["mfa_enabled"] is False

    def test_me_with_bearer(self, client, account):
        token = _login(client).cookies["access_token"]
        client.cookies.clear()

        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200

    def test_non_ascii_token(self, client, account):
        header, payload, _ = _login(client).cookies["access_token"].split(".")
        client.cookies.clear()

        response = client.get(
            "/v1/auth/me",
            headers={"Authorization": f"Bearer {header}.{payload}.\xe9".encode("latin-1")},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer junk"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestRefresh:
    def test_rotates_refresh_cookie(self, client, account):
        first = _login(client).cookies["refresh_token"]

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        second = response.cookies["refresh_token"]
        assert second != first
        assert response.json()["data"]["csrf_token"] == response.cookies["csrf_token"]

    def test_old_refresh_token_rejected(self, client, account):
        first = _login(client).cookies["refresh_token"]
        assert client.post("/v1/auth/refresh").status_code == 200
        client.cookies.clear()

        client.cookies.set("refresh_token", first)
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_refresh_token"

    def test_missing_cookie(self, client):
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Missing refresh token."


class TestLogoutAndCsrf:
    def test_logout_requires_csrf_header(self, client, account):
        _login(client)

        response = client.post("/v1/auth/logout")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_mismatched_csrf_header(self, client, account):
        _login(client)

        response = client.post("/v1/auth/logout", headers={CSRF_HEADER_NAME: "forged"})

        assert response.status_code == 403

    def test_logout_revokes_and_clears(self, client, account):
        _login(client)

        response = client.post("/v1/auth/logout", headers=_csrf(client))

        assert response.status_code == 204
        for name in ("access_token", "refresh_token", "csrf_token"):
            assert _cleared(response, name)
        assert client.post("/v1/auth/refresh").status_code == 401

    def test_revoked_refresh_token_cannot_be_replayed(self, client, account):
        refresh_token = _login(client).cookies["refresh_token"]
        client.post("/v1/auth/logout", headers=_csrf(client))
        client.cookies.clear()

        client.cookies.set("refresh_token", refresh_token)

        assert client.post("/v1/auth/refresh").status_code == 401

    def test_non_bearer_authorization_still_needs_csrf(self, client, account):
        """Only a Bearer header replaces the cookie session; other schemes do not."""
        _login(client)

        response = client.post(
            "/v1/auth/mfa/setup", headers={"Authorization": "Basic Zm9vOmJhcg=="}
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_bearer_requests_skip_csrf(self, client, account):
        token = _login(client).cookies["access_token"]

        response = client.post(
            "/v1/auth/mfa/setup", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 200


class TestMfaFlow:
    def _enable(self, client):
        setup = client.post("/v1/auth/mfa/setup", json={"label": "laptop"}, headers=_csrf(client))
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret_base32"]
        assert "laptop" in setup.json()["data"]["otpauth_url"]
        code = TotpMfaService().generate_code(secret)
        verified = client.post("/v1/auth/mfa/verify", json={"code": code}, headers=_csrf(client))
        assert verified.status_code == 200
        return secret, verified

    def test_status_before_setup(self, client, account):
        _login(client)

        response = client.get("/v1/auth/mfa/status")

        assert response.json()["data"] == {"enabled": False, "configured": False}

    def test_setup_then_verify(self, client, account):
        _login(client)

        _, verified = self._enable(client)

        assert verified.json()["data"]["mfa_enabled"] is True
        assert "refresh_token" in verified.cookies
        status = client.get("/v1/auth/mfa/status").json()["data"]
        assert status == {"enabled": True, "configured": True}

    def test_verify_with_wrong_code(self, client, account):
        _login(client)
        client.post("/v1/auth/mfa/setup", headers=_csrf(client))

        response = client.post(
            "/v1/auth/mfa/verify", json={"code": "abcdef"}, headers=_csrf(client)
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_mfa_token"

    def test_verify_without_setup(self, client, account):
        _login(client)

        response = client.post(
            "/v1/auth/mfa/verify", json={"code": "123456"}, headers=_csrf(client)
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "MFA not setup."

    def test_setup_after_enable_rejected(self, client, account):
        _login(client)
        self._enable(client)

        response = client.post("/v1/auth/mfa/setup", headers=_csrf(client))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "mfa_already_enabled"

    def test_login_without_code_is_partial(self, client, account):
        _login(client)
        secret, _ = self._enable(client)
        client.cookies.clear()

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["mfa_required"] is True
        assert data["csrf_token"] is None
        assert "refresh_token" not in response.cookies
        me = client.get("/v1/auth/me").json()["data"]
        assert me["mfa_verified"] is False

    def test_partial_session_is_limited(self, client, account):
        _login(client)
        self._enable(client)
        client.cookies.clear()
        _login(client)

        disable = client.post("/v1/auth/mfa/disable", headers=_csrf(client))
        credentials = client.post(
            "/v1/auth/credentials",
            json={
                "user_id": account.id,
                "email": "x@example.com",
                "password": TEST_PASSWORD,
                "confirm_password": TEST_PASSWORD,
            },
            headers=_csrf(client),
        )

        assert disable.status_code == 401
        assert disable.json()["error"]["message"] == "MFA required."
        assert credentials.status_code == 401

    def test_partial_session_promoted_by_verify(self, client, account):
        _login(client)
        secret, _ = self._enable(client)
        client.cookies.clear()
        _login(client)

        code = TotpMfaService().generate_code(secret)
        response = client.post("/v1/auth/mfa/verify", json={"code": code}, headers=_csrf(client))

        assert response.status_code == 200
        assert client.get("/v1/auth/me").json()["data"]["mfa_verified"] is True

    def test_login_with_code(self, client, account):
        _login(client)
        secret, _ = self._enable(client)
        client.cookies.clear()

        response = _login(client, mfa_code=TotpMfaService().generate_code(secret))

        assert response.status_code == 200
        assert response.json()["data"]["mfa_required"] is False
        assert "refresh_token" in response.cookies

    def test_login_with_wrong_code(self, client, account):
        _login(client)
        self._enable(client)
        client.cookies.clear()

        response = _login(client, mfa_code="abcdef")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_with_unicode_digits(self, client, account, memory_store):
        _login(client)
        self._enable(client)
        client.cookies.clear()

        response = _login(client, mfa_code="\u0661\u0662\u0663\u0664\u0665\u0666")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert memory_store.get_user(account.id).failed_login_attempts == 1

    def test_disable(self, client, account):
        _login(client)
        self._enable(client)

        response = client.post("/v1/auth/mfa/disable", headers=_csrf(client))

        assert response.status_code == 204
        assert client.get("/v1/auth/mfa/status").json()["data"]["enabled"] is False
        client.cookies.clear()
        assert _login(client).json()["data"]["mfa_required"] is False


class TestCredentialProvisioning:
    def _payload(self, user_id, email="new@example.com", password=TEST_PASSWORD):
        return {
            "user_id": user_id,
            "email": email,
            "password": password,
            "confirm_password": password,
        }

    def test_admin_provisions(self, client, make_account, memory_store):
        make_account("admin@example.com", level=PermissionLevel.ADMIN)
        target = memory_store.create_user(PermissionLevel.RECRUIT)
        _login(client, email="admin@example.com")

        response = client.post(
            "/v1/auth/credentials", json=self._payload(target.id), headers=_csrf(client)
        )

        assert response.status_code == 201
        assert response.json()["data"] == {"user_id": target.id, "email": "new@example.com"}
        client.cookies.clear()
        assert _login(client, email="new@example.com").status_code == 200

    def test_base_level_forbidden(self, client, account, memory_store):
        target = memory_store.create_user()
        _login(client)

        response = client.post(
            "/v1/auth/credentials", json=self._payload(target.id), headers=_csrf(client)
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_permissions"

    def test_duplicate_email(self, client, make_account, memory_store):
        make_account("admin@example.com", level=PermissionLevel.HIGH_COMMAND)
        target = memory_store.create_user()
        _login(client, email="admin@example.com")

        response = client.post(
            "/v1/auth/credentials",
            json=self._payload(target.id, email="ADMIN@example.com"),
            headers=_csrf(client),
        )

        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Email already in use."

    def test_weak_password(self, client, make_account, memory_store):
        make_account("admin@example.com", level=PermissionLevel.COMMAND)
        target = memory_store.create_user()
        _login(client, email="admin@example.com")

        response = client.post(
            "/v1/auth/credentials",
            json=self._payload(target.id, password="weakpassword"),
            headers=_csrf(client),
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Password must include an uppercase letter."

    def test_unknown_user(self, client, make_account):
        make_account("admin@example.com", level=PermissionLevel.ADMIN)
        _login(client, email="admin@example.com")

        response = client.post(
            "/v1/auth/credentials", json=self._payload("missing"), headers=_csrf(client)
        )

        assert response.status_code == 404
