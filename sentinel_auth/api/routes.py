from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, Response

from sentinel_auth.api.schemas import (
    CreateCredentialsRequest,
    CredentialsResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MfaSetupRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    SessionResponse,
)
from sentinel_auth.config import Settings
from sentinel_auth.logging import get_logger
from sentinel_auth.service.auth import AuthContext, SessionTokens
from sentinel_auth.service.csrf import CSRF_COOKIE_NAME, generate_csrf_token
from sentinel_auth.service.errors import InvalidRefreshTokenError
from sentinel_auth.service.runtime import Runtime
from sentinel_auth.storage.models import CREDENTIAL_ADMIN_LEVELS

logger = get_logger(__name__)

ACCESS_COOKIE_NAME = "access_token"
REFRESH_COOKIE_NAME = "refresh_token"

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def bearer_token(request: Request) -> Optional[str]:
    """Token from an ``Authorization: Bearer`` header; other schemes are ignored."""
    header = request.headers.get("Authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return None


def _extract_session_token(request: Request) -> Optional[str]:
    return bearer_token(request) or request.cookies.get(ACCESS_COOKIE_NAME)


def get_principal(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthContext:
    """Require a fully verified session."""
    return runtime.auth.authenticate(_extract_session_token(request))


def get_pending_principal(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthContext:
    """Accept sessions still waiting for their MFA code."""
    return runtime.auth.authenticate(
        _extract_session_token(request), allow_pending_mfa=True
    )


def _cookie_options(settings: Settings, *, httponly: bool) -> dict:
    return {
        "httponly": httponly,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "domain": settings.cookie_domain,
        "path": "/",
    }


def _apply_session_cookies(
    response: Response,
    settings: Settings,
    *,
    session_token: str,
    refresh_token: Optional[str],
) -> str:
    """Bind the session cookies and return the fresh CSRF token."""
    access_max_age = int(settings.access_token_ttl.total_seconds())
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        session_token,
        max_age=access_max_age,
        **_cookie_options(settings, httponly=True),
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE_NAME,
            refresh_token,
            max_age=int(settings.refresh_token_ttl.total_seconds()),
            **_cookie_options(settings, httponly=True),
        )
    csrf_token = generate_csrf_token()
    # Readable by scripts so the client can echo it in X-CSRF-Token
    response.set_cookie(
        CSRF_COOKIE_NAME,
        csrf_token,
        max_age=access_max_age,
        **_cookie_options(settings, httponly=False),
    )
    return csrf_token


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name, httponly in (
        (ACCESS_COOKIE_NAME, True),
        (REFRESH_COOKIE_NAME, True),
        (CSRF_COOKIE_NAME, False),
    ):
        response.delete_cookie(name, **_cookie_options(settings, httponly=httponly))


def _session_envelope(
    response: Response, runtime: Runtime, issued: SessionTokens
) -> Envelope:
    csrf_token = _apply_session_cookies(
        response,
        runtime.settings,
        session_token=issued.session_token,
        refresh_token=issued.refresh_token,
    )
    status = runtime.auth.mfa_status(issued.user_id)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=issued.user_id,
            permission_level=issued.permission_level,
            mfa_enabled=status.enabled,
            csrf_token=csrf_token,
        ),
    )


@router.post("/login", response_model=Envelope)
def login(
    body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime)
):
    """Authenticate with email, password and an optional MFA code.

    Accounts with MFA enabled that omit the code receive a partial session
    (``mfa_required=true``) usable only for the MFA endpoints and ``/me``.

    Raises:
        401: If the credentials or the MFA code are wrong
        429: If the account is locked after repeated failures
    """
    result = runtime.auth.login(body.email, body.password, body.mfa_code)
    csrf_token = _apply_session_cookies(
        response,
        runtime.settings,
        session_token=result.session_token,
        refresh_token=None if result.mfa_required else result.refresh_token,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user_id,
            permission_level=result.permission_level,
            mfa_enabled=result.mfa_enabled,
            mfa_required=result.mfa_required,
            csrf_token=None if result.mfa_required else csrf_token,
        ),
    )


@router.post("/refresh", response_model=Envelope)
def refresh(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    """Rotate the refresh token held in the ``refresh_token`` cookie."""
    presented = request.cookies.get(REFRESH_COOKIE_NAME)
    if not presented:
        raise InvalidRefreshTokenError("Missing refresh token.")
    issued = runtime.auth.refresh(presented)
    return _session_envelope(response, runtime, issued)


@router.post("/logout", status_code=204)
def logout(request: Request, runtime: Runtime = Depends(get_runtime)):
    presented = request.cookies.get(REFRESH_COOKIE_NAME)
    if presented:
        runtime.auth.logout(presented)
    response = Response(status_code=204)
    _clear_session_cookies(response, runtime.settings)
    return response


@router.get("/me", response_model=Envelope)
def me(
    principal: AuthContext = Depends(get_pending_principal),
    runtime: Runtime = Depends(get_runtime),
):
    status = runtime.auth.mfa_status(principal.user_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            permission_level=principal.permission_level,
            mfa_enabled=status.enabled,
            mfa_verified=principal.mfa_verified,
        ),
    )


@router.post("/credentials", response_model=Envelope, status_code=201)
def create_credentials(
    body: CreateCredentialsRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Provision email/password credentials for an existing account.

    Restricted to ALTO-COMANDO, COMANDO and ADMIN.
    """
    runtime.auth.require_permission(principal, CREDENTIAL_ADMIN_LEVELS)
    credential = runtime.auth.provision_credentials(
        body.user_id, body.email, body.password, body.confirm_password
    )
    logger.info(
        "credentials_created_by", actor_id=principal.user_id, user_id=credential.user_id
    )
    return Envelope(
        status="ok",
        data=CredentialsResponse(user_id=credential.user_id, email=credential.email),
    )


@router.get("/mfa/status", response_model=Envelope)
def mfa_status(
    principal: AuthContext = Depends(get_pending_principal),
    runtime: Runtime = Depends(get_runtime),
):
    status = runtime.auth.mfa_status(principal.user_id)
    return Envelope(
        status="ok",
        data=MfaStatusResponse(enabled=status.enabled, configured=status.configured),
    )


@router.post("/mfa/setup", response_model=Envelope)
def mfa_setup(
    body: Optional[MfaSetupRequest] = Body(default=None),
    principal: AuthContext = Depends(get_pending_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Provision (or re-display) the caller's TOTP secret.

    Raises:
        400: If MFA is already enabled
    """
    label = body.label if body else None
    result = runtime.auth.setup_mfa(principal.user_id, label)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret_base32=result.secret_base32, otpauth_url=result.otpauth_url
        ),
    )


@router.post("/mfa/verify", response_model=Envelope)
def mfa_verify(
    body: MfaVerifyRequest,
    response: Response,
    principal: AuthContext = Depends(get_pending_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Confirm a TOTP code, activate MFA and promote the session to a full one."""
    runtime.auth.verify_mfa(principal.user_id, body.code)
    user = runtime.auth.get_user(principal.user_id)
    issued = runtime.auth.issue_session(user)
    return _session_envelope(response, runtime, issued)


@router.post("/mfa/disable", status_code=204)
def mfa_disable(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.disable_mfa(principal.user_id)
    return Response(status_code=204)
