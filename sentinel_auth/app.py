from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sentinel_auth.api.error_handling import error_response, register_exception_handlers
from sentinel_auth.api.routes import (
    ACCESS_COOKIE_NAME,
    REFRESH_COOKIE_NAME,
    bearer_token,
    router,
)
from sentinel_auth.logging import configure_logging, get_logger, set_correlation_id
from sentinel_auth.service.csrf import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    csrf_tokens_match,
)
from sentinel_auth.service.runtime import Runtime, build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# Endpoints that establish a session cannot expect a CSRF token yet
_CSRF_EXEMPT_PATHS = {"/v1/auth/login", "/v1/auth/refresh"}


def _requires_csrf(request: Request) -> bool:
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return False
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return False
    # Bearer clients are not exposed to ambient cookie credentials
    if bearer_token(request):
        return False
    return bool(
        request.cookies.get(ACCESS_COOKIE_NAME) or request.cookies.get(REFRESH_COOKIE_NAME)
    )


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI application around an assembled runtime."""
    runtime = runtime or build_runtime()
    settings = runtime.settings
    configure_logging(
        settings.log_level,
        json_output=settings.log_json,
        development_mode=settings.log_dev_mode,
    )

    app = FastAPI(title="Sentinel Auth", version=__version__)
    app.state.runtime = runtime

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", tags=["health"])
    def healthz():
        return {"status": "ok", "version": __version__}

    # Middleware added last runs first: CSRF, then request id, then headers, then CORS
    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        if not _requires_csrf(request):
            return await call_next(request)
        header_token = request.headers.get(CSRF_HEADER_NAME)
        cookie_token = request.cookies.get(CSRF_COOKIE_NAME)
        if not csrf_tokens_match(header_token, cookie_token):
            logger.warning(
                "csrf_rejected",
                path=request.url.path,
                method=request.method,
                header_present=bool(header_token),
                cookie_present=bool(cookie_token),
            )
            return error_response(403, "missing or invalid CSRF token", code="forbidden")
        return await call_next(request)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with X-Request-ID (client-supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.cookie_secure:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            CSRF_HEADER_NAME,
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    logger.info("app_created", version=__version__)
    return app
