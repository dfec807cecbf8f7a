"""
api/main.py -- FastAPI application entry point for VPNAdmin.

Exposes the authentication service and the certificate lifecycle manager
over HTTP. The web login pages are mounted by asgi.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. request_context        -- correlation id (X-Request-ID) + RequestContext on request.state
  2. security_headers       -- nosniff, frame deny, referrer policy, CSP, no-store on auth pages
  3. log_requests           -- one access log line per request
  4. SessionMiddleware      -- signed "vpn.session.id" cookie (web login, CSRF token)
  5. SlowAPIMiddleware      -- default + per-route rate limits from api.limiter
  6. TrustedHostMiddleware  -- rejects requests with unexpected Host headers

Lifespan handles startup (state backend, security log, auth service,
certificate manager, lockout cleanup task) and shutdown (cancel cleanup task,
close log handler and backend) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.certificates import router as certificates_router
from auth.dependencies import client_ip, get_current_user
from auth.models import AuthenticatedUser
from auth.service import AuthService
from core.audit import RequestContext, SecurityLog, safe_correlation_id
from core.config import get_settings
from core.errors import VPNAdminError
from pki.manager import CertificateManager
from state.store import open_backend

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("vpnadmin.api")

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Drop stale failed-attempt records every LOCKOUT_CLEANUP_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. The store call runs in
    a worker thread because the SQL backend blocks.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        removed = await asyncio.to_thread(app.state.auth_service.cleanup)
        if removed:
            logger.info("Lockout cleanup removed %d stale records", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the services on startup, tear them down on shutdown.

    Startup order matters:
      1. State backend -- the auth service and the manager both take namespaces from it.
      2. Security log  -- handed to both services.
      3. Services.
      4. Cleanup task last -- references app.state.auth_service.
    """
    settings = get_settings()
    logger.info("VPNAdmin starting up")
    backend = open_backend(settings.state_db_url)
    app.state.state_backend = backend
    logger.info("State backend: %s", "sql" if settings.state_db_url else "memory")
    app.state.security_log = SecurityLog(settings.security_log_enabled, settings.security_log_path)
    app.state.auth_service = AuthService.from_settings(
        settings, backend.namespace("failed_attempts"), app.state.security_log
    )
    if app.state.auth_service.credential is None:
        logger.warning("ADMIN_USERNAME / ADMIN_PASSWORD_HASH not set -- every login will fail")
    app.state.cert_manager = CertificateManager.from_settings(settings, backend, app.state.security_log)
    logger.info("Certificate manager ready (cert_dir=%s, pki=%s)", settings.cert_dir, settings.pki_dir)
    app.state.cleanup_task = asyncio.create_task(
        _cleanup_loop(app, settings.lockout_cleanup_interval_seconds)
    )

    yield

    app.state.cleanup_task.cancel()
    app.state.security_log.close()
    backend.close()
    logger.info("VPNAdmin shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="VPNAdmin API",
    description="VPN client certificate administration: authentication, issuance, download and revocation.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the outside, so the last registration is the
# first to see a request. @app.middleware("http") functions below are added
# after these and therefore wrap them.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="vpn.session.id",
    max_age=_settings.session_timeout_seconds,
    same_site="strict",
    https_only=_settings.secure_cookies,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    ctx = getattr(request.state, "ctx", None)
    logger.info(
        "%s %s %d %.1fms %s %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client_ip(request),
        ctx.correlation_id if ctx else "-",
    )
    return response


_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'; form-action 'self'",
}


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if _settings.secure_cookies:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    if request.url.path.startswith(("/auth/", "/login")):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a RequestContext and echo its correlation id as X-Request-ID."""
    ctx = RequestContext(
        correlation_id=safe_correlation_id(request.headers.get("X-Request-ID")),
        client_ip=client_ip(request),
    )
    request.state.ctx = ctx
    response = await call_next(request)
    response.headers["X-Request-ID"] = ctx.correlation_id
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(certificates_router, tags=["Certificates"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: AuthenticatedUser = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="VPNAdmin API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: AuthenticatedUser = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="VPNAdmin API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {"code", "message", "detail"?}} whatever
# raised it: domain errors, rate limits, schema validation, auth dependencies
# and unexpected exceptions alike.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.exception_handler(VPNAdminError)
async def vpnadmin_error_handler(request: Request, exc: VPNAdminError) -> JSONResponse:
    """Render a domain error with its status code and public message.

    str(exc) can carry paths, exit codes and stderr. It is logged here and
    never sent to the client.
    """
    log = logger.info if exc.is_client_error else logger.error
    log("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return _error_response(exc.status_code, exc.code, exc.public_message, headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After set to the length of the exceeded window."""
    window = exc.limit.limit.get_expiry() if getattr(exc, "limit", None) is not None else 60
    logger.warning("Rate limit %s exceeded by %s on %s", exc.detail, client_ip(request), request.url.path)
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        detail=str(exc.detail),
        headers={"Retry-After": str(int(window))},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query params answer 422.

    Client names are not schema-checked, so an invalid name reaches the
    manager and answers 400 like the CLI does.
    """
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # auth dependencies raise with a {"code", "message"} dict already
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full traceback to the server log, generic 500 to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from rate limits --
# health checks from load balancers and monitoring must not be throttled.
# ---------------------------------------------------------------------------


@limiter.exempt
@app.get("/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
