"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Three auth methods are checked in priority order:
  1. Session cookie ("vpn.session.id") -- set by the web UI login form.
  2. JWT cookie ("accessToken") -- set by POST /auth/login.
  3. Authorization: Bearer <token> header -- API clients.

All three converge on an AuthenticatedUser(username, method).

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() raises: HTTP 401 when no credential is presented at all,
or the TokenInvalid/TokenExpired/IPMismatch error itself when a JWT was
presented but rejected, so clients can tell "expired" from "never logged in".
There is no silent refresh here -- clients call POST /auth/refresh.

CSRF (verify_csrf): required when the caller authenticated with a cookie
(session or accessToken), because browsers attach cookies automatically.
The token lives in the session and must come back in the X-CSRF-Token
header. Bearer callers are exempt -- the header cannot be forged cross-site.

Sessions: idle timeout is sliding. Every authenticated request refreshes
last_activity; a request after SESSION_TIMEOUT_SECONDS of inactivity finds
the session cleared.

Layer rule: no imports from web/, api/, or pki/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time

from fastapi import Depends, HTTPException, Request

from auth.models import AuthenticatedUser
from auth.tokens import ACCESS_COOKIE
from core.audit import RequestContext, safe_correlation_id
from core.config import get_settings
from core.errors import TokenInvalid

logger = logging.getLogger("vpnadmin.auth")

CSRF_HEADER = "X-CSRF-Token"
CSRF_SESSION_KEY = "csrf_token"

# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_request_context(request: Request) -> RequestContext:
    """Return the RequestContext created by the correlation-id middleware.

    Falls back to a fresh context for callers mounted without the middleware.
    """
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        ctx = RequestContext(
            correlation_id=safe_correlation_id(request.headers.get("X-Request-ID")),
            client_ip=client_ip(request),
        )
        request.state.ctx = ctx
    return ctx


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------


def _session(request: Request) -> dict | None:
    # scope["session"] only exists when SessionMiddleware is mounted
    return request.scope.get("session")


def issue_csrf_token(request: Request) -> str:
    """Return the session's CSRF token, creating one if needed."""
    session = _session(request)
    if session is None:
        return ""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = session[CSRF_SESSION_KEY] = secrets.token_urlsafe(32)
    return token


def start_session(request: Request, username: str) -> str:
    """Populate a fresh authenticated session and return its CSRF token.

    The previous session content is discarded first so a session id planted
    before login never becomes an authenticated one (fixation defence).
    """
    session = request.session
    session.clear()
    now = time.time()
    session.update(
        {
            "authenticated": True,
            "username": username,
            "login_time": now,
            "last_activity": now,
            CSRF_SESSION_KEY: secrets.token_urlsafe(32),
        }
    )
    return session[CSRF_SESSION_KEY]


def end_session(request: Request) -> str | None:
    """Clear the session. Returns the username that was logged in, if any."""
    session = _session(request)
    if session is None:
        return None
    username = session.get("username") if session.get("authenticated") else None
    session.clear()
    return username


def _session_user(request: Request) -> AuthenticatedUser | None:
    session = _session(request)
    if not session or not session.get("authenticated"):
        return None
    now = time.time()
    idle = now - float(session.get("last_activity", 0))
    if idle > get_settings().session_timeout_seconds:
        logger.info("Session for %s expired after %.0fs idle", session.get("username"), idle)
        session.clear()
        return None
    session["last_activity"] = now
    return AuthenticatedUser(username=session["username"], method="session")


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def _presented_token(request: Request) -> tuple[str | None, str]:
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token, "cookie"
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None, "bearer"
    return None, ""


def _token_user(request: Request) -> AuthenticatedUser | None:
    """Resolve a presented JWT. Returns None when none was presented.

    Raises TokenInvalid (or a subclass) when one was presented but rejected.
    """
    token, method = _presented_token(request)
    if not token:
        return None
    ctx = get_request_context(request)
    claims = request.app.state.auth_service.validate_token(token, ctx.client_ip, ctx)
    return AuthenticatedUser(username=claims["sub"], method=method)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def try_get_current_user(request: Request) -> AuthenticatedUser | None:
    """Attempt to authenticate the request via session, JWT cookie or Bearer.

    Returns the AuthenticatedUser on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    user = _session_user(request)
    if user is not None:
        return user
    try:
        return _token_user(request)
    except TokenInvalid:
        return None


def get_current_user(request: Request) -> AuthenticatedUser:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: AuthenticatedUser = Depends(get_current_user)): ...
    """
    user = _session_user(request) or _token_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    ctx = get_request_context(request)
    request.state.ctx = ctx.with_actor(user.username)
    return user


def verify_csrf(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Require a valid X-CSRF-Token for cookie-authenticated callers.

    Use on state-changing routes instead of get_current_user.
    """
    if user.method == "bearer":
        return user
    session = _session(request) or {}
    expected = session.get(CSRF_SESSION_KEY, "")
    supplied = request.headers.get(CSRF_HEADER, "")
    if not expected or not supplied or not hmac.compare_digest(expected.encode(), supplied.encode()):
        request.app.state.security_log.event(
            get_request_context(request),
            "AUTHENTICATION",
            "CSRF_FAILED",
            "failure",
            path=request.url.path,
            method=user.method,
        )
        raise HTTPException(
            status_code=403,
            detail={"code": "csrf_failed", "message": "Invalid or missing CSRF token."},
        )
    return user
