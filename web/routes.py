"""
web/routes.py -- Jinja2 template routes for the VPNAdmin web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same auth service and certificate manager) but authenticate with
the session cookie and answer failures with redirects instead of JSON.

Routes:
  GET  /               -- redirect to /certificates
  GET  /login          -- login form (issues the session CSRF token)
  POST /login          -- handle password login, start the session
  POST /logout         -- clear the session, redirect /login
  GET  /certificates   -- certificate page; JSON list for Accept: application/json

The certificate page drives POST /certificates/generate and
POST /certificates/revoke/{name} from /static/certificates.js, sending the
session CSRF token in the X-CSRF-Token header.
"""

from __future__ import annotations

import hmac
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from api.limiter import LOGIN_LIMIT, limiter
from auth.dependencies import (
    CSRF_SESSION_KEY,
    end_session,
    get_request_context,
    issue_csrf_token,
    start_session,
    try_get_current_user,
)
from auth.service import AuthService
from core.errors import AccountLocked, ConfigurationMissing, InvalidCredentials
from pki.manager import CertificateManager

logger = logging.getLogger("vpnadmin.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid username or password.",
    "locked": "Account temporarily locked due to too many failed attempts. Try again later.",
    "csrf": "Your session expired. Please try again.",
    "not_configured": "Authentication system not properly configured.",
    "session_expired": "Your session expired. Please log in again.",
}


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Prevents open redirect attacks where an attacker crafts a URL like:
      /login?next=https://attacker.com  or  /login?next=//attacker.com

    Both would redirect off-site after login. We only allow paths that:
    - Start with "/" (relative, server-local)
    - Do NOT start with "//" or "/\\" (protocol-relative, redirects off-site)
    """
    if next_url and next_url.startswith("/") and not next_url.startswith(("//", "/\\")):
        return next_url
    return "/certificates"


def _login_redirect(error: str, next_url: Optional[str] = None) -> RedirectResponse:
    target = f"/login?error={error}"
    if next_url:
        target += f"&next={_safe_next(next_url)}"
    return RedirectResponse(target, status_code=302)


def _wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/html" not in accept


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/", include_in_schema=False)
def index() -> RedirectResponse:
    return RedirectResponse("/certificates", status_code=302)


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request, next_url: Optional[str] = Query(None, alias="next")) -> Response:
    """Render the login page. Already-authenticated users go straight on."""
    if try_get_current_user(request) is not None:
        return RedirectResponse(_safe_next(next_url), status_code=302)
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "csrf_token": issue_csrf_token(request),
            "next_url": _safe_next(next_url),
        },
    )


@router.post("/login", response_class=HTMLResponse)
@limiter.limit(LOGIN_LIMIT)
def login_post(
    request: Request,
    username: str = Form(..., max_length=255),
    password: str = Form(..., max_length=255),
    csrf_token: str = Form(""),
    next_url: Optional[str] = Form(None, alias="next"),
) -> RedirectResponse:
    """Handle username/password login form submission."""
    expected = request.session.get(CSRF_SESSION_KEY, "")
    if not expected or not hmac.compare_digest(expected.encode(), csrf_token.encode()):
        logger.warning("Login form submitted with a missing or stale CSRF token")
        return _login_redirect("csrf", next_url)

    auth_service: AuthService = request.app.state.auth_service
    ctx = get_request_context(request)
    try:
        verified = auth_service.verify_credentials(username, password, ctx)
    except AccountLocked:
        return _login_redirect("locked", next_url)
    except InvalidCredentials:
        return _login_redirect("bad_credentials", next_url)
    except ConfigurationMissing:
        return _login_redirect("not_configured", next_url)

    start_session(request, verified)
    auth_service.security_log.event(
        ctx.with_actor(verified), "AUTHENTICATION", "LOGIN_SUCCESS", "success", username=verified, method="session"
    )
    return RedirectResponse(_safe_next(next_url), status_code=302)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session and redirect to the login page."""
    username = end_session(request)
    if username:
        ctx = get_request_context(request).with_actor(username)
        request.app.state.security_log.event(ctx, "AUTHENTICATION", "LOGOUT", "success", method="session")
    return RedirectResponse("/login", status_code=302)


# ---------------------------------------------------------------------------
# GET /certificates -- certificate page
# ---------------------------------------------------------------------------


@router.get("/certificates", response_class=HTMLResponse)
def certificates_page(request: Request) -> Response:
    user = try_get_current_user(request)
    if _wants_json(request):
        if user is None:
            return JSONResponse(
                status_code=401,
                content={"error": {"code": "unauthorized", "message": "Authentication required."}},
            )
        manager: CertificateManager = request.app.state.cert_manager
        rows = [m.to_dict() for m in manager.list_certificates()]
        return JSONResponse(content={"total": len(rows), "certificates": rows})

    if user is None:
        return RedirectResponse("/login?next=/certificates", status_code=302)
    manager = request.app.state.cert_manager
    return templates.TemplateResponse(
        request,
        "certificates.html",
        {
            "username": user.username,
            "certificates": manager.list_certificates(),
            "csrf_token": issue_csrf_token(request),
        },
    )
