"""
api/routes/auth.py -- Token authentication REST endpoints.

Routes:
  POST /auth/login    -- password login; returns a JWT pair, sets accessToken/refreshToken cookies
  POST /auth/refresh  -- rotate the pair from the refreshToken cookie (or JSON body)
  POST /auth/logout   -- clears both cookies; 200

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT) on top of the
  per-account lockout in AuthService.
  AuthService.authenticate() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every /auth/* response (security headers middleware).
  Failures raise VPNAdminError subclasses; api/main.py renders them, so the
  bodies never say whether the username or the password was wrong.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import LoginRequest, MessageResponse, RefreshRequest, TokenResponse
from auth.dependencies import get_request_context, issue_csrf_token, try_get_current_user
from auth.models import TokenPair
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from core.config import get_settings
from core.errors import TokenInvalid

# Auth policy:
# - POST /auth/login:   public -- login endpoint must be unauthenticated
# - POST /auth/refresh: public -- the refresh token is the credential
# - POST /auth/logout:  public -- clearing cookies needs no prior auth
router = APIRouter()


def _token_response(request: Request, pair: TokenPair, username: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            csrf_token=issue_csrf_token(request),
            username=username,
        ).model_dump(),
    )
    set_auth_cookies(resp, pair, secure=get_settings().secure_cookies)
    return resp


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(LOGIN_LIMIT)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; issue a JWT pair.

    Locked buckets answer 423, bad credentials 401 with the same message for
    wrong username and wrong password.
    """
    auth_service: AuthService = request.app.state.auth_service
    pair = auth_service.authenticate(body.username, body.password, get_request_context(request))
    return _token_response(request, pair, body.username)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a brand-new pair."""
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    if not token:
        raise TokenInvalid("no refresh token presented")
    auth_service: AuthService = request.app.state.auth_service
    ctx = get_request_context(request)
    pair = auth_service.refresh_token(token, ctx.client_ip, ctx)
    claims = auth_service.tokens.decode_access(pair.access_token)
    return _token_response(request, pair, claims["sub"])


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Clear the JWT cookies.

    Tokens are stateless, so an access token copied elsewhere stays valid
    until it expires.
    """
    user = try_get_current_user(request)
    ctx = get_request_context(request)
    request.app.state.security_log.event(
        ctx.with_actor(user.username) if user else ctx,
        "AUTHENTICATION",
        "LOGOUT",
        "success",
        method="token",
    )
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp
