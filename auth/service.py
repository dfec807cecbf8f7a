"""
auth/service.py -- Authentication service: credentials, lockout, JWT pairs.

Order of checks in verify_credentials() matters:

  1. Lockout first. A locked bucket is rejected before the password is
     looked at, but still spends one bcrypt round against the dummy hash so
     "locked" and "wrong password" cost the same time. Rejected attempts
     while locked are not recorded and do not extend the window.
  2. Configuration. No configured credential is a server-side fault
     (ConfigurationMissing), never a client one.
  3. Username + password. bcrypt always runs, against the dummy hash when
     the username is unknown, so response time does not reveal whether the
     username exists. Either mismatch records a failure and raises the same
     InvalidCredentials.
  4. Success clears the lockout counter for the caller's scope.

Steps 1-4 run under LockoutGuard.attempt_lock(), so concurrent attempts
on one lockout scope are judged in turn: once the threshold is recorded,
every attempt still waiting sees the lock instead of another bcrypt
verdict.

Every outcome is written to the security log with the request's
correlation id.

Layer rule: no imports from api/, web/, or pki/.
"""

from __future__ import annotations

import hmac
import logging
import time
from collections.abc import Callable

from auth.lockout import LockoutGuard
from auth.models import Credential, TokenPair
from auth.tokens import TokenService, burn_password_check, verify_password
from core.audit import RequestContext, SecurityLog
from core.config import Settings
from core.errors import (
    AccountLocked,
    ConfigurationMissing,
    InvalidCredentials,
    IPMismatch,
    TokenExpired,
    TokenInvalid,
)
from state.store import KeyedStore

logger = logging.getLogger("vpnadmin.auth")

_CATEGORY = "AUTHENTICATION"


class AuthService:
    """Owns credential verification, lockout tracking and token lifecycle.

    Usage:
        service = AuthService.from_settings(settings, backend.namespace("failed_attempts"), security_log)
        pair = service.authenticate("admin", "secret", ctx)
        claims = service.validate_token(pair.access_token, ctx.client_ip)
    """

    def __init__(
        self,
        credential: Credential | None,
        tokens: TokenService,
        lockout: LockoutGuard,
        security_log: SecurityLog,
        enforce_ip_binding: bool = False,
    ) -> None:
        self.credential = credential
        self.tokens = tokens
        self.lockout = lockout
        self.security_log = security_log
        self.enforce_ip_binding = enforce_ip_binding

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        attempts_store: KeyedStore,
        security_log: SecurityLog,
        clock: Callable[[], float] = time.time,
    ) -> AuthService:
        credential = None
        if settings.admin_username and settings.admin_password_hash:
            credential = Credential(settings.admin_username, settings.admin_password_hash)
        return cls(
            credential=credential,
            tokens=TokenService(
                access_secret=settings.jwt_secret,
                refresh_secret=settings.jwt_refresh_secret,
                access_expire_seconds=settings.access_token_expire_seconds,
                refresh_expire_seconds=settings.refresh_token_expire_seconds,
                clock=clock,
            ),
            lockout=LockoutGuard(
                attempts_store,
                max_failed_attempts=settings.max_failed_attempts,
                lockout_duration_seconds=settings.lockout_duration_seconds,
                scope=settings.lockout_scope,
                clock=clock,
            ),
            security_log=security_log,
            enforce_ip_binding=settings.enforce_ip_binding,
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def verify_credentials(self, username: str, password: str, ctx: RequestContext) -> str:
        """Check username/password under the lockout guard. Returns the username.

        Raises AccountLocked, ConfigurationMissing or InvalidCredentials.
        """
        client_ip = ctx.client_ip
        with self.lockout.attempt_lock(username, client_ip):
            return self._verify_locked(username, password, client_ip, ctx)

    def _verify_locked(self, username: str, password: str, client_ip: str, ctx: RequestContext) -> str:
        if self.lockout.is_account_locked(username, client_ip):
            burn_password_check(password)
            self.security_log.event(ctx, _CATEGORY, "LOGIN_LOCKED", "locked", username=username)
            raise AccountLocked(f"login for {username!r} from {client_ip} rejected: locked")

        if self.credential is None:
            logger.error("Authentication credentials not configured (ADMIN_USERNAME / ADMIN_PASSWORD_HASH)")
            self.security_log.event(
                ctx, _CATEGORY, "LOGIN_FAILED", "failure", username=username, reason="not_configured"
            )
            raise ConfigurationMissing("no administrator credential configured")

        username_ok = hmac.compare_digest(username.encode("utf-8"), self.credential.username.encode("utf-8"))
        if username_ok:
            password_ok = verify_password(password, self.credential.password_hash)
        else:
            burn_password_check(password)
            password_ok = False

        if not (username_ok and password_ok):
            record = self.lockout.record_failed_attempt(username, client_ip)
            self.security_log.event(
                ctx,
                _CATEGORY,
                "LOGIN_FAILED",
                "failure",
                username=username,
                reason="invalid_credentials",
                attempt_count=record.count,
            )
            raise InvalidCredentials(f"bad credentials for {username!r} from {client_ip}")

        self.lockout.clear_failed_attempts(username, client_ip)
        return username

    def authenticate(self, username: str, password: str, ctx: RequestContext) -> TokenPair:
        """Verify credentials and issue a fresh token pair bound to the caller's IP."""
        verified = self.verify_credentials(username, password, ctx)
        pair = self.generate_tokens(verified, ctx.client_ip)
        self.security_log.event(
            ctx.with_actor(verified),
            _CATEGORY,
            "LOGIN_SUCCESS",
            "success",
            username=verified,
            method="token",
            expires_in=pair.expires_in,
        )
        return pair

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def generate_tokens(self, username: str, client_ip: str) -> TokenPair:
        return self.tokens.issue_pair(username, client_ip)

    def _check_binding(self, claims: dict, client_ip: str) -> None:
        if self.enforce_ip_binding and claims.get("client_ip") != client_ip:
            raise IPMismatch(f"token bound to {claims.get('client_ip')} presented from {client_ip}")

    def validate_token(self, token: str, client_ip: str, ctx: RequestContext | None = None) -> dict:
        """Verify an access token and return its claims.

        Raises TokenExpired, TokenInvalid, or IPMismatch when IP binding is
        enforced and the caller's IP differs from the token's bound IP.
        """
        ctx = ctx or RequestContext.new(client_ip=client_ip)
        try:
            claims = self.tokens.decode_access(token)
            self._check_binding(claims, client_ip)
        except IPMismatch as exc:
            self.security_log.event(ctx, _CATEGORY, "TOKEN_IP_MISMATCH", "failure", error=str(exc))
            raise
        except TokenInvalid as exc:
            event = "TOKEN_EXPIRED" if isinstance(exc, TokenExpired) else "TOKEN_INVALID"
            self.security_log.event(ctx, _CATEGORY, event, "failure", error=str(exc))
            raise
        return claims

    def refresh_token(self, refresh_token: str, client_ip: str, ctx: RequestContext | None = None) -> TokenPair:
        """Exchange a valid refresh token for a brand-new pair.

        Only the refresh secret is tried, so an access token presented here
        fails. Every failure surfaces as TokenInvalid (expiry and IP mismatch
        are subclasses).
        """
        ctx = ctx or RequestContext.new(client_ip=client_ip)
        try:
            claims = self.tokens.decode_refresh(refresh_token)
            self._check_binding(claims, client_ip)
        except TokenInvalid as exc:
            self.security_log.event(ctx, _CATEGORY, "TOKEN_REFRESH_FAILED", "failure", error=str(exc))
            raise
        pair = self.generate_tokens(claims["sub"], client_ip)
        self.security_log.event(
            ctx.with_actor(claims["sub"]),
            _CATEGORY,
            "TOKEN_REFRESH_SUCCESS",
            "success",
            username=claims["sub"],
            expires_in=pair.expires_in,
        )
        return pair

    # ------------------------------------------------------------------
    # Lockout pass-throughs
    # ------------------------------------------------------------------

    def record_failed_attempt(self, username: str, client_ip: str) -> None:
        self.lockout.record_failed_attempt(username, client_ip)

    def is_account_locked(self, username: str, client_ip: str) -> bool:
        return self.lockout.is_account_locked(username, client_ip)

    def clear_failed_attempts(self, username: str, client_ip: str) -> None:
        self.lockout.clear_failed_attempts(username, client_ip)

    def cleanup(self) -> int:
        return self.lockout.cleanup()
