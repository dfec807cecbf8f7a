"""
auth/tokens.py -- JWT pair issuance/verification, password hashing, cookies.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       distinct secrets (JWT_SECRET / JWT_REFRESH_SECRET), so a token of one
       kind can never verify as the other. Each token also carries a "type"
       claim that is checked on decode, plus issuer/audience claims.

       Claims: sub (username), client_ip, iat, exp, jti, type, iss, aud.
       jti is random per token, so two pairs issued within the same second
       are still distinct strings.

  Expiry: exp is computed from an injectable clock, so tests can issue a
       token "in the past" and watch it expire without sleeping.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in the authentication service so response
       time does not reveal whether a username exists.

Layer rule: no imports from api/, web/, or pki/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import TokenPair
from core.errors import TokenExpired, TokenInvalid

logger = logging.getLogger("vpnadmin.auth")

_ALGORITHM = "HS256"
_ISSUER = "vpnadmin"
_AUDIENCE = "vpnadmin-admin"

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The login models cap password
    length at 255 characters, which keeps hashing cost bounded.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in configuration
        logger.error("Configured password hash is not a valid bcrypt hash")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("vpnadmin_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification without a real hash to compare against.

    Called on paths that reject before reaching the real hash (unknown user,
    locked account) so all outcomes cost the same.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies access/refresh JWT pairs."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_expire_seconds: int = 15 * 60,
        refresh_expire_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_expire_seconds = access_expire_seconds
        self.refresh_expire_seconds = refresh_expire_seconds
        self._clock = clock

    def _encode(self, username: str, client_ip: str, token_type: str, secret: str, lifetime: int) -> str:
        now = int(self._clock())
        payload = {
            "sub": username,
            "client_ip": client_ip,
            "type": token_type,
            "iat": now,
            "exp": now + lifetime,
            "jti": uuid.uuid4().hex,
            "iss": _ISSUER,
            "aud": _AUDIENCE,
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def issue_pair(self, username: str, client_ip: str) -> TokenPair:
        """Sign a new access + refresh token pair bound to client_ip."""
        return TokenPair(
            access_token=self._encode(
                username, client_ip, "access", self._access_secret, self.access_expire_seconds
            ),
            refresh_token=self._encode(
                username, client_ip, "refresh", self._refresh_secret, self.refresh_expire_seconds
            ),
            expires_in=self.access_expire_seconds,
            refresh_expires_in=self.refresh_expire_seconds,
        )

    def _decode(self, token: str, secret: str, token_type: str) -> dict:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=_AUDIENCE,
                issuer=_ISSUER,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired(f"{token_type} token expired") from exc
        except JWTError as exc:
            raise TokenInvalid(f"{token_type} token rejected: {exc}") from exc
        if payload.get("type") != token_type or "sub" not in payload or "client_ip" not in payload:
            raise TokenInvalid(f"{token_type} token missing required claims")
        return payload

    def decode_access(self, token: str) -> dict:
        """Verify an access token. Raises TokenExpired or TokenInvalid."""
        return self._decode(token, self._access_secret, "access")

    def decode_refresh(self, token: str) -> dict:
        """Verify a refresh token against the refresh secret only."""
        return self._decode(token, self._refresh_secret, "refresh")


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, secure: bool = False) -> None:
    """Write both JWTs as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    max_age matches each token's expiry so cookie and token expire together.
    The refresh cookie is scoped to /auth so it only travels to the refresh
    and logout endpoints.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=pair.expires_in,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=pair.refresh_expires_in,
        path="/auth",
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path="/auth")
