"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in pki/models.py -- dataclasses own domain shape; services and routes do
the work.

Layer rule: no imports from api/, web/, or pki/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Credential:
    """The single configured administrator identity.

    Loaded from ADMIN_USERNAME / ADMIN_PASSWORD_HASH at startup and never
    modified at runtime. password_hash is a bcrypt hash string.
    """

    username: str
    password_hash: str


@dataclass
class FailedAttemptRecord:
    """Failed-login counter for one (username, client IP) bucket.

    count is only meaningful while now - last_attempt_at < lockout duration.
    Outside that window the record is stale and is treated as absent.
    """

    username: str
    client_ip: str
    count: int = 0
    last_attempt_at: float = 0.0  # epoch seconds

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "client_ip": self.client_ip,
            "count": self.count,
            "last_attempt_at": self.last_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FailedAttemptRecord:
        return cls(
            username=data["username"],
            client_ip=data["client_ip"],
            count=int(data["count"]),
            last_attempt_at=float(data["last_attempt_at"]),
        )


@dataclass(frozen=True)
class TokenPair:
    """A freshly issued access/refresh JWT pair.

    Both tokens are stateless: validity is signature + expiry (+ optional IP
    binding). There is no server-side revocation list.
    """

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    refresh_expires_in: int  # refresh token lifetime, seconds
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved for one request by auth/dependencies.py.

    method is "session" (web login cookie), "cookie" (JWT accessToken cookie)
    or "bearer" (Authorization header). Cookie-borne methods require a CSRF
    token on state-changing requests; bearer does not.
    """

    username: str
    method: str
