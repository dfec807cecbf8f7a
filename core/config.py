"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for VPNAdmin happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode (DEBUG=true) generates missing
      signing secrets with a warning; production mode refuses to start
      without them.

Security notes:
  Signing secrets shorter than 32 chars are rejected outright. HMAC-SHA256
  JWT signing and the session cookie signature both rely on key entropy.

  The access-token and refresh-token secrets must differ. A refresh token
  must never verify as an access token and vice versa.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, pki/, or state/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vpnadmin.config")

_SECRET_FIELDS = ("secret_key", "jwt_secret", "jwt_refresh_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Signs the session cookie. Empty string is the "not configured" sentinel.
    secret_key: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Administrator credential
    # ------------------------------------------------------------------

    admin_username: str = ""
    # bcrypt hash, produce one with `python main.py hash-password`
    admin_password_hash: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    enforce_ip_binding: bool = False

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_failed_attempts: int = 5
    lockout_duration_seconds: int = 15 * 60
    # "ip": lockout bucket is (username, client IP).
    # "user": any IP's failures lock the username everywhere.
    lockout_scope: Literal["ip", "user"] = "ip"
    lockout_cleanup_interval_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Web session
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_timeout_seconds: int = 30 * 60

    # ------------------------------------------------------------------
    # Rate limiting (slowapi / limits syntax)
    # ------------------------------------------------------------------

    login_rate_limit: str = "5 per 15 minutes"
    certificate_rate_limit: str = "10 per hour"
    general_rate_limit: str = "100 per 15 minutes"
    # memory:// is process-local. Point this at redis:// for multi-instance.
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # PKI
    # ------------------------------------------------------------------

    cert_dir: Path = Path("certificates")
    easyrsa_dir: Path = Path("easy-rsa")
    # Defaults to <easyrsa_dir>/pki when unset.
    easyrsa_pki_dir: Path | None = None
    server_cert_name: str = "server"
    pki_command_timeout_seconds: float = 60.0
    # Used once, by init-pki, to create the tls-auth key.
    openvpn_bin: str = "openvpn"

    # Client bundle directives
    vpn_host: str = "localhost"
    vpn_port: int = 1194
    vpn_protocol: Literal["udp", "tcp"] = "udp"

    # ------------------------------------------------------------------
    # State and audit
    # ------------------------------------------------------------------

    # Empty = process-local memory. Any SQLAlchemy URL shares the lockout
    # map and certificate registry between instances.
    state_db_url: str = ""
    security_log_enabled: bool = True
    security_log_path: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Sessions and tokens will not survive a restart.

        Production mode: refuse to start when a secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject an
            access secret equal to the refresh secret.
        """
        for field_name in _SECRET_FIELDS:
            value = getattr(self, field_name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file "
                        "(`python main.py init-secrets` prints fresh values). "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field_name, secrets.token_hex(32))
                logger.warning(
                    "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                    field_name.upper(),
                )
            elif len(value) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different.")
        if self.max_failed_attempts < 1:
            raise ValueError("MAX_FAILED_ATTEMPTS must be at least 1.")
        return self

    @property
    def pki_dir(self) -> Path:
        return self.easyrsa_pki_dir or self.easyrsa_dir / "pki"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
