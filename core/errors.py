"""
core/errors.py -- Error taxonomy shared by the auth and PKI services.

Every domain failure is a VPNAdminError subclass carrying three things the
HTTP layer needs: a stable machine-readable `code`, the `status_code` to
answer with, and a `public_message` that is safe to show a caller.

The exception's own str() may hold internal detail (paths, stderr, exit
codes). It goes to the server log only. api/main.py renders public_message,
never str(exc), so client-facing responses never leak internals.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, pki/, or state/.
"""

from __future__ import annotations


class VPNAdminError(Exception):
    code: str = "internal_error"
    status_code: int = 500
    public_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)

    @property
    def is_client_error(self) -> bool:
        return self.status_code < 500


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(VPNAdminError):
    code = "bad_credentials"
    status_code = 401
    public_message = "Invalid username or password."


class AccountLocked(VPNAdminError):
    code = "account_locked"
    status_code = 423
    public_message = "Account temporarily locked due to too many failed attempts."


class ConfigurationMissing(VPNAdminError):
    code = "configuration_missing"
    status_code = 500
    public_message = "Authentication system not properly configured."


class TokenInvalid(VPNAdminError):
    code = "token_invalid"
    status_code = 401
    public_message = "Invalid or expired token."


class TokenExpired(TokenInvalid):
    code = "token_expired"


class IPMismatch(TokenInvalid):
    code = "token_ip_mismatch"


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class ValidationError(VPNAdminError):
    code = "validation_error"
    status_code = 400
    public_message = (
        "Invalid client name. Use only alphanumeric characters, hyphens, and underscores (3-50 characters)."
    )


class DuplicateCertificate(VPNAdminError):
    code = "duplicate_certificate"
    status_code = 409
    public_message = "Certificate with this name already exists."


class CertificateNotFound(VPNAdminError):
    code = "not_found"
    status_code = 404
    public_message = "Certificate not found."


class AlreadyRevoked(VPNAdminError):
    code = "already_revoked"
    status_code = 409
    public_message = "Certificate is already revoked."


class ExternalToolFailure(VPNAdminError):
    """A PKI tool invocation exited nonzero, could not start, or timed out."""

    code = "external_tool_failure"
    public_message = "Certificate authority operation failed."

    def __init__(
        self,
        command: list[str],
        exit_code: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out
        if timed_out:
            reason = "timed out"
        elif exit_code is None:
            reason = "could not be started"
        else:
            reason = f"exited with status {exit_code}"
        super().__init__(f"{' '.join(command)} {reason}: {stderr.strip()}")


class GenerationFailed(VPNAdminError):
    code = "generation_failed"
    public_message = "Failed to generate certificate."


class RevocationFailed(VPNAdminError):
    code = "revocation_failed"
    public_message = "Failed to revoke certificate."


class FileSystemError(VPNAdminError):
    code = "filesystem_error"
    public_message = "Certificate storage operation failed."
