"""
API request and response models for VPNAdmin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
pki/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from pki.models import CertificateMetadata, CertificateStatus

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Optional body for POST /auth/refresh. The refreshToken cookie wins."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    # Echo of the session CSRF token for cookie-authenticated callers.
    csrf_token: str = ""
    username: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    """Request body for POST /certificates/generate.

    The name is deliberately not pattern-checked here: the manager owns
    name validation so the API and the CLI reject bad names identically
    (ValidationError, HTTP 400 rather than a schema 422).
    """

    model_config = ConfigDict(populate_by_name=True)

    client_name: str = Field(alias="clientName")


class CertificateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: CertificateStatus
    serial_number: str
    created_at: datetime
    created_by: str
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @classmethod
    def from_metadata(cls, metadata: CertificateMetadata) -> CertificateResponse:
        return cls(**metadata.to_dict())


class CertificateListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    certificates: list[CertificateResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error body. detail is optional free text for clients."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope for all error responses: {"error": {...}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Liveness response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
