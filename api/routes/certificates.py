"""
api/routes/certificates.py -- Certificate lifecycle REST endpoints.

Routes:
  GET  /certificates/list             -- JSON list, newest first
  POST /certificates/generate         -- {"clientName": ...}; 201 with the new row
  GET  /certificates/download/{name}  -- the client's .ovpn bundle as an attachment
  POST /certificates/revoke/{name}    -- revoke + CRL refresh; 200 with the updated row

GET /certificates (HTML page, or JSON for Accept: application/json) is served
by web/routes.py.

Handlers are plain `def`, not `async def`: FastAPI runs them in its
threadpool, so an easyrsa invocation (seconds, bounded by
PKI_COMMAND_TIMEOUT_SECONDS) never blocks the event loop.

Domain failures propagate as VPNAdminError and are rendered by api/main.py:
invalid name 400, unknown name 404, duplicate / already revoked 409, tool
failures 500 with a generic message.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import CERTIFICATE_LIMIT, limiter
from api.models import CertificateListResponse, CertificateResponse, GenerateRequest
from auth.dependencies import get_current_user, get_request_context, verify_csrf
from auth.models import AuthenticatedUser
from pki.adapter import BUNDLE_SUFFIX
from pki.manager import CertificateManager

# Auth policy:
# - GET  /certificates/list:            requires auth (get_current_user)
# - POST /certificates/generate:        requires auth + CSRF for cookie callers (verify_csrf)
# - GET  /certificates/download/{name}: requires auth (get_current_user)
# - POST /certificates/revoke/{name}:   requires auth + CSRF for cookie callers (verify_csrf)
router = APIRouter()


def _manager(request: Request) -> CertificateManager:
    return request.app.state.cert_manager


@router.get("/certificates/list", response_model=CertificateListResponse)
def list_certificates(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> CertificateListResponse:
    rows = [CertificateResponse.from_metadata(m) for m in _manager(request).list_certificates()]
    return CertificateListResponse(total=len(rows), certificates=rows)


@router.post("/certificates/generate", response_model=CertificateResponse, status_code=201)
@limiter.limit(CERTIFICATE_LIMIT)
def generate_certificate(
    request: Request,
    body: GenerateRequest,
    user: AuthenticatedUser = Depends(verify_csrf),
) -> CertificateResponse:
    """Issue a client certificate and build its bundle."""
    metadata = _manager(request).generate(body.client_name, user.username, get_request_context(request))
    return CertificateResponse.from_metadata(metadata)


@router.get("/certificates/download/{name}")
def download_certificate(
    request: Request,
    name: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    # download() validates name before it reaches the header below
    data = _manager(request).download(name, get_request_context(request))
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="{name}{BUNDLE_SUFFIX}"',
            "Cache-Control": "no-store",
        },
    )


@router.post("/certificates/revoke/{name}", response_model=CertificateResponse)
def revoke_certificate(
    request: Request,
    name: str,
    user: AuthenticatedUser = Depends(verify_csrf),
) -> CertificateResponse:
    """Revoke a client certificate and republish the CRL."""
    metadata = _manager(request).revoke(name, user.username, get_request_context(request))
    return CertificateResponse.from_metadata(metadata)
