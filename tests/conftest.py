"""
tests/conftest.py -- Shared test fixtures for VPNAdmin unit and integration tests.

This module provides:
  - FakeClock: settable epoch clock for lockout windows and token expiry
  - FakePKI: in-process PKIAdapter that writes bundles/CRLs to tmp dirs
  - make_certificate_pem(): real self-signed certificates via cryptography
  - manager / auth_service fixtures built on MemoryBackend namespaces
  - app_client: TestClient with the real app and a patched lifespan,
    fresh services per test (env fixture)

The environment must be set before any core/auth/api import so get_settings()
sees the test values: DEBUG auto-generates signing secrets, ALLOWED_HOSTS
admits TestClient's "testserver" Host header. The login limit is low enough
for the rate-limit tests to trip (counters are reset per test by the env
fixture); the other limits are effectively off.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import bcrypt

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "correct-horse-battery-staple"

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ["ALLOWED_HOSTS"] = '["testserver", "localhost", "127.0.0.1"]'
os.environ["ADMIN_USERNAME"] = ADMIN_USERNAME
os.environ["ADMIN_PASSWORD_HASH"] = bcrypt.hashpw(ADMIN_PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode()
os.environ["LOGIN_RATE_LIMIT"] = "10/minute"
os.environ["CERTIFICATE_RATE_LIMIT"] = "1000/minute"
os.environ["GENERAL_RATE_LIMIT"] = "10000/minute"
os.environ["STATE_DB_URL"] = ""
os.environ["SECURITY_LOG_PATH"] = ""

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.lockout import LockoutGuard
from auth.models import Credential
from auth.service import AuthService
from auth.tokens import TokenService
from core.audit import RequestContext, SecurityLog
from core.config import get_settings
from core.errors import ExternalToolFailure, FileSystemError
from pki.adapter import BUNDLE_SUFFIX, CRL_FILENAME
from pki.manager import CertificateManager
from pki.models import CertInfo, IssuedCertificate, PKIInitResult
from state.store import MemoryBackend

ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "r" * 40


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable epoch clock that only moves when told to.

    Starts at the real current time: python-jose checks exp against the
    wall clock, so tokens must be issued relative to it. Expiry is tested by
    moving this clock into the past before issuing.
    """

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_certificate_pem(common_name: str = "client", serial: int = 0xC0FFEE, days: int = 825) -> str:
    """Return a self-signed PEM certificate with a known serial and expiry."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    not_before = datetime(2024, 1, 1, tzinfo=timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(not_before)
        .not_valid_after(not_before + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


class FakePKI:
    """PKIAdapter double. Writes real files so the manager's disk logic runs.

    Knobs:
      fail_issue / fail_revoke / fail_crl -- raise ExternalToolFailure
      revoke() refuses a name it already revoked, as easyrsa does
      issue_delay -- seconds to sleep inside issue(), to widen race windows
    """

    def __init__(self, cert_dir: Path, pki_dir: Path) -> None:
        self.cert_dir = cert_dir
        self.pki_dir = pki_dir
        self.cert_dir.mkdir(parents=True, exist_ok=True)
        self.pki_dir.mkdir(parents=True, exist_ok=True)
        self.issued: list[str] = []
        self.revoked: list[str] = []
        self.fail_issue = False
        self.fail_revoke = False
        self.fail_crl = False
        self.issue_delay = 0.0
        self._lock = threading.Lock()
        self._next_serial = 0x1000

    def init_pki(self, server_name: str) -> PKIInitResult:
        steps: list[str] = []
        if not (self.pki_dir / "ca.crt").exists():
            (self.pki_dir / "ca.crt").write_text(make_certificate_pem("Fake CA", serial=1))
            steps += ["init-pki", "build-ca", "gen-dh", "build-server-full"]
        crl = self.pki_dir / CRL_FILENAME
        if not crl.exists():
            crl.write_text("CRL revoked=\n")
            steps.append("gen-crl")
        return PKIInitResult(steps=steps, crl_path=crl)

    def issue(self, name: str) -> IssuedCertificate:
        if self.fail_issue:
            raise ExternalToolFailure(["easyrsa", "build-client-full", name, "nopass"], exit_code=1, stderr="boom")
        if self.issue_delay:
            time.sleep(self.issue_delay)
        with self._lock:
            self.issued.append(name)
        bundle = self.cert_dir / f"{name}{BUNDLE_SUFFIX}"
        bundle.write_text(f"client\n<cert>\n{make_certificate_pem(name)}</cert>\n")
        return IssuedCertificate(cert_path=bundle, key_path=bundle, bundle_path=bundle)

    def revoke(self, name: str) -> None:
        if self.fail_revoke:
            raise ExternalToolFailure(["easyrsa", "revoke", name], exit_code=1, stderr="not found")
        with self._lock:
            if name in self.revoked:
                raise ExternalToolFailure(["easyrsa", "revoke", name], exit_code=1, stderr="already revoked")
            self.revoked.append(name)

    def regenerate_crl(self) -> Path:
        if self.fail_crl:
            raise ExternalToolFailure(["easyrsa", "gen-crl"], exit_code=1, stderr="crl")
        crl = self.pki_dir / CRL_FILENAME
        crl.write_text(f"CRL revoked={','.join(self.revoked)}\n")
        return crl

    def cert_info(self, path: Path) -> CertInfo:
        if not Path(path).exists():
            raise FileSystemError(f"missing {path}")
        with self._lock:
            self._next_serial += 1
            serial = self._next_serial
        return CertInfo(serial_number=format(serial, "X"), expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc))


def build_auth_service(
    backend: MemoryBackend | None = None,
    clock: FakeClock | None = None,
    security_log: SecurityLog | None = None,
    scope: str = "ip",
    enforce_ip_binding: bool = False,
    credential: Credential | None = None,
) -> AuthService:
    clock = clock or FakeClock()
    backend = backend or MemoryBackend()
    if credential is None:
        credential = Credential(ADMIN_USERNAME, os.environ["ADMIN_PASSWORD_HASH"])
    return AuthService(
        credential=credential,
        tokens=TokenService(ACCESS_SECRET, REFRESH_SECRET, 900, 7 * 24 * 3600, clock=clock),
        lockout=LockoutGuard(backend.namespace("failed_attempts"), 5, 900, scope=scope, clock=clock),
        security_log=security_log or SecurityLog(enabled=True),
        enforce_ip_binding=enforce_ip_binding,
    )


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def security_log() -> SecurityLog:
    return SecurityLog(enabled=True)


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext.new(client_ip="10.0.0.5", actor=ADMIN_USERNAME)


@pytest.fixture
def fake_pki(tmp_path: Path) -> FakePKI:
    return FakePKI(tmp_path / "certificates", tmp_path / "pki")


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def manager(fake_pki: FakePKI, backend: MemoryBackend, security_log: SecurityLog) -> CertificateManager:
    return CertificateManager(
        fake_pki,
        backend.namespace("certificates"),
        backend.namespace("reservations"),
        fake_pki.cert_dir,
        security_log,
    )


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan():
    """Return an async context manager that replaces the real lifespan.

    The real lifespan would shell out to easyrsa and create directories in
    the working tree. The env fixture installs per-test services instead.

    The cleanup_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def app_client() -> Generator[TestClient, None, None]:
    """One TestClient per test module. follow_redirects=False so web tests
    can assert on redirect locations."""
    app.router.lifespan_context = _patch_lifespan()
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def env(app_client: TestClient, tmp_path: Path) -> SimpleNamespace:
    """Fresh services on app.state and an empty cookie jar for each test."""
    app_client.cookies.clear()
    limiter.reset()
    security_log = SecurityLog(enabled=True)
    backend = MemoryBackend()
    fake = FakePKI(tmp_path / "certificates", tmp_path / "pki")
    auth_service = AuthService.from_settings(get_settings(), backend.namespace("failed_attempts"), security_log)
    cert_manager = CertificateManager(
        fake,
        backend.namespace("certificates"),
        backend.namespace("reservations"),
        fake.cert_dir,
        security_log,
    )
    app.state.security_log = security_log
    app.state.auth_service = auth_service
    app.state.cert_manager = cert_manager
    return SimpleNamespace(
        client=app_client,
        auth_service=auth_service,
        manager=cert_manager,
        pki=fake,
    )


@pytest.fixture
def bearer_headers(env: SimpleNamespace) -> dict[str, str]:
    pair = env.auth_service.generate_tokens(ADMIN_USERNAME, "testclient")
    return {"Authorization": f"Bearer {pair.access_token}"}


def _csrf_from(html: str, marker: str) -> str:
    return html.split(marker, 1)[1].split('"', 1)[0]


@pytest.fixture
def web_login(env: SimpleNamespace):
    """Return a function running the form login flow.

    The function returns (login_response, csrf_token) where csrf_token is the
    one issued for the new session (login rotates it).
    """

    def _login(username: str = ADMIN_USERNAME, password: str = ADMIN_PASSWORD):
        client = env.client
        page = client.get("/login")
        csrf = _csrf_from(page.text, 'name="csrf_token" value="')
        resp = client.post("/login", data={"username": username, "password": password, "csrf_token": csrf})
        if resp.status_code == 302 and resp.headers["location"] == "/certificates":
            certificates = client.get("/certificates", headers={"Accept": "text/html"})
            csrf = _csrf_from(certificates.text, 'data-csrf="')
        return resp, csrf

    return _login


@pytest.fixture
def admin_credentials() -> tuple[str, str]:
    return ADMIN_USERNAME, ADMIN_PASSWORD


@pytest.fixture
def make_auth_service():
    """Factory for isolated AuthService instances (see build_auth_service)."""
    return build_auth_service


@pytest.fixture
def certificate_pem():
    """Factory for real self-signed PEM certificates."""
    return make_certificate_pem
