"""
pki/adapter.py -- PKI Tool Adapter port and its Easy-RSA implementation.

The certificate manager depends only on the PKIAdapter protocol:

    init_pki(server_name) -> PKIInitResult(steps, crl_path)
    issue(name)          -> IssuedCertificate(cert_path, key_path, bundle_path)
    revoke(name)         -> None
    regenerate_crl()     -> Path of the fresh crl.pem
    cert_info(path)      -> CertInfo(serial_number, expires_at)

EasyRSAAdapter shells out to the easyrsa script. Every invocation:
  - passes an argument list (no shell, no string interpolation),
  - runs in batch mode with EASYRSA_PKI pointing at the configured PKI,
  - has a hard timeout. Timeout, a missing binary and a nonzero exit all
    raise ExternalToolFailure carrying the command, exit code and stderr
    for the server log.

init_pki() prepares a fresh host: init-pki, build-ca, gen-dh,
build-server-full, gen-crl and the OpenVPN tls-auth key (ta.key). Each step
is skipped when the file it produces already exists, so rerunning it never
wipes or replaces a working CA.

issue() reuses a certificate and key that are already in the PKI (left by
an issuance whose bundle step failed) instead of asking easyrsa to build
them again, which it would refuse.

Certificates are parsed in-process with cryptography.x509 rather than by
spawning openssl, so cert_info() never blocks on a child process.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Protocol

from cryptography import x509

from core.errors import ExternalToolFailure, FileSystemError
from pki.bundle import BundleOptions, extract_bundle_certificate, extract_pem_certificates, render_client_bundle
from pki.models import CertInfo, IssuedCertificate, PKIInitResult

logger = logging.getLogger("vpnadmin.pki.adapter")

BUNDLE_SUFFIX = ".ovpn"
CRL_FILENAME = "crl.pem"
TLS_AUTH_FILENAME = "ta.key"

# gen-dh routinely outlives the per-command timeout on small hosts.
_DH_TIMEOUT_SECONDS = 15 * 60


class PKIAdapter(Protocol):
    def init_pki(self, server_name: str) -> PKIInitResult: ...

    def issue(self, name: str) -> IssuedCertificate: ...

    def revoke(self, name: str) -> None: ...

    def regenerate_crl(self) -> Path: ...

    def cert_info(self, path: Path) -> CertInfo: ...


def load_cert_info(path: Path) -> CertInfo:
    """Parse serial and expiry from a PEM certificate or an inline .ovpn bundle.

    Raises FileSystemError when the file cannot be read or holds no
    parseable certificate.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise FileSystemError(f"cannot read certificate {path}: {exc}") from exc
    pem = extract_bundle_certificate(text) or extract_pem_certificates(text)
    try:
        cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
    except ValueError as exc:
        raise FileSystemError(f"no parseable certificate in {path}: {exc}") from exc
    return CertInfo(
        serial_number=format(cert.serial_number, "X"),
        expires_at=cert.not_valid_after_utc,
    )


class EasyRSAAdapter:
    """Drives an Easy-RSA 3 installation.

    Usage:
        adapter = EasyRSAAdapter(Path("easy-rsa"), Path("easy-rsa/pki"), Path("certificates"),
                                 BundleOptions("vpn.example.com"))
        adapter.init_pki("server")
        issued = adapter.issue("alice-laptop")
    """

    def __init__(
        self,
        easyrsa_dir: Path,
        pki_dir: Path,
        cert_dir: Path,
        bundle_options: BundleOptions,
        timeout_seconds: float = 60.0,
        openvpn_bin: str = "openvpn",
    ) -> None:
        self.easyrsa_dir = Path(easyrsa_dir)
        self.pki_dir = Path(pki_dir)
        self.cert_dir = Path(cert_dir)
        self.bundle_options = bundle_options
        self.timeout_seconds = timeout_seconds
        self.openvpn_bin = openvpn_bin

    # ------------------------------------------------------------------
    # Subprocess
    # ------------------------------------------------------------------

    def _exec(self, command: list[str], timeout: float) -> subprocess.CompletedProcess:
        env = {**os.environ, "EASYRSA_PKI": str(self.pki_dir), "EASYRSA_BATCH": "1"}
        logger.info("Running %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                cwd=self.easyrsa_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr.decode(errors="replace") if isinstance(exc.stderr, bytes) else exc.stderr or ""
            raise ExternalToolFailure(command, stderr=stderr, timed_out=True) from exc
        except OSError as exc:
            raise ExternalToolFailure(command, stderr=str(exc)) from exc
        if result.returncode != 0:
            raise ExternalToolFailure(command, exit_code=result.returncode, stderr=result.stderr)
        if result.stderr:
            logger.debug("%s stderr: %s", " ".join(command), result.stderr.strip())
        return result

    def _run(self, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        command = [str(self.easyrsa_dir / "easyrsa"), "--batch", *args]
        return self._exec(command, timeout or self.timeout_seconds)

    # ------------------------------------------------------------------
    # Port operations
    # ------------------------------------------------------------------

    def init_pki(self, server_name: str) -> PKIInitResult:
        """Create whatever a fresh host is missing. Existing files are kept."""
        steps: list[str] = []
        if not (self.pki_dir / "private").is_dir():
            self._run("init-pki")
            steps.append("init-pki")
        if not (self.pki_dir / "ca.crt").is_file():
            self._run("build-ca", "nopass")
            steps.append("build-ca")
        if not (self.pki_dir / "dh.pem").is_file():
            self._run("gen-dh", timeout=max(self.timeout_seconds, _DH_TIMEOUT_SECONDS))
            steps.append("gen-dh")
        if not (self.pki_dir / "issued" / f"{server_name}.crt").is_file():
            self._run("build-server-full", server_name, "nopass")
            steps.append("build-server-full")
        crl_path = self.pki_dir / CRL_FILENAME
        if not crl_path.is_file():
            self._run("gen-crl")
            steps.append("gen-crl")
        ta_key = self.pki_dir / TLS_AUTH_FILENAME
        if not ta_key.is_file():
            self._exec([self.openvpn_bin, "--genkey", "secret", str(ta_key)], self.timeout_seconds)
            steps.append("genkey")
        if steps:
            logger.info("PKI at %s initialized: %s", self.pki_dir, ", ".join(steps))
        else:
            logger.info("PKI at %s already complete", self.pki_dir)
        return PKIInitResult(steps=steps, crl_path=crl_path)

    def issue(self, name: str) -> IssuedCertificate:
        cert_path = self.pki_dir / "issued" / f"{name}.crt"
        key_path = self.pki_dir / "private" / f"{name}.key"
        if cert_path.is_file() and key_path.is_file():
            logger.warning("%s is already issued in %s; rebuilding its bundle", name, self.pki_dir)
        else:
            self._run("build-client-full", name, "nopass")
        try:
            bundle_path = self.write_bundle(name, cert_path, key_path)
        except FileSystemError:
            logger.error("Certificate %s is issued in %s but has no bundle", name, self.pki_dir)
            raise
        return IssuedCertificate(cert_path=cert_path, key_path=key_path, bundle_path=bundle_path)

    def revoke(self, name: str) -> None:
        self._run("revoke", name)

    def regenerate_crl(self) -> Path:
        self._run("gen-crl")
        return self.pki_dir / CRL_FILENAME

    def cert_info(self, path: Path) -> CertInfo:
        return load_cert_info(path)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def ensure_directories(self) -> None:
        """Create the certificates directory, owner-only."""
        try:
            self.cert_dir.mkdir(parents=True, exist_ok=True)
            self.cert_dir.chmod(0o700)
        except OSError as exc:
            raise FileSystemError(f"cannot prepare {self.cert_dir}: {exc}") from exc

    def _tls_auth_key(self) -> str | None:
        for candidate in (self.pki_dir / TLS_AUTH_FILENAME, self.cert_dir / TLS_AUTH_FILENAME):
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8")
        return None

    def write_bundle(self, name: str, cert_path: Path, key_path: Path) -> Path:
        """Render <cert_dir>/<name>.ovpn (mode 0600).

        Written to a temporary sibling and renamed into place, so the
        certificates directory never exposes a half-written bundle.
        """
        bundle_path = self.cert_dir / f"{name}{BUNDLE_SUFFIX}"
        tmp_path = bundle_path.with_suffix(".tmp")
        try:
            content = render_client_bundle(
                self.bundle_options,
                ca_pem=(self.pki_dir / "ca.crt").read_text(encoding="utf-8"),
                cert_pem=cert_path.read_text(encoding="utf-8"),
                key_pem=key_path.read_text(encoding="utf-8"),
                tls_auth_key=self._tls_auth_key(),
            )
            self.cert_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_path, bundle_path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise FileSystemError(f"cannot write bundle {bundle_path}: {exc}") from exc
        logger.info("Generated inline client config at %s", bundle_path)
        return bundle_path
