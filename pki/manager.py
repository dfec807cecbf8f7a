"""
pki/manager.py -- Certificate Lifecycle Manager.

Lifecycle per client name:  (reserved) -> active -> revoked   (terminal)

The one rule everything here follows: the registry changes only as a
consequence of the external tool finishing successfully, never before it.

  generate: validate -> lock name -> reserve name -> duplicate check ->
            adapter.issue -> adapter.cert_info -> registry row (active) ->
            release reservation
  revoke:   validate -> lock name -> find row -> adapter.revoke ->
            mark revocation pending -> adapter.regenerate_crl ->
            copy crl.pem next to the bundles -> registry row (revoked) ->
            clear pending mark

If any step before the registry write fails, the registry is untouched and
the caller gets GenerationFailed / RevocationFailed / FileSystemError.

Partial external success:
  - generate: when issue() produced a bundle but a later step failed, the
    bundle is deleted so list_certificates() cannot register it as a row
    with an unknown serial. The certificate stays issued in the PKI; the
    failure event names it, and the Easy-RSA adapter reuses it on retry.
  - revoke: once the PKI has revoked the certificate, a pending mark is
    stored next to the reservations. A retry after a failed CRL step skips
    adapter.revoke (Easy-RSA refuses to revoke twice) and resumes at
    regenerate_crl.

Concurrency:
  - Striped locks (state/locks.py) serialize generate/download/revoke for
    one name inside this process. A generate that is still running blocks
    a download or revoke of the same name until the registry row is
    visible.
  - The reservation namespace gives an atomic check-and-reserve
    (put_if_absent). With the SQL state backend the reservation also holds
    across processes, so two instances cannot issue the same name twice.
    Reservations older than reservation_ttl_seconds are considered abandoned
    (e.g. the process died mid-issue) and may be taken over.

Registry pruning: list_certificates() hides rows whose bundle disappeared
but never deletes them. Removing such rows is the explicit prune() action.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from core.audit import RequestContext, SecurityLog
from core.config import Settings
from core.errors import (
    AlreadyRevoked,
    CertificateNotFound,
    DuplicateCertificate,
    FileSystemError,
    GenerationFailed,
    RevocationFailed,
    ValidationError,
    VPNAdminError,
)
from pki.adapter import BUNDLE_SUFFIX, CRL_FILENAME, EasyRSAAdapter, PKIAdapter
from pki.bundle import BundleOptions
from pki.models import CertificateMetadata, CertificateStatus, is_valid_client_name
from state.locks import StripedLocks
from state.store import KeyedStore, StateBackend

logger = logging.getLogger("vpnadmin.pki")

_CATEGORY = "CERTIFICATE"

# ":" is outside the client-name charset, so these keys never collide with a
# generate reservation in the same namespace.
_REVOKE_PENDING_PREFIX = "revoke:"


def _revoke_pending_key(name: str) -> str:
    return f"{_REVOKE_PENDING_PREFIX}{name}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateManager:
    """Owns the certificate registry and drives the PKI adapter.

    Usage:
        manager = CertificateManager(adapter, backend.namespace("certificates"),
                                     backend.namespace("reservations"), Path("certificates"), security_log)
        meta = manager.generate("alice-phone", "admin", ctx)
        manager.revoke("alice-phone", "admin", ctx)
    """

    def __init__(
        self,
        adapter: PKIAdapter,
        registry: KeyedStore,
        reservations: KeyedStore,
        cert_dir: Path,
        security_log: SecurityLog,
        server_cert_name: str = "server",
        reservation_ttl_seconds: float = 600.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.adapter = adapter
        self._registry = registry
        self._reservations = reservations
        self.cert_dir = Path(cert_dir)
        self.security_log = security_log
        self.server_cert_name = server_cert_name
        self.reservation_ttl_seconds = reservation_ttl_seconds
        self._now = now
        self._locks = StripedLocks()

    @classmethod
    def from_settings(cls, settings: Settings, backend: StateBackend, security_log: SecurityLog) -> CertificateManager:
        """Wire an Easy-RSA backed manager from configuration."""
        adapter = EasyRSAAdapter(
            easyrsa_dir=settings.easyrsa_dir,
            pki_dir=settings.pki_dir,
            cert_dir=settings.cert_dir,
            bundle_options=BundleOptions(
                remote_host=settings.vpn_host,
                remote_port=settings.vpn_port,
                protocol=settings.vpn_protocol,
            ),
            timeout_seconds=settings.pki_command_timeout_seconds,
            openvpn_bin=settings.openvpn_bin,
        )
        adapter.ensure_directories()
        return cls(
            adapter,
            backend.namespace("certificates"),
            backend.namespace("reservations"),
            settings.cert_dir,
            security_log,
            server_cert_name=settings.server_cert_name,
            reservation_ttl_seconds=max(600.0, 2 * settings.pki_command_timeout_seconds),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, name: str):
        return self._locks.for_key(name)

    def bundle_path(self, name: str) -> Path:
        return self.cert_dir / f"{name}{BUNDLE_SUFFIX}"

    def _validate(self, name: str, ctx: RequestContext, event: str) -> None:
        if not is_valid_client_name(name):
            self.security_log.event(ctx, _CATEGORY, event, "failure", name=str(name)[:64], reason="invalid_name")
            raise ValidationError(f"invalid client name {name!r}")

    def _bundle_names(self) -> list[str]:
        if not self.cert_dir.is_dir():
            return []
        try:
            paths = sorted(self.cert_dir.glob(f"*{BUNDLE_SUFFIX}"))
        except OSError as exc:
            raise FileSystemError(f"cannot list {self.cert_dir}: {exc}") from exc
        return [
            p.stem for p in paths if p.is_file() and p.stem != self.server_cert_name and is_valid_client_name(p.stem)
        ]

    def _get(self, name: str) -> CertificateMetadata | None:
        raw = self._registry.get(name)
        return CertificateMetadata.from_dict(raw) if raw is not None else None

    def _synthesize(self, name: str) -> CertificateMetadata:
        """Register a bundle that has no registry row (created out-of-band or
        before a restart of the in-memory registry). Serial and expiry are
        best effort."""
        path = self.bundle_path(name)
        try:
            created_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError as exc:
            raise FileSystemError(f"cannot stat {path}: {exc}") from exc
        try:
            info = self.adapter.cert_info(path)
            serial, expires_at = info.serial_number, info.expires_at
        except VPNAdminError as exc:
            logger.warning("Could not read certificate details for %s: %s", name, exc)
            serial, expires_at = "unknown", None
        metadata = CertificateMetadata(
            name=name,
            status=CertificateStatus.active,
            serial_number=serial,
            created_at=created_at,
            expires_at=expires_at,
        )
        # Never overwrite a row a concurrent generate() just wrote.
        if not self._registry.put_if_absent(name, metadata.to_dict()):
            return self._get(name) or metadata
        logger.info("Registered pre-existing bundle %s (serial %s)", name, serial)
        return metadata

    def _reserve(self, name: str, ctx: RequestContext) -> bool:
        stamp = {"reserved_at": self._now().timestamp(), "correlation_id": ctx.correlation_id}
        if self._reservations.put_if_absent(name, stamp):
            return True
        existing = self._reservations.get(name)
        if existing and self._now().timestamp() - existing.get("reserved_at", 0) > self.reservation_ttl_seconds:
            logger.warning("Taking over abandoned reservation for %s", name)
            self._reservations.delete(name)
            return self._reservations.put_if_absent(name, stamp)
        return False

    def _publish_crl(self, crl_path: Path) -> Path:
        """Copy the regenerated CRL into the certificates directory (0644)."""
        dest = self.cert_dir / CRL_FILENAME
        tmp = dest.with_suffix(".pem.tmp")
        try:
            shutil.copyfile(crl_path, tmp)
            tmp.chmod(0o644)
            os.replace(tmp, dest)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise FileSystemError(f"cannot publish CRL {crl_path} -> {dest}: {exc}") from exc
        return dest

    def _discard_bundle(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            # the GenerationFailed being raised is the error the caller needs
            logger.error("Could not remove bundle %s of a failed generation: %s", path, exc)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_certificates(self) -> list[CertificateMetadata]:
        """Reconcile bundles on disk with the registry, newest first."""
        certificates: list[CertificateMetadata] = []
        for name in self._bundle_names():
            metadata = self._get(name) or self._synthesize(name)
            certificates.append(metadata)
        certificates.sort(key=lambda m: m.created_at, reverse=True)
        return certificates

    def get(self, name: str) -> CertificateMetadata | None:
        return self._get(name) if is_valid_client_name(name) else None

    def generate(self, name: str, requested_by: str, ctx: RequestContext) -> CertificateMetadata:
        self._validate(name, ctx, "CERT_GENERATE_FAILED")
        with self._lock_for(name):
            if not self._reserve(name, ctx):
                self.security_log.event(ctx, _CATEGORY, "CERT_GENERATE_FAILED", "failure", name=name, reason="in_progress")
                raise DuplicateCertificate(f"{name} is being generated by another request")
            try:
                if self._registry.get(name) is not None or self.bundle_path(name).exists():
                    self.security_log.event(ctx, _CATEGORY, "CERT_GENERATE_FAILED", "failure", name=name, reason="duplicate")
                    raise DuplicateCertificate(f"{name} already exists")

                self.security_log.event(ctx, _CATEGORY, "CERT_GENERATE_STARTED", "success", name=name)
                try:
                    issued = self.adapter.issue(name)
                except VPNAdminError as exc:
                    logger.error("Certificate generation failed for %s: %s", name, exc)
                    self.security_log.event(
                        ctx, _CATEGORY, "CERT_GENERATE_FAILED", "failure", name=name, reason=exc.code
                    )
                    raise GenerationFailed(str(exc)) from exc
                try:
                    info = self.adapter.cert_info(issued.cert_path)
                except VPNAdminError as exc:
                    self._discard_bundle(issued.bundle_path)
                    logger.error(
                        "Certificate %s was issued but could not be read (%s); bundle removed, "
                        "certificate left in the PKI",
                        name,
                        exc,
                    )
                    self.security_log.event(
                        ctx,
                        _CATEGORY,
                        "CERT_GENERATE_FAILED",
                        "failure",
                        name=name,
                        reason=exc.code,
                        issued_in_pki=True,
                    )
                    raise GenerationFailed(str(exc)) from exc

                metadata = CertificateMetadata(
                    name=name,
                    status=CertificateStatus.active,
                    serial_number=info.serial_number,
                    created_at=self._now(),
                    created_by=requested_by,
                    expires_at=info.expires_at,
                )
                self._registry.put(name, metadata.to_dict())
            finally:
                self._reservations.delete(name)

        logger.info("Client certificate for %s generated (serial %s)", name, metadata.serial_number)
        self.security_log.event(
            ctx, _CATEGORY, "CERT_GENERATE_SUCCESS", "success", name=name, serial_number=metadata.serial_number
        )
        return metadata

    def download(self, name: str, ctx: RequestContext | None = None) -> bytes:
        """Return the pre-built client bundle for name."""
        ctx = ctx or RequestContext.new()
        self._validate(name, ctx, "CERT_DOWNLOAD")
        path = self.bundle_path(name)
        with self._lock_for(name):
            try:
                data = path.read_bytes()
            except FileNotFoundError as exc:
                logger.warning("Download attempted for non-existent certificate %s", name)
                raise CertificateNotFound(f"no bundle at {path}") from exc
            except OSError as exc:
                raise FileSystemError(f"cannot read {path}: {exc}") from exc
        self.security_log.event(ctx, _CATEGORY, "CERT_DOWNLOAD", "success", name=name, size=len(data))
        return data

    def revoke(self, name: str, revoked_by: str, ctx: RequestContext) -> CertificateMetadata:
        self._validate(name, ctx, "CERT_REVOKE_FAILED")
        with self._lock_for(name):
            metadata = self._get(name)
            if metadata is None and self.bundle_path(name).is_file():
                metadata = self._synthesize(name)
            if metadata is None:
                self.security_log.event(ctx, _CATEGORY, "CERT_REVOKE_FAILED", "failure", name=name, reason="not_found")
                raise CertificateNotFound(f"no registry row for {name}")
            if metadata.status is CertificateStatus.revoked:
                self.security_log.event(
                    ctx, _CATEGORY, "CERT_REVOKE_FAILED", "failure", name=name, reason="already_revoked"
                )
                raise AlreadyRevoked(f"{name} revoked at {metadata.revoked_at}")

            pending_key = _revoke_pending_key(name)
            try:
                if self._reservations.get(pending_key) is None:
                    self.adapter.revoke(name)
                    self._reservations.put(
                        pending_key,
                        {"revoked_at": self._now().timestamp(), "correlation_id": ctx.correlation_id},
                    )
                else:
                    logger.info("Resuming revocation of %s: already revoked in the PKI", name)
                crl_path = self.adapter.regenerate_crl()
            except VPNAdminError as exc:
                logger.error("Certificate revocation failed for %s: %s", name, exc)
                self.security_log.event(ctx, _CATEGORY, "CERT_REVOKE_FAILED", "failure", name=name, reason=exc.code)
                raise RevocationFailed(str(exc)) from exc

            try:
                self._publish_crl(crl_path)
            except FileSystemError as exc:
                logger.error("CRL publication failed after revoking %s: %s", name, exc)
                self.security_log.event(
                    ctx, _CATEGORY, "CERT_REVOKE_FAILED", "failure", name=name, reason=exc.code
                )
                raise

            revoked = replace(
                metadata,
                status=CertificateStatus.revoked,
                revoked_at=self._now(),
                revoked_by=revoked_by,
            )
            self._registry.put(name, revoked.to_dict())
            self._reservations.delete(pending_key)

        logger.info("Certificate %s revoked (serial %s)", name, revoked.serial_number)
        self.security_log.event(
            ctx, _CATEGORY, "CERT_REVOKE_SUCCESS", "success", name=name, serial_number=revoked.serial_number
        )
        return revoked

    def prune(self, ctx: RequestContext) -> list[str]:
        """Delete registry rows whose bundle was removed out-of-band."""
        pruned: list[str] = []
        for name, _raw in self._registry.items():
            with self._lock_for(name):
                if (
                    self.bundle_path(name).exists()
                    or self._reservations.get(name) is not None
                    or self._reservations.get(_revoke_pending_key(name)) is not None
                ):
                    continue
                if self._registry.delete(name):
                    pruned.append(name)
                    self.security_log.event(ctx, _CATEGORY, "CERT_PRUNED", "success", name=name)
        if pruned:
            logger.info("Pruned %d stale registry rows: %s", len(pruned), ", ".join(pruned))
        return pruned

    def initialize_pki(self, ctx: RequestContext) -> list[str]:
        """Prepare the CA, server certificate, CRL and tls-auth key where missing.

        Safe to rerun: steps whose output exists are skipped. The CRL is
        (re)published next to the bundles either way. Returns the steps run.
        """
        try:
            result = self.adapter.init_pki(self.server_cert_name)
        except VPNAdminError as exc:
            logger.error("PKI initialization failed: %s", exc)
            self.security_log.event(ctx, "SYSTEM", "PKI_INIT_FAILED", "failure", reason=exc.code)
            raise
        self._publish_crl(result.crl_path)
        self.security_log.event(ctx, "SYSTEM", "PKI_INITIALIZED", "success", steps=result.steps)
        return result.steps
