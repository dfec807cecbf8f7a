"""
tests/test_certificate_manager.py -- Unit tests for CertificateManager.

Uses FakePKI (tests/conftest.py), which writes real bundle and CRL files into
tmp_path, so reconciliation, CRL publication and bundle reads all touch disk.

Coverage:
  - name validation (before any tool call)
  - generate -> list -> download -> revoke happy path
  - duplicates, unknown names, idempotent revoke rejection
  - tool failures leave the registry untouched
  - list reconciliation of bundles created out-of-band
  - concurrent generation of one name issues exactly once
  - prune of rows whose bundle vanished
  - resuming a revocation whose CRL step failed after the PKI revoked
  - no bundle left behind when issuance succeeds but a later step fails
  - PKI initialization publishes the CRL and is safe to rerun
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone

import pytest

from core.audit import RequestContext
from core.errors import (
    AlreadyRevoked,
    CertificateNotFound,
    DuplicateCertificate,
    FileSystemError,
    GenerationFailed,
    RevocationFailed,
    ValidationError,
)
from pki.models import CertificateStatus


class TestValidation:
    @pytest.mark.parametrize(
        "name",
        ["ab", "a" * 51, "../etc/passwd", "name with space", "semi;colon", "", "dot.name", "ümlaut"],
    )
    def test_invalid_names_rejected_before_tool_runs(self, manager, fake_pki, ctx, name):
        with pytest.raises(ValidationError):
            manager.generate(name, "admin", ctx)
        assert fake_pki.issued == []

    @pytest.mark.parametrize("name", ["abc", "a" * 50, "alice-laptop", "bob_phone_2"])
    def test_valid_names_accepted(self, manager, ctx, name):
        assert manager.generate(name, "admin", ctx).name == name

    def test_revoke_and_download_validate_too(self, manager, ctx):
        with pytest.raises(ValidationError):
            manager.revoke("../x", "admin", ctx)
        with pytest.raises(ValidationError):
            manager.download("../x")


class TestGenerate:
    def test_generate_then_list(self, manager, ctx):
        created = manager.generate("alice-laptop", "admin", ctx)
        listed = manager.list_certificates()
        assert [c.name for c in listed] == ["alice-laptop"]
        assert listed[0].status is CertificateStatus.active
        assert listed[0].serial_number == created.serial_number
        assert listed[0].created_by == "admin"
        assert listed[0].expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_duplicate_rejected(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        with pytest.raises(DuplicateCertificate):
            manager.generate("alice-laptop", "admin", ctx)
        assert fake_pki.issued == ["alice-laptop"]

    def test_existing_bundle_without_row_is_duplicate(self, manager, fake_pki, ctx):
        (fake_pki.cert_dir / "legacy.ovpn").write_text("client\n")
        with pytest.raises(DuplicateCertificate):
            manager.generate("legacy", "admin", ctx)
        assert fake_pki.issued == []

    def test_tool_failure_leaves_no_row(self, manager, fake_pki, ctx):
        fake_pki.fail_issue = True
        with pytest.raises(GenerationFailed):
            manager.generate("alice-laptop", "admin", ctx)
        assert manager.get("alice-laptop") is None
        assert manager.list_certificates() == []
        # reservation released: a retry after the fault clears succeeds
        fake_pki.fail_issue = False
        assert manager.generate("alice-laptop", "admin", ctx).status is CertificateStatus.active

    def test_failure_after_issue_removes_bundle(self, manager, fake_pki, ctx, monkeypatch, caplog):
        caplog.set_level(logging.INFO, logger="vpnadmin.security")

        def unreadable(path):
            raise FileSystemError(f"no certificate in {path}")

        monkeypatch.setattr(fake_pki, "cert_info", unreadable)
        with pytest.raises(GenerationFailed):
            manager.generate("alice-laptop", "admin", ctx)
        assert fake_pki.issued == ["alice-laptop"]
        assert not manager.bundle_path("alice-laptop").exists()
        assert manager.list_certificates() == []
        assert manager.get("alice-laptop") is None
        failed = [
            json.loads(r.getMessage())
            for r in caplog.records
            if r.name == "vpnadmin.security" and "CERT_GENERATE_FAILED" in r.getMessage()
        ]
        assert failed[-1]["details"]["issued_in_pki"] is True

        monkeypatch.undo()
        assert manager.generate("alice-laptop", "admin", ctx).serial_number != "unknown"

    def test_list_is_newest_first(self, fake_pki, backend, security_log, ctx):
        from pki.manager import CertificateManager

        ticks = iter(datetime(2025, 1, day, tzinfo=timezone.utc) for day in range(1, 10))
        manager = CertificateManager(
            fake_pki,
            backend.namespace("certificates"),
            backend.namespace("reservations"),
            fake_pki.cert_dir,
            security_log,
            now=lambda: next(ticks),
        )
        for name in ("first", "second", "third"):
            manager.generate(name, "admin", ctx)
        assert [c.name for c in manager.list_certificates()] == ["third", "second", "first"]


class TestConcurrency:
    def test_concurrent_duplicate_generate_issues_once(self, manager, fake_pki):
        fake_pki.issue_delay = 0.05
        outcomes: list[str] = []
        lock = threading.Lock()
        barrier = threading.Barrier(6)

        def worker() -> None:
            barrier.wait()
            try:
                manager.generate("shared-name", "admin", RequestContext.new())
                result = "created"
            except DuplicateCertificate:
                result = "duplicate"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["created"] + ["duplicate"] * 5
        assert fake_pki.issued == ["shared-name"]
        assert len(manager.list_certificates()) == 1

    def test_different_names_generate_in_parallel(self, manager, fake_pki):
        names = [f"client-{i}" for i in range(5)]
        threads = [
            threading.Thread(target=manager.generate, args=(n, "admin", RequestContext.new())) for n in names
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(fake_pki.issued) == names

    def test_reservation_held_elsewhere_is_duplicate(self, manager, backend, fake_pki, ctx):
        # another instance sharing the state backend is mid-issue
        backend.namespace("reservations").put_if_absent(
            "alice-laptop", {"reserved_at": datetime.now(timezone.utc).timestamp()}
        )
        with pytest.raises(DuplicateCertificate):
            manager.generate("alice-laptop", "admin", ctx)
        assert fake_pki.issued == []

    def test_abandoned_reservation_taken_over(self, manager, backend, ctx):
        backend.namespace("reservations").put_if_absent("alice-laptop", {"reserved_at": 0})
        assert manager.generate("alice-laptop", "admin", ctx).name == "alice-laptop"


class TestDownload:
    def test_returns_bundle_bytes(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        data = manager.download("alice-laptop", ctx)
        assert data == (fake_pki.cert_dir / "alice-laptop.ovpn").read_bytes()
        assert b"<cert>" in data

    def test_unknown_name(self, manager):
        with pytest.raises(CertificateNotFound):
            manager.download("nobody")


class TestRevoke:
    def test_revoke_flips_row_and_publishes_crl(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        revoked = manager.revoke("alice-laptop", "admin", ctx)
        assert revoked.status is CertificateStatus.revoked
        assert revoked.revoked_by == "admin"
        assert revoked.revoked_at is not None
        assert manager.get("alice-laptop").status is CertificateStatus.revoked
        crl = fake_pki.cert_dir / "crl.pem"
        assert crl.read_text() == "CRL revoked=alice-laptop\n"
        assert oct(crl.stat().st_mode & 0o777) == oct(0o644)

    def test_second_revoke_rejected(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        manager.revoke("alice-laptop", "admin", ctx)
        with pytest.raises(AlreadyRevoked):
            manager.revoke("alice-laptop", "admin", ctx)
        assert fake_pki.revoked == ["alice-laptop"]

    def test_unknown_name(self, manager, fake_pki, ctx):
        with pytest.raises(CertificateNotFound):
            manager.revoke("nobody", "admin", ctx)
        assert fake_pki.revoked == []

    @pytest.mark.parametrize("knob", ["fail_revoke", "fail_crl"])
    def test_tool_failure_leaves_row_active(self, manager, fake_pki, ctx, knob):
        manager.generate("alice-laptop", "admin", ctx)
        setattr(fake_pki, knob, True)
        with pytest.raises(RevocationFailed):
            manager.revoke("alice-laptop", "admin", ctx)
        assert manager.get("alice-laptop").status is CertificateStatus.active

    def test_retry_after_crl_failure_resumes_without_second_revoke(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        fake_pki.fail_crl = True
        with pytest.raises(RevocationFailed):
            manager.revoke("alice-laptop", "admin", ctx)
        assert fake_pki.revoked == ["alice-laptop"]
        assert manager.get("alice-laptop").status is CertificateStatus.active

        fake_pki.fail_crl = False
        revoked = manager.revoke("alice-laptop", "admin", ctx)
        assert revoked.status is CertificateStatus.revoked
        assert fake_pki.revoked == ["alice-laptop"]
        assert (fake_pki.cert_dir / "crl.pem").read_text() == "CRL revoked=alice-laptop\n"

    def test_retry_after_crl_copy_failure(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        blocker = fake_pki.cert_dir / "crl.pem"
        blocker.mkdir()
        with pytest.raises(FileSystemError):
            manager.revoke("alice-laptop", "admin", ctx)
        assert manager.get("alice-laptop").status is CertificateStatus.active
        assert not (fake_pki.cert_dir / "crl.pem.tmp").exists()

        blocker.rmdir()
        assert manager.revoke("alice-laptop", "admin", ctx).status is CertificateStatus.revoked
        assert fake_pki.revoked == ["alice-laptop"]
        assert blocker.read_text() == "CRL revoked=alice-laptop\n"

    def test_pending_revocation_survives_prune(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        fake_pki.fail_crl = True
        with pytest.raises(RevocationFailed):
            manager.revoke("alice-laptop", "admin", ctx)
        manager.bundle_path("alice-laptop").unlink()
        assert manager.prune(ctx) == []
        fake_pki.fail_crl = False
        assert manager.revoke("alice-laptop", "admin", ctx).status is CertificateStatus.revoked

    def test_revoke_reconciles_bundle_without_row(self, manager, fake_pki, ctx):
        (fake_pki.cert_dir / "legacy.ovpn").write_text("client\n")
        revoked = manager.revoke("legacy", "admin", ctx)
        assert revoked.status is CertificateStatus.revoked
        assert fake_pki.revoked == ["legacy"]


class TestReconciliation:
    def test_bundle_without_row_is_synthesized(self, manager, fake_pki):
        bundle = fake_pki.cert_dir / "legacy.ovpn"
        bundle.write_text("client\n")
        os.utime(bundle, (1_600_000_000, 1_600_000_000))
        [row] = manager.list_certificates()
        assert row.name == "legacy"
        assert row.status is CertificateStatus.active
        assert row.created_by == "unknown"
        assert row.created_at == datetime.fromtimestamp(1_600_000_000, tz=timezone.utc)
        # persisted, so a second listing does not re-synthesize
        assert manager.get("legacy") is not None

    def test_unparseable_bundle_gets_unknown_serial(self, manager, fake_pki, monkeypatch):
        (fake_pki.cert_dir / "broken.ovpn").write_text("garbage")

        def explode(path):
            from core.errors import FileSystemError

            raise FileSystemError("no certificate")

        monkeypatch.setattr(fake_pki, "cert_info", explode)
        [row] = manager.list_certificates()
        assert row.serial_number == "unknown"
        assert row.expires_at is None

    def test_server_bundle_and_foreign_files_hidden(self, manager, fake_pki):
        (fake_pki.cert_dir / "server.ovpn").write_text("server\n")
        (fake_pki.cert_dir / "notes.txt").write_text("hello\n")
        (fake_pki.cert_dir / "bad name.ovpn").write_text("x\n")
        assert manager.list_certificates() == []

    def test_row_without_bundle_hidden_but_kept(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        (fake_pki.cert_dir / "alice-laptop.ovpn").unlink()
        assert manager.list_certificates() == []
        assert manager.get("alice-laptop") is not None

    def test_prune_removes_rows_without_bundle(self, manager, fake_pki, ctx):
        manager.generate("alice-laptop", "admin", ctx)
        manager.generate("bob-phone", "admin", ctx)
        (fake_pki.cert_dir / "alice-laptop.ovpn").unlink()
        assert manager.prune(ctx) == ["alice-laptop"]
        assert manager.get("alice-laptop") is None
        assert manager.get("bob-phone") is not None


def test_lifecycle_is_audited(manager, ctx, caplog):
    caplog.set_level(logging.INFO, logger="vpnadmin.security")
    manager.generate("alice-laptop", "admin", ctx)
    manager.download("alice-laptop", ctx)
    manager.revoke("alice-laptop", "admin", ctx)
    with pytest.raises(AlreadyRevoked):
        manager.revoke("alice-laptop", "admin", ctx)
    events = [json.loads(r.getMessage())["event"] for r in caplog.records if r.name == "vpnadmin.security"]
    assert events == [
        "CERT_GENERATE_STARTED",
        "CERT_GENERATE_SUCCESS",
        "CERT_DOWNLOAD",
        "CERT_REVOKE_SUCCESS",
        "CERT_REVOKE_FAILED",
    ]


class TestInitializePKI:
    def test_publishes_crl_and_reports_steps(self, manager, fake_pki, ctx):
        steps = manager.initialize_pki(ctx)
        assert steps[0] == "init-pki"
        assert "gen-crl" in steps
        crl = fake_pki.cert_dir / "crl.pem"
        assert crl.read_text() == "CRL revoked=\n"
        assert oct(crl.stat().st_mode & 0o777) == oct(0o644)

    def test_rerun_is_a_no_op(self, manager, ctx):
        manager.initialize_pki(ctx)
        assert manager.initialize_pki(ctx) == []

    def test_failure_is_audited_and_raised(self, manager, fake_pki, ctx, monkeypatch, caplog):
        from core.errors import ExternalToolFailure

        caplog.set_level(logging.INFO, logger="vpnadmin.security")

        def broken(server_name):
            raise ExternalToolFailure(["easyrsa", "build-ca", "nopass"], exit_code=1, stderr="no openssl")

        monkeypatch.setattr(fake_pki, "init_pki", broken)
        with pytest.raises(ExternalToolFailure):
            manager.initialize_pki(ctx)
        events = [json.loads(r.getMessage())["event"] for r in caplog.records if r.name == "vpnadmin.security"]
        assert events == ["PKI_INIT_FAILED"]

