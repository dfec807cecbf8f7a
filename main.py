#!/usr/bin/env python3
"""
VPNAdmin -- operator CLI for the VPN certificate administration service.

Runs the same services the web app uses, against the same configuration
(.env / environment), so operators can bootstrap credentials and manage
certificates from a shell on the VPN host.

Usage:
  python main.py hash-password
  python main.py init-secrets >> .env
  python main.py init-pki
  python main.py list
  python main.py list --json
  python main.py generate alice-laptop
  python main.py revoke alice-laptop
  python main.py prune

Environment variables: see core/config.py. STATE_DB_URL must point at the
same database as the running server for the CLI to see its registry.
"""

import argparse
import getpass
import json
import secrets
import sys

from auth.tokens import hash_password
from core.audit import RequestContext, SecurityLog
from core.config import get_settings
from core.errors import VPNAdminError
from pki.manager import CertificateManager
from state.store import open_backend

_CLI_ACTOR = "cli"


def _cmd_hash_password(args: argparse.Namespace) -> int:
    password = getpass.getpass("Admin password: ")
    if len(password) < 12:
        print("  [!] Use at least 12 characters.", file=sys.stderr)
        return 1
    if getpass.getpass("Repeat password: ") != password:
        print("  [!] Passwords do not match.", file=sys.stderr)
        return 1
    print(f"ADMIN_PASSWORD_HASH={hash_password(password)}")
    return 0


def _cmd_init_secrets(args: argparse.Namespace) -> int:
    # Printed, never written: the operator decides where secrets live.
    for name in ("SECRET_KEY", "JWT_SECRET", "JWT_REFRESH_SECRET"):
        print(f"{name}={secrets.token_hex(32)}")
    return 0


def _open_manager() -> tuple[CertificateManager, SecurityLog, object]:
    settings = get_settings()
    backend = open_backend(settings.state_db_url)
    security_log = SecurityLog(settings.security_log_enabled, settings.security_log_path)
    return CertificateManager.from_settings(settings, backend, security_log), security_log, backend


def _cmd_list(args: argparse.Namespace, manager: CertificateManager, ctx: RequestContext) -> int:
    certificates = manager.list_certificates()
    if args.json:
        print(json.dumps([c.to_dict() for c in certificates], indent=2))
        return 0
    if not certificates:
        print("  No client certificates.")
        return 0
    print(f"  {'NAME':<32} {'STATUS':<8} {'SERIAL':<34} CREATED")
    for cert in certificates:
        print(f"  {cert.name:<32} {cert.status.value:<8} {cert.serial_number:<34} {cert.created_at:%Y-%m-%d %H:%M}")
    return 0


def _cmd_generate(args: argparse.Namespace, manager: CertificateManager, ctx: RequestContext) -> int:
    print(f"  Generating {args.name}...", end=" ", flush=True)
    metadata = manager.generate(args.name, _CLI_ACTOR, ctx)
    print("done.")
    print(f"  Bundle: {manager.bundle_path(args.name)}  (serial {metadata.serial_number})")
    return 0


def _cmd_revoke(args: argparse.Namespace, manager: CertificateManager, ctx: RequestContext) -> int:
    print(f"  Revoking {args.name}...", end=" ", flush=True)
    manager.revoke(args.name, _CLI_ACTOR, ctx)
    print("done. CRL updated.")
    return 0


def _cmd_init_pki(args: argparse.Namespace, manager: CertificateManager, ctx: RequestContext) -> int:
    print("  Preparing PKI...", end=" ", flush=True)
    steps = manager.initialize_pki(ctx)
    print("done.")
    if steps:
        print(f"  Ran: {', '.join(steps)}")
    else:
        print("  CA, server certificate, CRL and ta.key already present; nothing to do.")
    return 0


def _cmd_prune(args: argparse.Namespace, manager: CertificateManager, ctx: RequestContext) -> int:
    pruned = manager.prune(ctx)
    if pruned:
        print(f"  Removed {len(pruned)} registry rows without a bundle: {', '.join(pruned)}")
    else:
        print("  Registry is consistent with the certificates directory.")
    return 0


_MANAGER_COMMANDS = {
    "init-pki": _cmd_init_pki,
    "list": _cmd_list,
    "generate": _cmd_generate,
    "revoke": _cmd_revoke,
    "prune": _cmd_prune,
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vpnadmin",
        description="VPN client certificate administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-secrets >> .env
  python main.py hash-password
  python main.py init-pki
  python main.py generate alice-laptop
  python main.py list --json
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    sub.add_parser("hash-password", help="Prompt for a password and print ADMIN_PASSWORD_HASH")
    sub.add_parser("init-secrets", help="Print fresh SECRET_KEY / JWT_SECRET / JWT_REFRESH_SECRET lines")
    sub.add_parser("init-pki", help="Create the CA, server certificate, CRL and ta.key where missing")
    list_parser = sub.add_parser("list", help="List client certificates, newest first")
    list_parser.add_argument("--json", action="store_true", help="Output structured JSON")
    gen_parser = sub.add_parser("generate", help="Issue a client certificate and build its bundle")
    gen_parser.add_argument("name", help="Client name: 3-50 letters, digits, hyphens, underscores")
    rev_parser = sub.add_parser("revoke", help="Revoke a client certificate and refresh the CRL")
    rev_parser.add_argument("name")
    sub.add_parser("prune", help="Delete registry rows whose bundle was removed from disk")

    args = parser.parse_args(argv)

    if args.command == "hash-password":
        return _cmd_hash_password(args)
    if args.command == "init-secrets":
        return _cmd_init_secrets(args)

    try:
        manager, security_log, backend = _open_manager()
    except (ValueError, VPNAdminError) as exc:
        # pydantic's ValidationError is a ValueError
        print(f"  [!] Configuration error: {exc}", file=sys.stderr)
        return 1
    ctx = RequestContext.new(client_ip="localhost", actor=_CLI_ACTOR)
    try:
        return _MANAGER_COMMANDS[args.command](args, manager, ctx)
    except VPNAdminError as exc:
        print(f"\n  [!] {exc.public_message}", file=sys.stderr)
        print(f"      {exc}", file=sys.stderr)
        return 1
    finally:
        security_log.close()
        backend.close()


if __name__ == "__main__":
    sys.exit(main())
