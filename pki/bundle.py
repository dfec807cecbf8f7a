"""
pki/bundle.py -- Inline OpenVPN client bundle (.ovpn) rendering.

A bundle is a single self-contained file: client directives followed by the
CA chain, the client certificate and the client key embedded in
<ca>/<cert>/<key> blocks, plus <tls-auth> when the server uses a static
TLS auth key. Users import one file and need nothing else.

Certificate files written by Easy-RSA carry a human-readable text dump
before the PEM block. Only the PEM blocks are embedded.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_PEM_CERT_RE = re.compile(r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL)
_INLINE_CERT_RE = re.compile(r"<cert>\s*(.+?)\s*</cert>", re.DOTALL)


def extract_pem_certificates(text: str) -> str:
    """Return only the PEM certificate blocks in text, newline-joined.

    Falls back to the stripped input when no PEM markers are present.
    """
    blocks = _PEM_CERT_RE.findall(text)
    return "\n".join(blocks) if blocks else text.strip()


def extract_bundle_certificate(text: str) -> str | None:
    """Return the client certificate PEM embedded in a bundle, if any."""
    match = _INLINE_CERT_RE.search(text)
    if match is None:
        return None
    return extract_pem_certificates(match.group(1))


@dataclass(frozen=True)
class BundleOptions:
    remote_host: str
    remote_port: int = 1194
    protocol: str = "udp"


def render_client_bundle(
    options: BundleOptions,
    ca_pem: str,
    cert_pem: str,
    key_pem: str,
    tls_auth_key: str | None = None,
) -> str:
    lines = [
        "client",
        "dev tun",
        f"proto {options.protocol}",
        f"remote {options.remote_host} {options.remote_port}",
        "resolv-retry infinite",
        "nobind",
        "persist-key",
        "persist-tun",
        "remote-cert-tls server",
        "verb 3",
    ]
    if tls_auth_key:
        lines += ["key-direction 1", "<tls-auth>", tls_auth_key.strip(), "</tls-auth>"]
    lines += [
        "<ca>",
        extract_pem_certificates(ca_pem),
        "</ca>",
        "<cert>",
        extract_pem_certificates(cert_pem),
        "</cert>",
        "<key>",
        key_pem.strip(),
        "</key>",
    ]
    return "\n".join(lines) + "\n"
