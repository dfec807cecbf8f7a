"""
pki/models.py -- Domain dataclasses for the certificate lifecycle.

These are pure data containers. The registry stores CertificateMetadata as a
plain dict (state/store.py values are JSON-friendly), so to_dict/from_dict
round-trip datetimes through ISO 8601 strings.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

# Client names become file names and easyrsa arguments. Anything outside
# this charset is rejected, never sanitized.
CLIENT_NAME_PATTERN = r"^[a-zA-Z0-9_-]{3,50}$"
_CLIENT_NAME_RE = re.compile(CLIENT_NAME_PATTERN)


def is_valid_client_name(name: object) -> bool:
    return isinstance(name, str) and _CLIENT_NAME_RE.fullmatch(name) is not None


class CertificateStatus(str, Enum):
    active = "active"
    revoked = "revoked"


@dataclass(frozen=True)
class IssuedCertificate:
    """Files produced by one successful issuance."""

    cert_path: Path
    key_path: Path
    bundle_path: Path


@dataclass(frozen=True)
class PKIInitResult:
    """Outcome of preparing a PKI: the steps that actually ran (empty when
    everything already existed) and where the current CRL lives."""

    steps: list[str]
    crl_path: Path


@dataclass(frozen=True)
class CertInfo:
    serial_number: str
    expires_at: Optional[datetime]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class CertificateMetadata:
    """Registry row for one client certificate.

    An active row must correspond to an unrevoked bundle in the certificates
    directory. A row only becomes revoked after the PKI tool revoked it and
    the regenerated CRL was copied next to the bundles.
    """

    name: str
    status: CertificateStatus
    serial_number: str
    created_at: datetime
    created_by: str = "unknown"
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "serial_number": self.serial_number,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "expires_at": _iso(self.expires_at),
            "revoked_at": _iso(self.revoked_at),
            "revoked_by": self.revoked_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CertificateMetadata:
        return cls(
            name=data["name"],
            status=CertificateStatus(data["status"]),
            serial_number=data["serial_number"],
            created_at=_parse(data["created_at"]),
            created_by=data.get("created_by") or "unknown",
            expires_at=_parse(data.get("expires_at")),
            revoked_at=_parse(data.get("revoked_at")),
            revoked_by=data.get("revoked_by"),
        )
