"""
core/audit.py -- Request context and the append-only security event log.

RequestContext is created once per HTTP request (api/main.py middleware) or
CLI invocation and handed explicitly to every service call that needs to
audit something. Nothing here reads request-global state.

SecurityLog writes one JSON object per line to the "vpnadmin.security"
logger. Each record carries the correlation id, actor, client IP, event
category, event name and outcome so an operation can be reconstructed from
the log alone. When a file path is configured, a FileHandler in append mode
is attached so the audit trail survives independently of console output.

Usage:
    ctx = RequestContext.new(client_ip="10.0.0.5", actor="admin")
    security_log.event(ctx, "CERTIFICATE", "CERT_REVOKE_SUCCESS", "success", name="laptop")
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

logger = logging.getLogger("vpnadmin.security")

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")

_SEVERITY: dict[str, str] = {
    "AUTHENTICATION": "medium",
    "CERTIFICATE": "medium",
    "SYSTEM": "low",
}


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def safe_correlation_id(candidate: str | None) -> str:
    """Return candidate if it is a well-formed id, otherwise a fresh one.

    Client-supplied X-Request-ID values end up in log lines, so anything
    outside a conservative charset is replaced rather than echoed.
    """
    if candidate and _CORRELATION_ID_RE.match(candidate):
        return candidate
    return new_correlation_id()


@dataclass(frozen=True)
class RequestContext:
    """Per-request audit scope passed explicitly through service calls."""

    correlation_id: str
    client_ip: str
    actor: str = "anonymous"

    @classmethod
    def new(cls, client_ip: str = "localhost", actor: str = "anonymous") -> RequestContext:
        return cls(correlation_id=new_correlation_id(), client_ip=client_ip, actor=actor)

    def with_actor(self, actor: str) -> RequestContext:
        return replace(self, actor=actor)


class SecurityLog:
    """Structured audit logger for authentication and certificate events."""

    def __init__(self, enabled: bool = True, path: str = "") -> None:
        self.enabled = enabled
        self._handler: logging.Handler | None = None
        if enabled and path:
            handler = logging.FileHandler(path, mode="a", encoding="utf-8")
            handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(handler)
            self._handler = handler

    def event(
        self,
        ctx: RequestContext,
        category: str,
        event: str,
        outcome: str,
        **details,
    ) -> None:
        """Write one audit record. outcome is "success", "failure" or "locked"."""
        if not self.enabled:
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": ctx.correlation_id,
            "actor": ctx.actor,
            "client_ip": ctx.client_ip,
            "category": category,
            "event": event,
            "outcome": outcome,
            "severity": _SEVERITY.get(category, "low"),
        }
        if details:
            record["details"] = details
        level = logging.INFO if outcome == "success" else logging.WARNING
        logger.log(level, json.dumps(record, default=str, sort_keys=True))

    def close(self) -> None:
        if self._handler is not None:
            logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
