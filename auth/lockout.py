"""
auth/lockout.py -- Failed-login counting and temporary account lockout.

State machine per bucket:

    Unlocked --(max failures inside the window)--> Locked
    Locked   --(window elapses since the last recorded failure)--> Unlocked
    any      --(successful login)--> Unlocked, counter cleared

Buckets are always recorded per (username, client IP). The scope setting
decides what is_account_locked() and clear_failed_attempts() look at:

  "ip"   -- only the caller's own (username, IP) bucket. An attacker hammering
            the admin username from one address cannot lock the real admin
            out from another address.
  "user" -- every bucket for the username. In-window failures are summed
            across addresses, so guesses spread over many IPs still reach
            the threshold and lock the account everywhere. A success clears
            them all.

Record, check and clear always agree on scope; there is no mode where one
of them is per-IP and another per-user.

Concurrency:
  - record_failed_attempt() increments through KeyedStore.update(), so
    parallel failures never overwrite each other's counts, in one process
    or across instances sharing a SQL backend.
  - attempt_lock() returns the in-process lock for the caller's scope key.
    AuthService holds it from the lock check until the failure is recorded,
    so a burst of parallel guesses is judged one at a time and the attempt
    after the threshold sees the lock.

Records live in a KeyedStore (state/store.py) so a SQL backend shares the
counters between instances.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from auth.models import FailedAttemptRecord
from state.locks import StripedLocks
from state.store import KeyedStore

logger = logging.getLogger("vpnadmin.auth.lockout")

_SEPARATOR = "|"


def _bucket_key(username: str, client_ip: str) -> str:
    return f"{username}{_SEPARATOR}{client_ip}"


def _user_prefix(username: str) -> str:
    return f"{username}{_SEPARATOR}"


class LockoutGuard:
    def __init__(
        self,
        store: KeyedStore,
        max_failed_attempts: int = 5,
        lockout_duration_seconds: float = 15 * 60,
        scope: str = "ip",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if scope not in ("ip", "user"):
            raise ValueError(f"unknown lockout scope: {scope!r}")
        self._store = store
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration_seconds
        self.scope = scope
        self._clock = clock
        self._locks = StripedLocks()

    def _is_stale(self, record: FailedAttemptRecord, now: float) -> bool:
        return now - record.last_attempt_at >= self.lockout_duration

    def _records_in_scope(self, username: str, client_ip: str) -> list[tuple[str, FailedAttemptRecord]]:
        if self.scope == "ip":
            key = _bucket_key(username, client_ip)
            raw = self._store.get(key)
            return [(key, FailedAttemptRecord.from_dict(raw))] if raw is not None else []
        return [
            (key, FailedAttemptRecord.from_dict(raw))
            for key, raw in self._store.items(prefix=_user_prefix(username))
            # usernames may contain the separator, so re-check the owner
            if raw.get("username") == username
        ]

    def attempt_lock(self, username: str, client_ip: str) -> threading.Lock:
        """Lock serializing login attempts that share a lockout decision.

        Not reentrant: do not call record/check methods that take it.
        """
        key = _bucket_key(username, client_ip) if self.scope == "ip" else _user_prefix(username)
        return self._locks.for_key(key)

    def record_failed_attempt(self, username: str, client_ip: str) -> FailedAttemptRecord:
        """Count one failure for (username, client_ip) and return the updated record."""
        now = self._clock()

        def bump(raw: dict | None) -> dict:
            record = FailedAttemptRecord.from_dict(raw) if raw is not None else None
            if record is None or self._is_stale(record, now):
                record = FailedAttemptRecord(username=username, client_ip=client_ip)
            record.count += 1
            record.last_attempt_at = now
            return record.to_dict()

        record = FailedAttemptRecord.from_dict(self._store.update(_bucket_key(username, client_ip), bump))
        logger.warning(
            "Failed authentication attempt recorded user=%s ip=%s count=%d",
            username,
            client_ip,
            record.count,
        )
        self.cleanup()
        return record

    def failures_in_scope(self, username: str, client_ip: str) -> int:
        """In-window failures that count toward the caller's lockout decision."""
        now = self._clock()
        return sum(
            record.count
            for _key, record in self._records_in_scope(username, client_ip)
            if not self._is_stale(record, now)
        )

    def is_account_locked(self, username: str, client_ip: str) -> bool:
        return self.failures_in_scope(username, client_ip) >= self.max_failed_attempts

    def failed_attempts(self, username: str, client_ip: str) -> int:
        """Current in-window failure count for the caller's own bucket."""
        raw = self._store.get(_bucket_key(username, client_ip))
        if raw is None:
            return 0
        record = FailedAttemptRecord.from_dict(raw)
        return 0 if self._is_stale(record, self._clock()) else record.count

    def clear_failed_attempts(self, username: str, client_ip: str) -> None:
        for key, _record in self._records_in_scope(username, client_ip):
            self._store.delete(key)

    def cleanup(self) -> int:
        """Delete every record whose window has elapsed. Returns rows removed."""
        now = self._clock()
        removed = 0
        for key, raw in self._store.items():
            if self._is_stale(FailedAttemptRecord.from_dict(raw), now):
                if self._store.delete(key):
                    removed += 1
        if removed:
            logger.debug("Purged %d stale failed-attempt records", removed)
        return removed
