"""
state/locks.py -- Per-key mutual exclusion inside one process.

StripedLocks maps any string key onto one of a fixed pool of locks, so
memory stays bounded however many distinct keys pass through. Two keys
that hash to the same stripe serialize against each other; that costs a
little parallelism and never correctness.

Callers must hold at most one stripe at a time. Taking a second stripe
while holding one can deadlock when both keys land on the same lock.

Usage:
    locks = StripedLocks()
    with locks.for_key("alice-laptop"):
        ...
"""

from __future__ import annotations

import threading
import zlib


class StripedLocks:
    def __init__(self, stripes: int = 64) -> None:
        if stripes < 1:
            raise ValueError("stripes must be positive")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: str) -> threading.Lock:
        # hash() is salted per process; crc32 gives every run the same stripe
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]
