"""
state/store.py -- Keyed-store repositories for process and shared state.

The lockout tracker and the certificate registry are both plain key -> dict
maps. Business code talks to them only through the KeyedStore interface:

    get(key)                  -> dict | None
    put(key, value)           -> None
    put_if_absent(key, value) -> bool   (atomic check-and-reserve)
    update(key, mutate)       -> dict   (atomic read-modify-write)
    delete(key)               -> bool
    items(prefix="")          -> list[(key, dict)]

update() hands mutate() the current value (None when absent) and stores
whatever it returns. No other writer can interleave between the read and
the write, so counters built on it never lose increments.

Two backends hand out named namespaces implementing that interface:

  MemoryBackend -- dicts guarded by a lock. Single-process deployments.

  SqlBackend -- SQLAlchemy Core table shared by every namespace. Values are
      JSON text. put_if_absent() relies on the (namespace, key) primary key:
      when two writers race, the loser's INSERT raises IntegrityError and
      gets False back. That makes reservations hold across processes and
      hosts pointed at the same database. update() opens its transaction
      with a write (SQLite takes the database write lock, server databases
      lock the row) before reading the current value.

Usage:
    backend = open_backend("")                     # memory
    backend = open_backend("sqlite:///state.db")   # shared
    certs = backend.namespace("certificates")
    certs.put("laptop", {"status": "active"})
    backend.close()

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, web/, auth/, or pki/.
"""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

Mutator = Callable[[Optional[dict]], dict]

# update() retries when a concurrent writer creates the row between our
# read and our INSERT.
_UPDATE_ATTEMPTS = 3


class KeyedStore(Protocol):
    def get(self, key: str) -> dict | None: ...

    def put(self, key: str, value: dict) -> None: ...

    def put_if_absent(self, key: str, value: dict) -> bool: ...

    def update(self, key: str, mutate: Mutator) -> dict: ...

    def delete(self, key: str) -> bool: ...

    def items(self, prefix: str = "") -> list[tuple[str, dict]]: ...


class StateBackend(Protocol):
    def namespace(self, name: str) -> KeyedStore: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStore:
    """One namespace of process-local state.

    Values are deep-copied on the way in and out so callers cannot mutate
    stored state without going through put().
    """

    def __init__(self) -> None:
        self._data: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict | None:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: dict) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def put_if_absent(self, key: str, value: dict) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = copy.deepcopy(value)
            return True

    def update(self, key: str, mutate: Mutator) -> dict:
        with self._lock:
            current = self._data.get(key)
            value = mutate(copy.deepcopy(current) if current is not None else None)
            self._data[key] = copy.deepcopy(value)
            return value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def items(self, prefix: str = "") -> list[tuple[str, dict]]:
        with self._lock:
            return [(k, copy.deepcopy(v)) for k, v in self._data.items() if k.startswith(prefix)]


class MemoryBackend:
    def __init__(self) -> None:
        self._namespaces: dict[str, MemoryStore] = {}
        self._lock = threading.Lock()

    def namespace(self, name: str) -> MemoryStore:
        with self._lock:
            if name not in self._namespaces:
                self._namespaces[name] = MemoryStore()
            return self._namespaces[name]

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------

_metadata = MetaData()

_entries = Table(
    "kv_entries",
    _metadata,
    Column("namespace", String(64), primary_key=True),
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),  # JSON object
    Column("updated_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlStore:
    """One namespace of the shared kv_entries table."""

    def __init__(self, engine: Engine, name: str) -> None:
        self.engine = engine
        self.name = name

    def _where_key(self, key: str):
        return (_entries.c.namespace == self.name) & (_entries.c.key == key)

    def get(self, key: str) -> dict | None:
        with self.engine.connect() as conn:
            row = conn.execute(_entries.select().where(self._where_key(key))).fetchone()
        return json.loads(row.value) if row is not None else None

    def put(self, key: str, value: dict) -> None:
        payload = json.dumps(value, default=str)
        with self.engine.connect() as conn:
            updated = conn.execute(
                _entries.update().where(self._where_key(key)).values(value=payload, updated_at=_now_iso())
            ).rowcount
            if not updated:
                try:
                    conn.execute(
                        _entries.insert().values(
                            namespace=self.name, key=key, value=payload, updated_at=_now_iso()
                        )
                    )
                except IntegrityError:
                    # Another writer inserted between our UPDATE and INSERT.
                    conn.rollback()
                    conn.execute(
                        _entries.update().where(self._where_key(key)).values(value=payload, updated_at=_now_iso())
                    )
            conn.commit()

    def put_if_absent(self, key: str, value: dict) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _entries.insert().values(
                        namespace=self.name,
                        key=key,
                        value=json.dumps(value, default=str),
                        updated_at=_now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def update(self, key: str, mutate: Mutator) -> dict:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.engine.begin() as conn:
                    # Write first: takes the lock before the read below.
                    conn.execute(_entries.update().where(self._where_key(key)).values(updated_at=_now_iso()))
                    row = conn.execute(_entries.select().where(self._where_key(key))).fetchone()
                    value = mutate(json.loads(row.value) if row is not None else None)
                    payload = json.dumps(value, default=str)
                    if row is None:
                        conn.execute(
                            _entries.insert().values(
                                namespace=self.name, key=key, value=payload, updated_at=_now_iso()
                            )
                        )
                    else:
                        conn.execute(_entries.update().where(self._where_key(key)).values(value=payload))
                return value
            except IntegrityError:
                if attempt >= _UPDATE_ATTEMPTS:
                    raise

    def delete(self, key: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_entries.delete().where(self._where_key(key)))
            conn.commit()
        return result.rowcount > 0

    def items(self, prefix: str = "") -> list[tuple[str, dict]]:
        query = _entries.select().where(_entries.c.namespace == self.name)
        if prefix:
            query = query.where(_entries.c.key.like(f"{_escape_like(prefix)}%", escape="\\"))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_entries.c.key)).fetchall()
        return [(row.key, json.loads(row.value)) for row in rows]


class SqlBackend:
    """Shared state in any SQLAlchemy-supported database.

    Usage:
        backend = SqlBackend("sqlite:///vpnadmin_state.db")
        backend = SqlBackend("postgresql://user:pw@host/db")
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def namespace(self, name: str) -> SqlStore:
        return SqlStore(self.engine, name)

    def close(self) -> None:
        self.engine.dispose()


def open_backend(db_url: str = "") -> MemoryBackend | SqlBackend:
    """Return the SQL backend for a configured URL, else process-local memory."""
    if db_url:
        return SqlBackend(db_url)
    return MemoryBackend()
