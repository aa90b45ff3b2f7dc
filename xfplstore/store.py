"""Local SQLite persistence for synced API resources."""

from __future__ import annotations

import json
import os
import sqlite3
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from xfplstore import queries
from xfplstore.fields import extract_object_id, fts_row_id, resolve_item_id
from xfplstore.schema import (
    MIGRATION_LOCK_TIMEOUT,
    migrate,
    read_schema_version,
    retry_on_busy,
)
from xfplstore.typed import get_typed_table

_BUSY_TIMEOUT = 5.0
_DEFAULT_LIST_LIMIT = 200
_DEFAULT_SEARCH_LIMIT = 50

_COMMON_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA mmap_size = 268435456",
)


class NotFoundError(LookupError):
    """Raised when a requested resource is not in the store."""

    def __init__(self, resource_type: str, id: str) -> None:
        super().__init__(f"{resource_type}/{id} not found in local store")
        self.resource_type = resource_type
        self.id = id


def _now() -> str:
    return datetime.now().astimezone().isoformat(sep=" ", timespec="microseconds")


def _payload(data: str | bytes | bytearray) -> str:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8")
    if isinstance(data, str):
        return data
    raise TypeError(f"resource data must be str or bytes, not {type(data).__name__}")


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(_as_text(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _warn(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


class Store:
    """A SQLite-backed store of JSON resources with full-text search and sync state.

    All access goes through one connection guarded by a lock, so writes
    from several threads are serialized.
    """

    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self._conn = conn
        self._path = path
        self._lock = threading.RLock()

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def path(self) -> str:
        """On-disk path of the backing SQLite file."""
        return self._path

    @property
    def connection(self) -> sqlite3.Connection:
        """The underlying connection, for ad-hoc queries. Do not close it."""
        return self._conn

    def schema_version(self) -> int:
        """Return the stamped schema version; 0 means the database predates the gate."""
        with self._lock:
            return read_schema_version(self._conn)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._conn
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _upsert_generic(self, conn: sqlite3.Connection, resource_type: str, id: str, payload: str) -> None:
        now = _now()
        conn.execute(
            "INSERT INTO resources (id, resource_type, data, synced_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(resource_type, id) DO UPDATE SET data = excluded.data, "
            "synced_at = excluded.synced_at, updated_at = excluded.updated_at",
            (id, resource_type, payload, now, now),
        )
        rowid = fts_row_id(resource_type, id)
        try:
            conn.execute("DELETE FROM resources_fts WHERE rowid = ?", (rowid,))
        except sqlite3.Error as exc:
            _warn(f"FTS index cleanup failed: {exc}")
        try:
            conn.execute(
                "INSERT INTO resources_fts (rowid, id, resource_type, content) VALUES (?, ?, ?, ?)",
                (rowid, id, resource_type, payload),
            )
        except sqlite3.Error as exc:
            _warn(f"FTS index update failed: {exc}")

    def upsert(self, resource_type: str, id: str, data: str | bytes) -> None:
        """Insert or replace a resource and its full-text index entry."""
        payload = _payload(data)
        with self._transaction() as conn:
            self._upsert_generic(conn, resource_type, id, payload)

    def get(self, resource_type: str, id: str) -> str:
        """Return the stored JSON text; raises NotFoundError on a miss."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM resources WHERE resource_type = ? AND id = ?",
                (resource_type, id),
            ).fetchone()
        if row is None:
            raise NotFoundError(resource_type, id)
        return _as_text(row[0])

    def list(self, resource_type: str, limit: int = 0) -> list[str]:
        """Return up to limit payloads (200 when limit <= 0), most recently updated first."""
        if limit <= 0:
            limit = _DEFAULT_LIST_LIMIT
        with self._lock:
            rows = self._conn.execute(
                "SELECT data FROM resources WHERE resource_type = ? "
                "ORDER BY updated_at DESC LIMIT ?",
                (resource_type, limit),
            ).fetchall()
        return [_as_text(row[0]) for row in rows]

    def search(self, query: str, limit: int = 0) -> list[str]:
        """Full-text search over stored payloads (50 results when limit <= 0)."""
        if limit <= 0:
            limit = _DEFAULT_SEARCH_LIMIT
        with self._lock:
            rows = self._conn.execute(
                "SELECT r.data FROM resources r "
                "JOIN resources_fts f ON r.id = f.id AND r.resource_type = f.resource_type "
                "WHERE resources_fts MATCH ? ORDER BY rank LIMIT ?",
                (query, limit),
            ).fetchall()
        return [_as_text(row[0]) for row in rows]

    def upsert_typed(self, resource_type: str, data: str | bytes) -> None:
        """Store a resource in both the generic table and its domain table.

        Raises ValueError for unparsable data, a missing id or a resource
        type without a domain table; constraint failures raise sqlite3.Error.
        """
        table = get_typed_table(resource_type)
        if table is None:
            raise ValueError(f"no typed table for {resource_type}")
        payload = _payload(data)
        try:
            obj = json.loads(payload)
        except ValueError as exc:
            raise ValueError(f"unmarshaling {resource_type}: {exc}") from exc
        if obj is None:
            obj = {}
        if not isinstance(obj, dict):
            raise ValueError(f"unmarshaling {resource_type}: expected a JSON object")
        id = extract_object_id(obj)
        if not id:
            raise ValueError(f"missing id for {resource_type}")
        with self._transaction() as conn:
            self._upsert_generic(conn, resource_type, id, payload)
            table.upsert(conn, id, obj, payload)

    def upsert_entry_event(self, data: str | bytes) -> None:
        """Store an entry_event record."""
        self.upsert_typed("entry_event", data)

    def upsert_history(self, data: str | bytes) -> None:
        """Store a history record."""
        self.upsert_typed("history", data)

    def upsert_transfers(self, data: str | bytes) -> None:
        """Store a transfers record."""
        self.upsert_typed("transfers", data)

    def upsert_live(self, data: str | bytes) -> None:
        """Store a live record."""
        self.upsert_typed("live", data)

    def upsert_standings(self, data: str | bytes) -> None:
        """Store a standings record."""
        self.upsert_typed("standings", data)

    def upsert_batch(self, resource_type: str, items: Iterable[str | bytes]) -> tuple[int, int]:
        """Store many items in one transaction.

        Returns (stored, extract_failures): rows written to the generic
        table, and parsed items whose primary key could not be resolved.
        A failing domain-table insert is rolled back on its own and leaves
        the generic row in place.
        """
        items = list(items)
        table = get_typed_table(resource_type)
        stored = skipped = extract_failures = typed_failures = 0

        with self._transaction() as conn:
            for index, item in enumerate(items):
                try:
                    payload = _payload(item)
                    obj = json.loads(payload)
                except ValueError:
                    skipped += 1
                    continue
                if obj is None:
                    obj = {}
                if not isinstance(obj, dict):
                    skipped += 1
                    continue

                id = resolve_item_id(obj, resource_type)
                if id is None:
                    skipped += 1
                    extract_failures += 1
                    continue

                self._upsert_generic(conn, resource_type, id, payload)
                stored += 1

                if table is None:
                    continue
                savepoint = f"pp_typed_{index}"
                conn.execute(f"SAVEPOINT {savepoint}")
                try:
                    table.upsert(conn, id, obj, payload)
                except sqlite3.Error:
                    conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    typed_failures += 1
                conn.execute(f"RELEASE SAVEPOINT {savepoint}")

            if skipped and items and skipped * 2 > len(items):
                _warn(
                    f"{skipped}/{len(items)} {resource_type} items skipped "
                    "(no extractable ID field found)"
                )
            if typed_failures:
                _warn(
                    f"{typed_failures}/{len(items)} {resource_type} items: typed-table "
                    "upsert failed; generic resources rows preserved"
                )
        return stored, extract_failures

    def save_sync_state(self, resource_type: str, cursor: str, count: int) -> None:
        """Record the cursor, sync time and item count for a resource type."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO sync_state (resource_type, last_cursor, last_synced_at, total_count) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(resource_type) DO UPDATE SET last_cursor = excluded.last_cursor, "
                "last_synced_at = excluded.last_synced_at, total_count = excluded.total_count",
                (resource_type, cursor, _now(), count),
            )

    def get_sync_state(self, resource_type: str) -> tuple[str, datetime | None, int]:
        """Return (cursor, last_synced_at, count); ("", None, 0) when never synced."""
        with self._lock:
            row = self._conn.execute(
                "SELECT last_cursor, last_synced_at, total_count FROM sync_state "
                "WHERE resource_type = ?",
                (resource_type,),
            ).fetchone()
        if row is None:
            return "", None, 0
        cursor, synced, count = row
        return (
            "" if cursor is None else _as_text(cursor),
            _parse_timestamp(synced),
            int(count or 0),
        )

    def save_sync_cursor(self, resource_type: str, cursor: str) -> None:
        """Store the pagination cursor, keeping any recorded count."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO sync_state (resource_type, last_cursor, last_synced_at, total_count) "
                "VALUES (?, ?, CURRENT_TIMESTAMP, 0) "
                "ON CONFLICT(resource_type) DO UPDATE SET last_cursor = ?, "
                "last_synced_at = CURRENT_TIMESTAMP",
                (resource_type, cursor, cursor),
            )

    def _sync_column(self, column: str, resource_type: str) -> str:
        try:
            with self._lock:
                row = self._conn.execute(
                    f"SELECT {column} FROM sync_state WHERE resource_type = ?",
                    (resource_type,),
                ).fetchone()
        except sqlite3.Error:
            return ""
        if row is None or row[0] is None:
            return ""
        return _as_text(row[0])

    def get_sync_cursor(self, resource_type: str) -> str:
        """Return the last pagination cursor, or "" if none."""
        return self._sync_column("last_cursor", resource_type)

    def get_last_synced_at(self, resource_type: str) -> str:
        """Return the last sync timestamp as stored, or "" if none."""
        return self._sync_column("last_synced_at", resource_type)

    def clear_sync_cursors(self) -> None:
        """Forget all sync state so the next sync starts from scratch."""
        with self._lock:
            self._conn.execute("DELETE FROM sync_state")

    def list_ids(self, resource_type: str) -> list[str]:
        """Return all ids of a resource type."""
        with self._lock:
            return queries.list_ids(self._conn, resource_type)

    def list_field(self, resource_type: str, field: str) -> list[str]:
        """Return the distinct non-empty values of a field for a resource type."""
        with self._lock:
            return queries.list_field(self._conn, resource_type, field)

    def resolve_by_name(self, resource_type: str, value: str, *args: str) -> str:
        """Resolve a name to an id by matching the given JSON fields."""
        with self._lock:
            return queries.resolve_by_name(self._conn, resource_type, value, *args)

    def query(self, sql: str, *args: Any) -> list[tuple[Any, ...]]:
        """Run a raw SQL statement and return all resulting rows."""
        with self._lock:
            return self._conn.execute(sql, args).fetchall()

    def count(self, resource_type: str) -> int:
        """Return the number of stored resources of a type."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM resources WHERE resource_type = ?", (resource_type,)
            ).fetchone()
        return int(row[0])

    def status(self) -> dict[str, int]:
        """Return resource counts per type, ordered by type."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT resource_type, COUNT(*) FROM resources "
                "GROUP BY resource_type ORDER BY resource_type"
            ).fetchall()
        return {_as_text(rt): int(n) for rt, n in rows}


def _connect(target: str, uri: bool = False) -> sqlite3.Connection:
    return sqlite3.connect(
        target,
        timeout=_BUSY_TIMEOUT,
        isolation_level=None,
        check_same_thread=False,
        uri=uri,
    )


def open_store(db_path: str | os.PathLike[str], cancel: threading.Event | None = None) -> Store:
    """Open or create the store at db_path and bring its schema up to date.

    Setting cancel interrupts a migration that is waiting on a lock
    (MigrationCancelled); a newer on-disk schema raises SchemaVersionError.
    """
    path = os.fspath(db_path)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = _connect(path)
    try:
        deadline = time.monotonic() + MIGRATION_LOCK_TIMEOUT
        retry_on_busy(
            lambda: conn.execute("PRAGMA journal_mode = WAL").fetchall(),
            deadline,
            "setting journal mode",
            cancel,
        )
        conn.execute("PRAGMA synchronous = NORMAL")
        for pragma in _COMMON_PRAGMAS:
            conn.execute(pragma)
        migrate(conn, cancel)
    except BaseException:
        conn.close()
        raise
    return Store(conn, path)


def open_read_only(db_path: str | os.PathLike[str]) -> Store:
    """Open an existing store read-only; writes through it fail. No migration runs."""
    path = os.fspath(db_path)
    conn = _connect(Path(path).resolve().as_uri() + "?mode=ro", uri=True)
    try:
        for pragma in _COMMON_PRAGMAS:
            conn.execute(pragma)
    except BaseException:
        conn.close()
        raise
    return Store(conn, path)