"""Schema creation, upgrades and version gating for the local SQLite store."""

from __future__ import annotations

import sqlite3
import sys
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from xfplstore.fields import fts_row_id

T = TypeVar("T")

STORE_SCHEMA_VERSION = 2

MIGRATION_LOCK_TIMEOUT = 30.0
_BACKOFF_MIN = 0.005
_BACKOFF_MAX = 0.1

RESOURCES_FTS_CREATE_SQL = """CREATE VIRTUAL TABLE IF NOT EXISTS resources_fts USING fts5(
    id, resource_type, content, tokenize='porter unicode61'
)"""

_RESOURCES_TABLE_BODY = """(
    id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    data JSON NOT NULL,
    synced_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (resource_type, id)
)"""


def _typed_table_sql(table: str, parent: str) -> tuple[str, str]:
    return (
        f'CREATE TABLE IF NOT EXISTS "{table}" (\n'
        '    "id" TEXT PRIMARY KEY,\n'
        f'    "{parent}" TEXT NOT NULL,\n'
        '    "data" JSON NOT NULL,\n'
        '    "synced_at" DATETIME DEFAULT CURRENT_TIMESTAMP\n'
        ")",
        f'CREATE INDEX IF NOT EXISTS "idx_{table}_{parent}" ON "{table}"("{parent}")',
    )


MIGRATIONS: tuple[str, ...] = (
    "CREATE TABLE IF NOT EXISTS resources " + _RESOURCES_TABLE_BODY,
    "CREATE INDEX IF NOT EXISTS idx_resources_type ON resources(resource_type)",
    "CREATE INDEX IF NOT EXISTS idx_resources_synced ON resources(synced_at)",
    """CREATE TABLE IF NOT EXISTS sync_state (
        resource_type TEXT PRIMARY KEY,
        last_cursor TEXT,
        last_synced_at DATETIME,
        total_count INTEGER DEFAULT 0
    )""",
    RESOURCES_FTS_CREATE_SQL,
    *_typed_table_sql("entry_event", "entry_id"),
    *_typed_table_sql("history", "entry_id"),
    *_typed_table_sql("transfers", "entry_id"),
    *_typed_table_sql("live", "event_id"),
    *_typed_table_sql("standings", "leagues_classic_id"),
)

# Columns that newer schemas declare but older databases may lack.
_BACKFILL_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("entry_event", "entry_id", "TEXT"),
    ("history", "entry_id", "TEXT"),
    ("transfers", "entry_id", "TEXT"),
    ("live", "event_id", "TEXT"),
    ("standings", "leagues_classic_id", "TEXT"),
    ("sync_state", "last_cursor", "TEXT"),
    ("sync_state", "last_synced_at", "DATETIME"),
    ("sync_state", "total_count", "INTEGER DEFAULT 0"),
)

_BUSY_MARKERS = (
    "SQLITE_BUSY",
    "SQLITE_LOCKED",
    "database is locked",
    "database table is locked",
)


class MigrationError(Exception):
    """Raised when the schema cannot be brought up to date."""


class SchemaVersionError(MigrationError):
    """Raised when the database was written by a newer schema than this one."""

    def __init__(self, found: int, supported: int = STORE_SCHEMA_VERSION) -> None:
        super().__init__(
            f"database schema version {found} is newer than supported version "
            f"{supported}; upgrade the CLI binary or open an older database"
        )
        self.found = found
        self.supported = supported


class MigrationCancelled(MigrationError):
    """Raised when the caller cancels while a migration is waiting on a lock."""


def is_sqlite_busy(exc: BaseException | None) -> bool:
    """Return True if exc is a retryable SQLite busy or locked condition."""
    if exc is None:
        return False
    name = getattr(exc, "sqlite_errorname", "") or ""
    if name.startswith(("SQLITE_BUSY", "SQLITE_LOCKED")):
        return True
    message = str(exc)
    return any(marker in message for marker in _BUSY_MARKERS)


def retry_on_busy(
    op: Callable[[], T],
    deadline: float,
    label: str,
    cancel: threading.Event | None = None,
) -> T:
    """Run op, retrying with backoff while SQLite reports busy.

    deadline is a time.monotonic() value. Non-busy SQLite errors and
    exhausted deadlines raise MigrationError; a set cancel event raises
    MigrationCancelled.
    """
    backoff = _BACKOFF_MIN
    while True:
        try:
            return op()
        except sqlite3.Error as exc:
            if not is_sqlite_busy(exc):
                raise MigrationError(f"{label}: {exc}") from exc
            if time.monotonic() > deadline:
                raise MigrationError(
                    f"{label}: timed out after {MIGRATION_LOCK_TIMEOUT:g}s "
                    f"under SQLite contention: {exc}"
                ) from exc
            if cancel is not None:
                if cancel.wait(backoff):
                    raise MigrationCancelled(f"{label}: cancelled") from exc
            else:
                time.sleep(backoff)
            backoff = min(backoff * 2, _BACKOFF_MAX)


def read_schema_version(conn: sqlite3.Connection) -> int:
    """Return PRAGMA user_version; sqlite3.Error propagates."""
    rows = conn.execute("PRAGMA user_version").fetchall()
    return int(rows[0][0]) if rows else 0


def table_exists(conn: sqlite3.Connection, name: str) -> bool:
    """Return True if a table with this name exists."""
    try:
        rows = conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        ).fetchall()
    except sqlite3.Error as exc:
        raise MigrationError(f"checking table {name}: {exc}") from exc
    return rows[0][0] > 0


def _column_names(conn: sqlite3.Connection, table: str) -> list[str]:
    quoted = table.replace('"', '""')
    return [row[1] for row in conn.execute(f'PRAGMA table_info("{quoted}")').fetchall()]


def ensure_column(conn: sqlite3.Connection, table: str, column: str, decl: str) -> None:
    """Add column to table unless the table is missing or already has it."""
    if not table_exists(conn, table):
        return
    try:
        if column in _column_names(conn, table):
            return
    except sqlite3.Error as exc:
        raise MigrationError(f"table_info {table}: {exc}") from exc

    try:
        conn.execute(f'ALTER TABLE "{table}" ADD COLUMN "{column}" {decl}')
    except sqlite3.Error as exc:
        # A concurrent migrator may have added it first; the end state is the same.
        if "duplicate column name" in str(exc):
            return
        raise MigrationError(f"add column {table}.{column}: {exc}") from exc


def resources_has_composite_key(conn: sqlite3.Connection) -> bool:
    """Return True if resources is keyed by (resource_type, id) in that order."""
    try:
        rows = conn.execute("PRAGMA table_info(resources)").fetchall()
    except sqlite3.Error as exc:
        raise MigrationError(f"reading resources table info: {exc}") from exc
    pk = {row[1]: row[5] for row in rows}
    return pk.get("resource_type") == 1 and pk.get("id") == 2


def rebuild_resources_fts(conn: sqlite3.Connection) -> None:
    """Index every resources row into resources_fts under its scoped row id."""
    try:
        rows = conn.execute("SELECT id, resource_type, data FROM resources").fetchall()
    except sqlite3.Error as exc:
        raise MigrationError(f"querying resources: {exc}") from exc

    for id, resource_type, data in rows:
        try:
            conn.execute(
                "INSERT INTO resources_fts (rowid, id, resource_type, content) "
                "VALUES (?, ?, ?, ?)",
                (fts_row_id(resource_type, id), id, resource_type, data),
            )
        except sqlite3.Error as exc:
            raise MigrationError(f"indexing resource {resource_type}/{id}: {exc}") from exc


def _migrate_resources_composite_key(conn: sqlite3.Connection) -> None:
    if not table_exists(conn, "resources"):
        return

    if not resources_has_composite_key(conn):
        steps = (
            ("creating resources_v2", "CREATE TABLE resources_v2 " + _RESOURCES_TABLE_BODY),
            (
                "copying resources rows",
                "INSERT INTO resources_v2 (id, resource_type, data, synced_at, updated_at) "
                "SELECT id, resource_type, data, synced_at, updated_at FROM resources",
            ),
            ("dropping old resources table", "DROP TABLE resources"),
            ("renaming resources_v2", "ALTER TABLE resources_v2 RENAME TO resources"),
        )
        for label, stmt in steps:
            try:
                conn.execute(stmt)
            except sqlite3.Error as exc:
                raise MigrationError(f"{label}: {exc}") from exc

    # Older full-text rows were keyed by id alone and must be rebuilt.
    for label, stmt in (
        ("dropping resources_fts", "DROP TABLE IF EXISTS resources_fts"),
        ("creating resources_fts", RESOURCES_FTS_CREATE_SQL),
    ):
        try:
            conn.execute(stmt)
        except sqlite3.Error as exc:
            raise MigrationError(f"{label}: {exc}") from exc
    try:
        rebuild_resources_fts(conn)
    except MigrationError as exc:
        raise MigrationError(f"rebuilding resources_fts: {exc}") from exc


def _check_version(current: int) -> None:
    if current > STORE_SCHEMA_VERSION:
        raise SchemaVersionError(current)


def _exec_with_busy_retry(
    conn: sqlite3.Connection,
    stmt: str,
    label: str,
    deadline: float,
    cancel: threading.Event | None,
) -> None:
    retry_on_busy(lambda: conn.execute(stmt), deadline, label, cancel)


@contextmanager
def _migration_lock(
    conn: sqlite3.Connection, deadline: float, cancel: threading.Event | None
) -> Iterator[None]:
    _exec_with_busy_retry(
        conn, "BEGIN IMMEDIATE", "begin migration transaction", deadline, cancel
    )
    committed = False
    try:
        yield
        _exec_with_busy_retry(
            conn, "COMMIT", "commit migration transaction", deadline, cancel
        )
        committed = True
    finally:
        if not committed and conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                print(f"warning: store migration rollback failed: {exc}", file=sys.stderr)


def _apply(conn: sqlite3.Connection) -> None:
    # Re-read inside the lock: a newer peer may have stamped a higher version.
    try:
        current = read_schema_version(conn)
    except sqlite3.Error as exc:
        raise MigrationError(f"reading schema version: {exc}") from exc
    _check_version(current)

    if current < 2:
        try:
            _migrate_resources_composite_key(conn)
        except MigrationError as exc:
            raise MigrationError(f"migrating resources composite key: {exc}") from exc

    try:
        for table, column, decl in _BACKFILL_COLUMNS:
            ensure_column(conn, table, column, decl)
    except MigrationError as exc:
        raise MigrationError(f"backfilling columns: {exc}") from exc

    for stmt in MIGRATIONS:
        try:
            conn.execute(stmt)
        except sqlite3.Error as exc:
            raise MigrationError(f"migration failed: {exc}") from exc

    try:
        conn.execute(f"PRAGMA user_version = {STORE_SCHEMA_VERSION}")
    except sqlite3.Error as exc:
        raise MigrationError(f"stamp user_version: {exc}") from exc


def migrate(conn: sqlite3.Connection, cancel: threading.Event | None = None) -> None:
    """Bring the schema on conn up to STORE_SCHEMA_VERSION.

    All changes run in one BEGIN IMMEDIATE transaction so concurrent
    migrators serialize. A database newer than this schema is refused
    before the lock is taken.
    """
    if cancel is not None and cancel.is_set():
        raise MigrationCancelled("acquiring migration connection: cancelled")

    deadline = time.monotonic() + MIGRATION_LOCK_TIMEOUT
    current = retry_on_busy(
        lambda: read_schema_version(conn), deadline, "reading schema version", cancel
    )
    _check_version(current)

    previous_isolation = conn.isolation_level
    conn.isolation_level = None
    try:
        with _migration_lock(conn, deadline, cancel):
            _apply(conn)
    finally:
        conn.isolation_level = previous_isolation