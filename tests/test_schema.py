import sqlite3
import threading
import time

import pytest

from xfplstore.fields import fts_row_id
from xfplstore.schema import (
    STORE_SCHEMA_VERSION,
    MigrationCancelled,
    MigrationError,
    SchemaVersionError,
    ensure_column,
    is_sqlite_busy,
    migrate,
    read_schema_version,
    rebuild_resources_fts,
    resources_has_composite_key,
    retry_on_busy,
    table_exists,
)


def _connect(path, timeout=5.0):
    return sqlite3.connect(path, isolation_level=None, timeout=timeout, check_same_thread=False)


def _columns(conn, table):
    return {row[1] for row in conn.execute(f'PRAGMA table_info("{table}")').fetchall()}


def _stamp(path, version):
    raw = _connect(path)
    raw.execute(f"PRAGMA user_version = {version}")
    raw.close()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data.db"


@pytest.fixture
def hold_write_lock(db_path):
    holder = _connect(db_path)
    holder.execute("PRAGMA journal_mode=WAL")
    holder.execute("BEGIN")
    holder.execute("CREATE TABLE IF NOT EXISTS holder_lock (id INTEGER)")
    yield holder
    holder.execute("ROLLBACK")
    holder.close()


def test_schema_version_stamped_on_fresh_db(db_path):
    conn = _connect(db_path)
    migrate(conn)
    assert read_schema_version(conn) == STORE_SCHEMA_VERSION
    assert STORE_SCHEMA_VERSION == 2
    conn.close()


def test_schema_version_stamp_existing_zero_db(db_path):
    _stamp(db_path, 0)
    conn = _connect(db_path)
    migrate(conn)
    assert read_schema_version(conn) == STORE_SCHEMA_VERSION
    conn.close()


def test_schema_version_refuses_newer_db(db_path):
    _stamp(db_path, 999)
    conn = _connect(db_path)
    with pytest.raises(SchemaVersionError) as info:
        migrate(conn)
    assert info.value.found == 999
    assert "database schema version 999 is newer than supported version 2" in str(info.value)
    assert read_schema_version(conn) == 999
    conn.close()


def test_migrate_concurrent_fresh_db(db_path):
    errors = []

    def worker():
        conn = _connect(db_path, timeout=10.0)
        try:
            migrate(conn)
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    conn = _connect(db_path)
    assert read_schema_version(conn) == STORE_SCHEMA_VERSION
    conn.close()


def test_migrate_respects_cancellation(db_path, hold_write_lock):
    cancel = threading.Event()
    cancel.set()
    conn = _connect(db_path, timeout=0.1)
    start = time.monotonic()
    with pytest.raises(MigrationCancelled):
        migrate(conn, cancel)
    assert time.monotonic() - start < 5
    conn.close()


def test_migrate_rejects_newer_db_immediately(db_path):
    _stamp(db_path, 999)
    holder = _connect(db_path)
    holder.execute("PRAGMA journal_mode=WAL")
    holder.execute("BEGIN")
    holder.execute("CREATE TABLE IF NOT EXISTS holder_lock (id INTEGER)")
    try:
        conn = _connect(db_path, timeout=0.1)
        start = time.monotonic()
        with pytest.raises(SchemaVersionError):
            migrate(conn)
        assert time.monotonic() - start < 5
        conn.close()
    finally:
        holder.execute("ROLLBACK")
        holder.close()


def test_schema_version_reopen_is_idempotent(db_path):
    first = _connect(db_path)
    migrate(first)
    first.close()

    second = _connect(db_path)
    migrate(second)
    assert read_schema_version(second) == STORE_SCHEMA_VERSION
    second.close()


def test_migrate_resources_composite_key_upgrade(db_path):
    raw = _connect(db_path)
    raw.execute(
        """CREATE TABLE resources (
            id TEXT PRIMARY KEY,
            resource_type TEXT NOT NULL,
            data JSON NOT NULL,
            synced_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )"""
    )
    raw.execute(
        "CREATE VIRTUAL TABLE resources_fts USING fts5("
        "id, resource_type, content, tokenize='porter unicode61')"
    )
    raw.execute(
        "INSERT INTO resources (id, resource_type, data) VALUES "
        """('shared', 'biz', '{"kind":"biz","name":"legacy restaurant"}')"""
    )
    raw.execute(
        "INSERT INTO resources_fts (rowid, id, resource_type, content) VALUES "
        """(1, 'shared', 'biz', '{"kind":"biz","name":"legacy restaurant"}')"""
    )
    raw.execute("PRAGMA user_version = 1")
    raw.close()

    conn = _connect(db_path)
    migrate(conn)
    assert read_schema_version(conn) == STORE_SCHEMA_VERSION
    assert resources_has_composite_key(conn) is True

    conn.execute(
        "INSERT INTO resources (id, resource_type, data) VALUES "
        """('shared', 'bookmark', '{"kind":"bookmark","note":"after upgrade"}')"""
    )
    rows = conn.execute(
        "SELECT resource_type, data FROM resources WHERE id = 'shared' ORDER BY resource_type"
    ).fetchall()
    assert rows == [
        ("biz", '{"kind":"biz","name":"legacy restaurant"}'),
        ("bookmark", '{"kind":"bookmark","note":"after upgrade"}'),
    ]

    matches = conn.execute(
        "SELECT rowid, content FROM resources_fts WHERE resources_fts MATCH 'legacy'"
    ).fetchall()
    assert matches == [(fts_row_id("biz", "shared"), '{"kind":"biz","name":"legacy restaurant"}')]
    conn.close()


@pytest.mark.parametrize(
    "table, wanted",
    [
        ("entry_event", ["entry_id"]),
        ("history", ["entry_id"]),
        ("transfers", ["entry_id"]),
        ("live", ["event_id"]),
        ("standings", ["leagues_classic_id"]),
        ("sync_state", ["last_cursor", "last_synced_at", "total_count"]),
    ],
)
def test_migrate_adds_columns_on_upgrade(db_path, table, wanted):
    raw = _connect(db_path)
    raw.execute(
        f'CREATE TABLE "{table}" (id TEXT PRIMARY KEY, data JSON NOT NULL, '
        "synced_at DATETIME DEFAULT CURRENT_TIMESTAMP)"
    )
    raw.close()

    conn = _connect(db_path)
    migrate(conn)
    columns = _columns(conn, table)
    for column in wanted:
        assert column in columns
    conn.close()


def test_is_sqlite_busy_recognises_lock_messages():
    assert is_sqlite_busy(sqlite3.OperationalError("database is locked")) is True
    assert is_sqlite_busy(sqlite3.OperationalError("database table is locked")) is True
    assert is_sqlite_busy(RuntimeError("SQLITE_BUSY: retry")) is True
    assert is_sqlite_busy(sqlite3.OperationalError("no such table: nope")) is False
    assert is_sqlite_busy(None) is False


def test_retry_on_busy_retries_until_success():
    calls = []

    def op():
        calls.append(1)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return "done"

    assert retry_on_busy(op, time.monotonic() + 10, "testing") == "done"
    assert len(calls) == 3


def test_retry_on_busy_wraps_other_errors_without_retrying():
    calls = []

    def op():
        calls.append(1)
        raise sqlite3.OperationalError("no such table: nope")

    with pytest.raises(MigrationError) as info:
        retry_on_busy(op, time.monotonic() + 10, "reading schema version")
    assert str(info.value).startswith("reading schema version: ")
    assert len(calls) == 1


def test_retry_on_busy_times_out_after_deadline():
    def op():
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(MigrationError) as info:
        retry_on_busy(op, time.monotonic() - 1, "begin migration transaction")
    assert "timed out" in str(info.value)
    assert not isinstance(info.value, MigrationCancelled)


def test_retry_on_busy_honours_cancel():
    cancel = threading.Event()
    cancel.set()

    def op():
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(MigrationCancelled):
        retry_on_busy(op, time.monotonic() + 10, "begin migration transaction", cancel)


def test_ensure_column_and_table_exists(db_path):
    conn = _connect(db_path)
    assert table_exists(conn, "widgets") is False
    ensure_column(conn, "widgets", "extra", "TEXT")
    assert table_exists(conn, "widgets") is False

    conn.execute('CREATE TABLE "widgets" (id TEXT)')
    assert table_exists(conn, "widgets") is True
    ensure_column(conn, "widgets", "extra", "TEXT")
    ensure_column(conn, "widgets", "extra", "TEXT")
    assert _columns(conn, "widgets") == {"id", "extra"}
    conn.close()


def test_rebuild_resources_fts_indexes_every_row(db_path):
    conn = _connect(db_path)
    migrate(conn)
    conn.execute(
        "INSERT INTO resources (id, resource_type, data) VALUES (?, ?, ?)",
        ("shared", "biz", '{"name":"Pinky restaurant"}'),
    )
    conn.execute(
        "INSERT INTO resources (id, resource_type, data) VALUES (?, ?, ?)",
        ("shared", "bookmark", '{"note":"anniversary"}'),
    )
    rebuild_resources_fts(conn)
    rows = conn.execute(
        "SELECT rowid, resource_type FROM resources_fts WHERE resources_fts MATCH 'restaurant'"
    ).fetchall()
    assert rows == [(fts_row_id("biz", "shared"), "biz")]
    total = conn.execute("SELECT COUNT(*) FROM resources_fts").fetchall()[0][0]
    assert total == 2
    conn.close()