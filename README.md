# xfplstore

A local SQLite store for JSON resources synced from a fantasy football API.
Every record goes into a generic `resources` table. The records are indexed
with SQLite FTS5 for full-text search. A few resource types also go into
typed tables of their own: `entry_event`, `history`, `transfers`, `live` and
`standings`. The store also keeps a sync cursor for each resource type.

The package uses only the standard library. Full-text search needs an
SQLite build that includes FTS5, and the usual CPython builds do.

## Installing

```
pip install .
```

## Opening a store

```python
from xfplstore.store import open_store, open_read_only

with open_store("/tmp/xfpl/data.db") as store:
    print(store.schema_version())   # 2 on a fresh database
    print(store.path)               # "/tmp/xfpl/data.db"
```

`open_store(db_path, cancel=None)` creates the parent directory if it is
missing and switches the database to WAL mode. It then runs the schema
migrations in one `BEGIN IMMEDIATE` transaction and stamps the schema
version. When several processes open the same new file at once, the
migrations run one after another. If the database lock stays busy, the
store retries for up to 30 seconds. To stop that wait early, set the
`threading.Event` passed as `cancel`, which raises
`xfplstore.schema.MigrationCancelled`.

A database stamped with a newer version than this package understands is
refused with `xfplstore.schema.SchemaVersionError`. Other migration failures
raise `xfplstore.schema.MigrationError`. Older databases are upgraded in
place: missing columns are added, and `resources` is rekeyed on
`(resource_type, id)` with its search index rebuilt.

`open_read_only(db_path)` opens an existing file in read-only mode and runs
no migrations. Every write through that store fails with `sqlite3.Error`.

A `Store` is a context manager and closes its connection on exit. It holds a
single connection guarded by a lock, so it can be shared between threads.

## Storing and reading records

```python
store.upsert("biz", "shared", b'{"kind":"biz","name":"Pinky restaurant"}')
store.get("biz", "shared")          # '{"kind":"biz","name":"Pinky restaurant"}'
store.list("biz")                   # newest first; limit <= 0 means 200
store.search("restaurant", 10)      # FTS5 match ordered by rank; limit <= 0 means 50
store.count("biz")                  # 1
store.status()                      # {"biz": 1, ...} ordered by type
```

Payloads can be `str` or `bytes`, and they come back as `str`. `get` raises
`xfplstore.store.NotFoundError`, a `LookupError`, when the record is not
stored. The primary key is `(resource_type, id)`, so one id can be used
under several resource types without clashing.

### Batches and typed tables

```python
stored, extract_failures = store.upsert_batch("history", [
    b'{"id": "1", "entry_id": "42"}',
    b'{"id": "2", "entry_id": "42"}',
])
```

A batch is written in a single transaction. Each item's id comes from the
first of these fields that is present and not empty: `id`, `ID`, `gid`,
`sid`, `uid`, `uuid`, `guid`, `name`, `slug`, `key` and `code`. Field names
are also tried in camelCase and PascalCase. You can name a field to try
first for a resource type in
`xfplstore.fields.RESOURCE_ID_FIELD_OVERRIDES`. An item with no id is
skipped and counted in `extract_failures`. An item that is not a JSON
object is skipped and not counted.

For typed resource types, each item also goes into the typed table, inside
a savepoint of its own. The insert can fail, for example when the parent
column (`entry_id`, `event_id` or `leagues_classic_id`) is missing. Only the
typed row is then rolled back, and the generic row stays. A warning is
printed to stderr when that happens. A warning is also printed when more
than half of a batch is skipped.

To write a single typed record, use `upsert_entry_event`, `upsert_history`,
`upsert_transfers`, `upsert_live`, `upsert_standings` or
`upsert_typed(resource_type, data)`. These take the id from `id`, `Id`,
`ID`, `uuid`, `slug` or `name`. They raise `ValueError` when the data is not
a JSON object, when it has no id, or when the resource type has no typed
table. A constraint failure raises `sqlite3.Error`, and then nothing is
written. `xfplstore.typed.typed_resource_types()` lists the typed resource
types.

### Sync state

```python
store.save_sync_state("history", "cursor-1", 25)
cursor, last_synced, count = store.get_sync_state("history")  # last_synced is a datetime
store.save_sync_cursor("history", "cursor-2")                 # keeps the stored count
store.get_sync_cursor("history")                              # "cursor-2"
store.get_last_synced_at("history")                           # timestamp text as stored
store.clear_sync_cursors()
```

For a resource type that has never been synced, `get_sync_state` returns
`("", None, 0)` and the two getters return `""`.

### Lookups

```python
store.list_ids("history")                  # ids from the typed table, or from resources
store.list_field("history", "entry_id")    # distinct non-empty values of a field
store.resolve_by_name("players", "Salah", "name", "web_name")
```

`list_field` raises `ValueError` when the field name is not a plain
identifier. `resolve_by_name` compares the given JSON fields with the value,
ignoring case, and returns the single matching id. A UUID input is returned
unchanged. If nothing matches it raises
`xfplstore.queries.NameNotFoundError`, and if several records match it
raises `xfplstore.queries.AmbiguousNameError`.

For ad-hoc SQL, `store.query(sql, *args)` runs the statement and returns all
the rows as a list of tuples. The `store.connection` property gives the
underlying `sqlite3.Connection`. Do not close that connection yourself.

## What the package does not do

This package is only the storage layer. It does not fetch anything from the
API, it has no command-line program, and it does not decide when to sync. A
caller must download the records and pass them to the store.

## Running the tests

```
pip install .[test]
pytest
```