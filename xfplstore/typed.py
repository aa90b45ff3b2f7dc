"""Domain tables that mirror selected resource types alongside the generic store."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from xfplstore.fields import lookup_field_value


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat(sep=" ")


@dataclass(frozen=True)
class TypedTable:
    """A per-resource table keyed by id with one indexed parent column."""

    name: str
    parent_column: str

    def upsert(
        self,
        conn: sqlite3.Connection,
        id: str,
        obj: Mapping[str, Any],
        data: str | bytes,
    ) -> None:
        """Insert or update the row for id; raises sqlite3.Error on constraint failures."""
        payload = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        table = self.name
        column = self.parent_column
        conn.execute(
            f'INSERT INTO "{table}" ("id", "{column}", "data", "synced_at") '
            "VALUES (?, ?, ?, ?) "
            f'ON CONFLICT("id") DO UPDATE SET "{column}" = excluded."{column}", '
            '"data" = excluded."data", "synced_at" = excluded."synced_at"',
            (id, lookup_field_value(obj, column), payload, _timestamp()),
        )


_TABLES: dict[str, TypedTable] = {
    table.name: table
    for table in (
        TypedTable("entry_event", "entry_id"),
        TypedTable("history", "entry_id"),
        TypedTable("transfers", "entry_id"),
        TypedTable("live", "event_id"),
        TypedTable("standings", "leagues_classic_id"),
    )
}


def get_typed_table(resource_type: str) -> TypedTable | None:
    """Return the domain table for resource_type, or None if it has none."""
    return _TABLES.get(resource_type)


def typed_resource_types() -> tuple[str, ...]:
    """Resource types that have a domain table, in declaration order."""
    return tuple(_TABLES)