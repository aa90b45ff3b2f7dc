"""Read queries that resolve identifiers and field values from stored resources."""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from xfplstore.fields import IDENTIFIER_PATTERN, is_uuid, is_valid_identifier


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


class NameNotFoundError(LookupError):
    """Raised when no stored resource matches a human-readable name."""

    def __init__(self, resource_type: str, value: str) -> None:
        super().__init__(
            f"{resource_type} {_quote(value)} not found in local store. "
            "Run 'sync' first, or use the UUID directly"
        )
        self.resource_type = resource_type
        self.value = value


class AmbiguousNameError(LookupError):
    """Raised when a human-readable name matches more than one resource."""

    def __init__(self, resource_type: str, value: str, matches: list[str]) -> None:
        if len(matches) > 5:
            hint = ", ".join(matches[:5]) + "..."
        else:
            hint = ", ".join(matches)
        super().__init__(
            f"ambiguous: {_quote(value)} matches {len(matches)} {resource_type} "
            f"entries ({hint}). Use the exact UUID instead"
        )
        self.resource_type = resource_type
        self.value = value
        self.matches = list(matches)


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _resolve_table(conn: sqlite3.Connection, resource_type: str) -> str | None:
    try:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (resource_type,),
        ).fetchall()
    except sqlite3.Error:
        return None
    return rows[0][0] if rows and rows[0][0] else None


def list_ids(conn: sqlite3.Connection, resource_type: str) -> list[str]:
    """Return ids from the resource's own table, else from the generic resources table."""
    rows = None
    table = _resolve_table(conn, resource_type)
    if table:
        try:
            rows = conn.execute(f"SELECT id FROM {_quote_identifier(table)}").fetchall()
        except sqlite3.Error:
            rows = None
    if rows is None:
        rows = conn.execute(
            "SELECT id FROM resources WHERE resource_type = ?", (resource_type,)
        ).fetchall()
    return [_as_text(row[0]) for row in rows if row[0] is not None]


def list_field(conn: sqlite3.Connection, resource_type: str, field: str) -> list[str]:
    """Return the distinct non-empty values of field for a resource type.

    A matching column on the resource's own table is used when present;
    otherwise the value is extracted from the stored JSON. Raises ValueError
    if field is not a plain identifier.
    """
    if not is_valid_identifier(field):
        raise ValueError(
            f"ListField: invalid field name {_quote(field)} (must match {IDENTIFIER_PATTERN})"
        )

    rows = None
    table = _resolve_table(conn, resource_type)
    if table:
        try:
            found = conn.execute(
                "SELECT name FROM pragma_table_info(?) WHERE name=?", (table, field)
            ).fetchall()
            if found and found[0][0]:
                column = _quote_identifier(found[0][0])
                rows = conn.execute(
                    f"SELECT DISTINCT {column} FROM {_quote_identifier(table)} "
                    f"WHERE {column} IS NOT NULL AND {column} != ''"
                ).fetchall()
        except sqlite3.Error:
            rows = None

    if rows is None:
        rows = conn.execute(
            f"SELECT DISTINCT json_extract(data, '$.{field}') FROM resources "
            f"WHERE resource_type = ? AND json_extract(data, '$.{field}') IS NOT NULL",
            (resource_type,),
        ).fetchall()

    values = []
    for (value,) in rows:
        if value is None:
            continue
        text = _as_text(value)
        if text:
            values.append(text)
    return values


def resolve_by_name(conn: sqlite3.Connection, resource_type: str, value: str, *args: str) -> str:
    """Resolve a human-readable name to a stored resource id.

    args are the JSON field names compared case-insensitively with value;
    names that are not plain identifiers are skipped. A UUID is returned
    unchanged. Raises NameNotFoundError or AmbiguousNameError.
    """
    if is_uuid(value):
        return value

    matches: list[str] = []
    for field in args:
        if not is_valid_identifier(field):
            continue
        try:
            rows = conn.execute(
                "SELECT id FROM resources WHERE resource_type = ? "
                f"AND LOWER(json_extract(data, '$.{field}')) = LOWER(?)",
                (resource_type, value),
            ).fetchall()
        except sqlite3.Error:
            continue
        for (id,) in rows:
            if id is None:
                continue
            text = _as_text(id)
            if text not in matches:
                matches.append(text)

    if not matches:
        raise NameNotFoundError(resource_type, value)
    if len(matches) > 1:
        raise AmbiguousNameError(resource_type, value, matches)
    return matches[0]