"""Field lookup, identifier extraction and row-id helpers for stored JSON objects."""

from __future__ import annotations

import json
import math
import re
from decimal import Decimal
from typing import Any, Mapping

_UUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)

IDENTIFIER_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"
_IDENTIFIER_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

# Per-resource primary-key field names; consulted before the generic list.
RESOURCE_ID_FIELD_OVERRIDES: dict[str, str] = {}

# Vendor identifier names come before display fields such as "name".
GENERIC_ID_FIELD_FALLBACKS: tuple[str, ...] = (
    "id", "ID", "gid", "sid", "uid", "uuid", "guid", "name", "slug", "key", "code",
)

OBJECT_ID_KEYS: tuple[str, ...] = ("id", "Id", "ID", "uuid", "slug", "name")

_MASK64 = (1 << 64) - 1
_MASK63 = (1 << 63) - 1


def is_uuid(value: str) -> bool:
    """Return True if value has the canonical 8-4-4-4-12 hex UUID shape."""
    return _UUID_RE.fullmatch(value) is not None


def is_valid_identifier(name: str) -> bool:
    """Return True if name is safe to splice into SQL as an identifier."""
    return _IDENTIFIER_RE.fullmatch(name) is not None


def fts_row_id(scope: str, id: str) -> int:
    """Derive a deterministic, non-negative 63-bit row id from a scope and an id."""
    h = 0
    for ch in scope:
        h = (h * 31 + ord(ch)) & _MASK64
    h = (h * 31) & _MASK64
    for ch in id:
        h = (h * 31 + ord(ch)) & _MASK64
    return h & _MASK63


def _to_json(value: Any) -> str:
    text = json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    for raw, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(raw, escaped)
    return text


def sqlite_field_value(value: Any) -> Any:
    """Pass scalars through unchanged; encode anything else as compact JSON text."""
    if value is None or isinstance(value, (str, bool, int, float, bytes)):
        return value
    try:
        return _to_json(value)
    except (TypeError, ValueError):
        return str(value)


def _format_float(number: float) -> str:
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "+Inf" if number > 0 else "-Inf"
    if number == 0:
        return "-0" if math.copysign(1.0, number) < 0 else "0"

    sign, digit_tuple, exponent = Decimal(repr(number)).as_tuple()
    digits = list(digit_tuple)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    text = "".join(str(d) for d in digits)
    count = len(text)
    point = count + exponent
    exp = point - 1
    prefix = "-" if sign else ""

    if exp < -4 or exp >= 6:
        mantissa = text[0] + ("." + text[1:] if count > 1 else "")
        return f"{prefix}{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp):02d}"
    if point <= 0:
        return f"{prefix}0.{'0' * -point}{text}"
    if point >= count:
        return f"{prefix}{text}{'0' * (point - count)}"
    return f"{prefix}{text[:point]}.{text[point:]}"


def _format_value(value: Any) -> str:
    """Render a decoded JSON value the way identifiers are written to the store."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, (bytes, bytearray)):
        return "[" + " ".join(str(b) for b in value) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(v) for v in value) + "]"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{k}:{_format_value(v)}" for k, v in items) + "]"
    return str(value)


def lookup_field_value(obj: Mapping[str, Any], snake_key: str) -> Any:
    """Find a field by its snake_case, camelCase or PascalCase key.

    Returns the value as :func:`sqlite_field_value` renders it, or None when
    no rendering of the key is present.
    """
    if snake_key in obj:
        return sqlite_field_value(obj[snake_key])

    parts = snake_key.split("_")
    parts[1:] = [p[:1].upper() + p[1:] if p else p for p in parts[1:]]
    camel = "".join(parts)
    if camel in obj:
        return sqlite_field_value(obj[camel])

    head = parts[0]
    if head:
        pascal = head[:1].upper() + head[1:] + "".join(parts[1:])
        if pascal in obj:
            return sqlite_field_value(obj[pascal])
    return None


def extract_object_id(obj: Mapping[str, Any]) -> str | None:
    """Return the first present id-like key's value as text, or None if none is present."""
    for key in OBJECT_ID_KEYS:
        if key in obj:
            return _format_value(obj[key])
    return None


def resolve_item_id(obj: Mapping[str, Any], resource_type: str) -> str | None:
    """Resolve a batch item's primary key.

    A per-resource override field is tried first, then the generic fallback
    list. Empty values are skipped. Returns None when nothing resolves.
    """
    candidates: list[str] = []
    override = RESOURCE_ID_FIELD_OVERRIDES.get(resource_type)
    if override:
        candidates.append(override)
    candidates.extend(GENERIC_ID_FIELD_FALLBACKS)

    for key in candidates:
        value = lookup_field_value(obj, key)
        if value is None:
            continue
        text = _format_value(value)
        if text and text != "<nil>":
            return text
    return None