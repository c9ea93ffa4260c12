"""Value encoding rules shared by every dialect.

Declared types are grouped into type classes; each class has one text
encoding that all generators render in their own syntax, so the stored
change records are identical whatever database produced them.

The pure-Python functions here state the same rules as the SQL the
generators emit, which the SQLite tests evaluate against them. In-process
callers use them to build the stored form of a value or key, e.g. the
history command joins a composite key with :func:`join_key`.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, time
from typing import Any, Iterable

from changetrail.models.schema import normalize_type

# Stored values longer than this are truncated
MAX_VALUE_LENGTH = 5000
TRUNCATED_LENGTH = 4997
ELLIPSIS = "..."

KEY_SEPARATOR = "||"
COMPOSITE_KEY_SEPARATOR = " "
IDENTIFIER_SEPARATOR = ", "


class TypeClass(str, enum.Enum):
    BOOLEAN = "boolean"
    TEMPORAL = "temporal"
    TEXT = "text"
    NUMERIC = "numeric"
    RELATIONSHIP = "relationship"
    OTHER = "other"


_TYPE_CLASSES: dict[str, TypeClass] = {
    "Boolean": TypeClass.BOOLEAN,
    "Date": TypeClass.TEMPORAL,
    "Time": TypeClass.TEMPORAL,
    "DateTime": TypeClass.TEMPORAL,
    "Timestamp": TypeClass.TEMPORAL,
    "String": TypeClass.TEXT,
    "LargeString": TypeClass.TEXT,
    "Integer": TypeClass.NUMERIC,
    "Int16": TypeClass.NUMERIC,
    "Int32": TypeClass.NUMERIC,
    "Int64": TypeClass.NUMERIC,
    "UInt8": TypeClass.NUMERIC,
    "Decimal": TypeClass.NUMERIC,
    "Double": TypeClass.NUMERIC,
    "Association": TypeClass.RELATIONSHIP,
    "Composition": TypeClass.RELATIONSHIP,
}


def classify(type_name: str) -> TypeClass:
    """Map a declared type (with or without the ``cds.`` prefix) to its class."""
    return _TYPE_CLASSES.get(normalize_type(type_name), TypeClass.OTHER)


def truncate_text(value: str | None) -> str | None:
    """Truncate to 4997 characters plus an ellipsis when longer than 5000.

    A value of exactly 5000 characters is kept unchanged; anything longer
    comes back exactly 5000 characters long.
    """
    if value is None or len(value) <= MAX_VALUE_LENGTH:
        return value
    return value[:TRUNCATED_LENGTH] + ELLIPSIS


def encode_value(value: Any, type_class: TypeClass) -> str | None:
    """Encode a Python value the way the generated triggers store it."""
    if value is None:
        return None
    if type_class is TypeClass.BOOLEAN:
        if isinstance(value, str):
            return "true" if value in ("1", "true", "TRUE") else "false"
        return "true" if value else "false"
    if type_class is TypeClass.TEMPORAL and isinstance(value, (datetime, date, time)):
        return value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
    if type_class is TypeClass.TEXT:
        return truncate_text(str(value))
    return str(value)


def is_changed(old: Any, new: Any) -> bool:
    """The null-safe change predicate.

    ``(old <> new OR old IS NULL OR new IS NULL) AND NOT (old IS NULL AND new IS NULL)``
    """
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    return old != new


def join_key(values: Iterable[Any], separator: str = KEY_SEPARATOR) -> str:
    """Join key values as text; used for entity and root keys."""
    return separator.join("" if v is None else str(v) for v in values)


def join_identifier(fragments: Iterable[Any]) -> str | None:
    """Join identifier fragments with ``", "``, skipping empty ones.

    Returns None when every fragment is empty so callers can fall back to
    the entity key.
    """
    parts = [str(f) for f in fragments if f is not None and str(f) != ""]
    return IDENTIFIER_SEPARATOR.join(parts) if parts else None
