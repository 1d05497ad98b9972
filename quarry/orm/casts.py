"""
Quarry ORM Attribute Casting
============================

Conversion between stored column values and in-memory Python values.

Example:
    class User(Model):
        __casts__ = {
            "is_admin": "bool",
            "settings": "json",
            "born_on": "date",
        }
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from quarry.orm.exceptions import MalformedStoredJSON


DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"

_DATETIME_INPUT_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d",
]

_ISO_DATETIME = re.compile(
    r"(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}(?::?\d{2})?)?"
)


class CastKind(Enum):
    """Supported attribute casts."""

    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    BOOLEAN = "boolean"
    JSON = "json"
    DATE = "date"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"

    @classmethod
    def parse(cls, name: Any) -> Optional[CastKind]:
        """Resolve a cast name, or None for unknown casts."""
        if isinstance(name, CastKind):
            return name
        if not isinstance(name, str):
            return None
        return _ALIASES.get(name.lower())


_ALIASES = {
    "int": CastKind.INTEGER,
    "integer": CastKind.INTEGER,
    "real": CastKind.FLOAT,
    "float": CastKind.FLOAT,
    "double": CastKind.FLOAT,
    "string": CastKind.STRING,
    "bool": CastKind.BOOLEAN,
    "boolean": CastKind.BOOLEAN,
    "json": CastKind.JSON,
    "array": CastKind.JSON,
    "collection": CastKind.JSON,
    "date": CastKind.DATE,
    "datetime": CastKind.DATETIME,
    "timestamp": CastKind.TIMESTAMP,
}


def format_datetime(value: datetime) -> str:
    """Format a datetime the way drivers accept it."""
    return value.strftime(DATETIME_FORMAT)


def fresh_timestamp() -> str:
    """Current time, formatted for storage."""
    return format_datetime(datetime.now())


def _normalize_iso(value: str) -> str:
    """
    Pad fractions to microseconds and expand ``+HH`` offsets.

    PostgreSQL prints ``2024-01-02 03:04:05.5+00``, which
    ``datetime.fromisoformat`` rejects before Python 3.11.
    """
    match = _ISO_DATETIME.fullmatch(value.strip())
    if match is None:
        return value

    day, clock, fraction, offset = match.groups()
    result = f"{day} {clock}"
    if fraction:
        result += "." + fraction[:6].ljust(6, "0")
    if offset == "Z":
        result += "+00:00"
    elif offset:
        sign, hours, minutes = offset[0], offset[1:3], offset[3:].lstrip(":") or "00"
        result += f"{sign}{hours}:{minutes}"
    return result


def parse_datetime(value: Any) -> datetime:
    """Convert a stored value to a datetime."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000)
    if isinstance(value, str):
        for fmt in _DATETIME_INPUT_FORMATS:
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue
        try:
            return datetime.fromisoformat(_normalize_iso(value))
        except ValueError:
            pass
    raise ValueError(f"Cannot convert {value!r} to datetime")


def decode_json(value: Any) -> Any:
    """Parse stored JSON text."""
    if isinstance(value, (bytes, bytearray)):
        value = value.decode()
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError as e:
        raise MalformedStoredJSON(value, e) from e


def cast_value(kind: Optional[CastKind], value: Any) -> Any:
    """Convert a raw value to its cast type. None always passes through."""
    if value is None or kind is None:
        return value

    if kind is CastKind.INTEGER:
        try:
            return int(value)
        except ValueError:
            return int(float(value))
    if kind is CastKind.FLOAT:
        return float(value)
    if kind is CastKind.STRING:
        return str(value)
    if kind is CastKind.BOOLEAN:
        if isinstance(value, str):
            return value in ("1", "true")
        return value is True or (not isinstance(value, bool) and value == 1)
    if kind is CastKind.JSON:
        return decode_json(value)
    if kind is CastKind.DATE:
        return parse_datetime(value).date()
    if kind is CastKind.DATETIME:
        return parse_datetime(value)
    if kind is CastKind.TIMESTAMP:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return int(parse_datetime(value).timestamp() * 1000)
    return value


def storage_value(kind: Optional[CastKind], value: Any) -> Any:
    """Inverse of cast_value, applied right before INSERT/UPDATE."""
    if value is None or kind is None:
        return value

    if kind is CastKind.JSON:
        if isinstance(value, str):
            return value
        return json.dumps(value)
    if kind is CastKind.BOOLEAN:
        return 1 if value else 0
    if kind is CastKind.DATE:
        if isinstance(value, (date, datetime)):
            return value.strftime(DATE_FORMAT)
        return value
    if kind is CastKind.DATETIME:
        if isinstance(value, datetime):
            return format_datetime(value)
        return value
    return value
