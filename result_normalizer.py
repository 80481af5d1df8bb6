# result_normalizer.py

import enum
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

log = structlog.get_logger()

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# integer columns holding nanoseconds since epoch
NANOSECOND_TIME_COLUMNS = ("time", "__timestamp")

# engine integer types that always fit a json number
NARROW_INTEGER_TYPES = frozenset(
    {"TINYINT", "SMALLINT", "INTEGER", "UTINYINT", "USMALLINT", "UINTEGER"}
)

# largest integer a json consumer can hold without losing precision
JSON_SAFE_INT = 2**53 - 1


class ValueKind(enum.Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER64 = "integer64"
    FLOAT64 = "float64"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    # engine character buffers, rendered as TEXT
    BUFFER = "buffer"
    # lists and structs, normalized element by element
    NESTED = "nested"


def _is_char_buffer(value: Mapping) -> bool:
    # numeric keyed pseudo array with a ptr marker
    return "ptr" in value and ("0" in value or 0 in value)


def classify(value) -> ValueKind:
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER64
    if isinstance(value, float):
        return ValueKind.FLOAT64
    if isinstance(value, str):
        return ValueKind.TEXT
    if isinstance(value, (datetime, date, time)):
        return ValueKind.TIMESTAMP
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueKind.BUFFER
    if isinstance(value, Mapping):
        return ValueKind.BUFFER if _is_char_buffer(value) else ValueKind.NESTED
    if isinstance(value, (list, tuple)):
        return ValueKind.NESTED
    # Decimal, UUID, timedelta and friends travel as their string form
    return ValueKind.TEXT


def buffer_text(value) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    chars = []
    i = 0
    while True:
        if str(i) in value:
            chars.append(str(value[str(i)]))
        elif i in value:
            chars.append(str(value[i]))
        else:
            break
        i += 1
    return "".join(chars)


def iso_timestamp(value) -> str:
    """ISO-8601 text. Datetimes come out as UTC with millisecond precision."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        else:
            value = value.astimezone(timezone.utc)
        return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return value.isoformat()


def ns_to_iso(ns: int) -> str:
    ms = ns // 1_000_000
    return iso_timestamp(EPOCH + timedelta(milliseconds=ms))


def wire_value(value, wide: Optional[bool] = None):
    """
    JSON safe rendition of one value.

    wide says whether an integer comes from a 64/128 bit column. When it is
    unknown (nested values, rows without column types) only integers beyond
    the json safe range are treated as wide.
    """
    kind = classify(value)

    if kind in (ValueKind.NULL, ValueKind.BOOLEAN, ValueKind.FLOAT64):
        return value
    if kind is ValueKind.INTEGER64:
        if wide is None:
            wide = abs(value) > JSON_SAFE_INT
        return str(value) if wide else value
    if kind is ValueKind.TEXT:
        return value if isinstance(value, str) else str(value)
    if kind is ValueKind.TIMESTAMP:
        return iso_timestamp(value)
    if kind is ValueKind.BUFFER:
        return buffer_text(value)
    if isinstance(value, Mapping):
        return {str(k): wire_value(v) for k, v in value.items()}
    return [wire_value(v) for v in value]


def _is_wide(column: str, column_types: Optional[Dict[str, str]]) -> Optional[bool]:
    if not column_types or column not in column_types:
        return None
    return str(column_types[column]).upper() not in NARROW_INTEGER_TYPES


def normalize_row(row: Mapping[str, Any], column_types: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    out = {}
    for key, value in row.items():
        kind = classify(value)

        if kind is ValueKind.NULL and "count" in key.lower():
            out[key] = 0
            continue

        out[key] = wire_value(value, wide=_is_wide(key, column_types))

        if kind is ValueKind.INTEGER64 and key in NANOSECOND_TIME_COLUMNS:
            out[f"{key}_iso"] = ns_to_iso(value)
        elif kind is ValueKind.TIMESTAMP:
            out[f"{key}_iso"] = iso_timestamp(value)
    return out


def normalize_rows(
    rows: Iterable[Mapping[str, Any]], column_types: Optional[Dict[str, str]] = None
) -> List[Dict[str, Any]]:
    """Normalize every row. A row that fails is passed through unchanged."""
    out = []
    failed = 0
    for row in rows:
        try:
            out.append(normalize_row(row, column_types))
        except Exception as e:
            failed += 1
            log.warning("normalize.row_failed", error=str(e))
            out.append(row)
    if failed:
        log.warning("normalize.partial", failed=failed, total=len(out))
    return out
