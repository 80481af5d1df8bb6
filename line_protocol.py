# line_protocol.py

"""
Line protocol points, the ingestion side of the storage layout.

Format:
    measurement[,tag=value...] field=value[,field=value...] [timestamp]

Only decoding and partition planning live here. Writing the parquet files
and updating each partition's metadata.json is left to a writer component,
which must group points per measurement and per date=/hour= partition (UTC)
the way plan_partitions does.
"""

import os
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog

from time_predicate import ns_to_datetime

log = structlog.get_logger()

_TRUE = {"t", "true"}
_FALSE = {"f", "false"}


class LineProtocolError(ValueError):
    pass


@dataclass(frozen=True)
class Point:
    measurement: str
    tags: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0

    def partition(self) -> Tuple[str, str]:
        """(date=YYYY-MM-DD, hour=H) directory names covering this point."""
        dt = ns_to_datetime(self.timestamp)
        return f"date={dt.date().isoformat()}", f"hour={dt.hour}"


def _split_unquoted(text: str, sep: str) -> List[str]:
    """Split on sep outside double quotes, backslash escapes are kept as is."""
    parts = []
    buf = []
    quoted = False
    escaped = False
    for ch in text:
        if escaped:
            buf.append(ch)
            escaped = False
        elif ch == "\\":
            buf.append(ch)
            escaped = True
        elif ch == '"':
            buf.append(ch)
            quoted = not quoted
        elif ch == sep and not quoted:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return parts


def decode_field(raw: str):
    """Integer (i suffix), boolean, quoted string, otherwise float."""
    if len(raw) > 1 and raw.endswith("i"):
        try:
            return int(raw[:-1])
        except ValueError:
            pass
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    try:
        return float(raw)
    except ValueError:
        raise LineProtocolError(f"Invalid field value: {raw}") from None


def parse_line(line: str, now_ns: Optional[int] = None) -> Point:
    parts = [p for p in _split_unquoted(line.strip(), " ") if p]
    if len(parts) < 2:
        raise LineProtocolError(f"Invalid line protocol: {line}")

    head = _split_unquoted(parts[0], ",")
    measurement = head[0]
    if not measurement:
        raise LineProtocolError(f"Missing measurement: {line}")

    tags = {}
    for pair in head[1:]:
        key, sep, value = pair.partition("=")
        if sep and key:
            tags[key] = value

    fields = {}
    for pair in _split_unquoted(parts[1], ","):
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise LineProtocolError(f"Invalid field: {pair}")
        fields[key] = decode_field(value)

    if len(parts) > 2:
        try:
            timestamp = int(parts[2])
        except ValueError:
            raise LineProtocolError(f"Invalid timestamp: {parts[2]}") from None
    else:
        timestamp = now_ns if now_ns is not None else time.time_ns()

    return Point(measurement=measurement, tags=tags, fields=fields, timestamp=timestamp)


def parse(data: str, now_ns: Optional[int] = None) -> List[Point]:
    """Parse many lines. Blank lines and # comments are skipped, bad lines are logged and dropped."""
    points = []
    for line in data.strip().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        try:
            points.append(parse_line(stripped, now_ns=now_ns))
        except LineProtocolError as e:
            log.warning("line_protocol.bad_line", line=stripped, error=str(e))
    return points


def _format_field(value) -> str:
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, bool):
        return "t" if value else "f"
    if isinstance(value, int):
        return f"{value}i"
    return repr(float(value))


def format_point(
    measurement: str,
    tags: Optional[Dict[str, str]],
    fields: Dict[str, Any],
    timestamp: Optional[int] = None,
) -> str:
    line = measurement
    if tags:
        line += "," + ",".join(f"{k}={v}" for k, v in tags.items())
    line += " " + ",".join(f"{k}={_format_field(v)}" for k, v in fields.items())
    if timestamp is not None:
        line += f" {timestamp}"
    return line


def plan_partitions(points: List[Point]) -> Dict[Tuple[str, str, str], List[Point]]:
    """Group points by (measurement, date=..., hour=...)."""
    plan = defaultdict(list)
    for point in points:
        date_dir, hour_dir = point.partition()
        plan[(point.measurement, date_dir, hour_dir)].append(point)
    return dict(plan)


def partition_path(data_dir: str, database: str, point: Point) -> str:
    date_dir, hour_dir = point.partition()
    return os.path.join(data_dir, database, point.measurement, date_dir, hour_dir)
