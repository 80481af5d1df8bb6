# file_stats.py

from dataclasses import dataclass, field
from typing import List, Optional

import pyarrow as pa
import pyarrow.parquet as pq
import structlog

log = structlog.get_logger()

TIME_COLUMN = "time"

_UNIT_TO_NS = {"s": 1_000_000_000, "ms": 1_000_000, "us": 1_000, "ns": 1}


@dataclass
class RowGroupStats:
    row_group_id: int
    num_rows: int
    byte_length: int
    # nanoseconds since epoch, None when the footer carries no statistics
    time_min: Optional[int] = None
    time_max: Optional[int] = None


@dataclass
class FileStats:
    path: str
    num_rows: int = 0
    columns: List[str] = field(default_factory=list)
    row_groups: List[RowGroupStats] = field(default_factory=list)

    @property
    def time_min(self) -> Optional[int]:
        values = [rg.time_min for rg in self.row_groups if rg.time_min is not None]
        return min(values) if values else None

    @property
    def time_max(self) -> Optional[int]:
        values = [rg.time_max for rg in self.row_groups if rg.time_max is not None]
        return max(values) if values else None


def _to_ns(raw, arrow_type: pa.DataType) -> Optional[int]:
    if raw is None or isinstance(raw, bool) or not isinstance(raw, int):
        return None
    if pa.types.is_timestamp(arrow_type):
        return raw * _UNIT_TO_NS[arrow_type.unit]
    if pa.types.is_integer(arrow_type):
        # plain integer time columns already hold nanoseconds
        return raw
    return None


def _leaf_index(meta, name: str) -> int:
    """Parquet leaf column index of a top level column, -1 when absent."""
    for i in range(meta.num_columns):
        if meta.schema.column(i).path == name:
            return i
    return -1


def read_file_stats(path: str, time_column: str = TIME_COLUMN) -> FileStats:
    """
    Read row counts and time bounds from a parquet footer, no data pages.

    Time bounds come from the column chunk statistics of time_column when it
    is a timestamp or integer column.
    """
    pf = pq.ParquetFile(path)
    schema = pf.schema_arrow
    meta = pf.metadata

    time_idx = schema.get_field_index(time_column)
    time_type = schema.field(time_idx).type if time_idx >= 0 else None
    # nested columns spread over several leaves, so arrow and parquet indices differ
    leaf_idx = _leaf_index(meta, time_column) if time_type is not None else -1

    stats = FileStats(path=path, num_rows=meta.num_rows, columns=list(schema.names))

    for rg in range(meta.num_row_groups):
        rg_meta = meta.row_group(rg)
        entry = RowGroupStats(
            row_group_id=rg,
            num_rows=rg_meta.num_rows,
            byte_length=rg_meta.total_byte_size,
        )

        if leaf_idx >= 0:
            col_meta = rg_meta.column(leaf_idx)
            s = col_meta.statistics
            if s is not None and s.has_min_max:
                entry.time_min = _to_ns(s.min_raw, time_type)
                entry.time_max = _to_ns(s.max_raw, time_type)

        stats.row_groups.append(entry)

    return stats


def collect_file_stats(paths: List[str], time_column: str = TIME_COLUMN) -> List[FileStats]:
    """Footer stats for every readable file. Unreadable files are logged and left out."""
    out = []
    for path in paths:
        try:
            out.append(read_file_stats(path, time_column))
        except (OSError, pa.ArrowException) as e:
            log.warning("stats.unreadable", path=path, error=str(e))
    return out
