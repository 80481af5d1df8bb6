import json
from pathlib import Path
from typing import Dict, List

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from query_config import Settings
from query_engine import StorageEngine
from time_predicate import parse_time_literal


def ns(text: str) -> int:
    return parse_time_literal(text)


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture()
def write_points():
    """Write a small cpu style parquet file: time (timestamp[ns]), host, value."""

    def _write(path: Path, times: List[str], host: str = "a") -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        table = pa.table(
            {
                "time": pa.array([ns(t) for t in times], type=pa.timestamp("ns")),
                "host": pa.array([host] * len(times)),
                "value": pa.array([float(i) for i in range(len(times))], type=pa.float64()),
            }
        )
        pq.write_table(table, str(path))
        return str(path)

    return _write


@pytest.fixture()
def write_manifest():
    def _write(directory: Path, entries: List[dict], min_time: int, max_time: int) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / "metadata.json"
        path.write_text(json.dumps({"min_time": min_time, "max_time": max_time, "files": entries}))
        return path

    return _write


@pytest.fixture()
def make_partition(data_dir, write_points, write_manifest):
    """
    Build one date=/hour= partition with a manifest.

    files maps file name -> list of ISO timestamps.
    """

    def _make(
        day: str,
        hour: int,
        files: Dict[str, List[str]],
        db: str = "mydb",
        measurement: str = "cpu",
    ) -> Path:
        hour_dir = data_dir / db / measurement / f"date={day}" / f"hour={hour}"
        entries = []
        for name, times in files.items():
            path = write_points(hour_dir / name, times)
            entries.append({"path": path, "min_time": ns(min(times)), "max_time": ns(max(times))})
        write_manifest(
            hour_dir,
            entries,
            min(e["min_time"] for e in entries),
            max(e["max_time"] for e in entries),
        )
        return hour_dir

    return _make


@pytest.fixture()
def hive_tree(make_partition, data_dir) -> Path:
    """
    mydb/cpu over three days:

        2025-04-09 hour=23  a.parquet  23:10 23:50
        2025-04-10 hour=13  b.parquet  13:15
        2025-04-10 hour=14  c.parquet  14:05 14:20
                            d.parquet  14:40 14:55
        2025-04-10 hour=15  e.parquet  15:30
        2025-04-11 hour=0   f.parquet  00:30
    """
    make_partition("2025-04-09", 23, {"a.parquet": ["2025-04-09T23:10:00Z", "2025-04-09T23:50:00Z"]})
    make_partition("2025-04-10", 13, {"b.parquet": ["2025-04-10T13:15:00Z"]})
    make_partition(
        "2025-04-10",
        14,
        {
            "c.parquet": ["2025-04-10T14:05:00Z", "2025-04-10T14:20:00Z"],
            "d.parquet": ["2025-04-10T14:40:00Z", "2025-04-10T14:55:00Z"],
        },
    )
    make_partition("2025-04-10", 15, {"e.parquet": ["2025-04-10T15:30:00Z"]})
    make_partition("2025-04-11", 0, {"f.parquet": ["2025-04-11T00:30:00Z"]})
    return data_dir


@pytest.fixture()
def engine(data_dir):
    settings = Settings(data_dir=str(data_dir), resolve_workers=1)
    eng = StorageEngine(str(data_dir), settings=settings)
    yield eng
    eng.close()
