import os
from datetime import date

from partition_resolver import PartitionResolver, keep_hour
from time_predicate import ns_to_datetime, parse_time_literal as ns


def _names(result):
    return [os.path.basename(p) for p in result.files]


def test_overlap_prunes_partitions_and_files(hive_tree):
    resolver = PartitionResolver(str(hive_tree), max_workers=1)

    # hour=15 is kept by the hour filter but its manifest starts at 15:30
    result = resolver.resolve("mydb", "cpu", ns("2025-04-10T14:00:00Z"), ns("2025-04-10T15:00:00Z"))
    assert _names(result) == ["c.parquet", "d.parquet"]
    assert result.skipped == []

    # c.parquet ends at 14:20
    result = resolver.resolve("mydb", "cpu", ns("2025-04-10T14:30:00Z"), ns("2025-04-10T14:45:00Z"))
    assert _names(result) == ["d.parquet"]


def test_touching_intervals_overlap(hive_tree):
    resolver = PartitionResolver(str(hive_tree), max_workers=1)
    t = ns("2025-04-10T14:20:00Z")
    result = resolver.resolve("mydb", "cpu", t, t)
    assert _names(result) == ["c.parquet"]


def test_multi_day_range_in_date_hour_order(hive_tree):
    resolver = PartitionResolver(str(hive_tree), max_workers=4)
    result = resolver.resolve("mydb", "cpu", ns("2025-04-09T22:00:00Z"), ns("2025-04-11T09:00:00Z"))
    assert _names(result) == ["a.parquet", "b.parquet", "c.parquet", "d.parquet", "e.parquet", "f.parquet"]


def test_boundary_day_hour_filter():
    start = ns_to_datetime(ns("2025-04-10T14:00:00Z"))
    end = ns_to_datetime(ns("2025-04-12T09:00:00Z"))

    first = date(2025, 4, 10)
    assert [h for h in range(24) if keep_hour(first, h, start, end)] == list(range(14, 24))

    last = date(2025, 4, 12)
    assert [h for h in range(24) if keep_hour(last, h, start, end)] == list(range(0, 10))

    middle = date(2025, 4, 11)
    assert [h for h in range(24) if keep_hour(middle, h, start, end)] == list(range(24))


def test_single_day_hour_filter():
    start = ns_to_datetime(ns("2025-04-10T14:00:00Z"))
    end = ns_to_datetime(ns("2025-04-10T16:59:00Z"))
    day = date(2025, 4, 10)
    assert [h for h in range(24) if keep_hour(day, h, start, end)] == [14, 15, 16]


def test_relocated_and_relative_paths(data_dir, write_points, write_manifest):
    hour_dir = data_dir / "mydb" / "cpu" / "date=2025-04-10" / "hour=14"
    write_points(hour_dir / "moved.parquet", ["2025-04-10T14:05:00Z"])
    write_points(hour_dir / "rel.parquet", ["2025-04-10T14:10:00Z"])
    t0, t1 = ns("2025-04-10T14:00:00Z"), ns("2025-04-10T14:59:00Z")
    write_manifest(
        hour_dir,
        [
            {"path": "/old/storage/root/mydb/cpu/moved.parquet", "min_time": t0, "max_time": t1},
            {"path": "rel.parquet", "min_time": t0, "max_time": t1},
        ],
        t0,
        t1,
    )

    result = PartitionResolver(str(data_dir)).resolve("mydb", "cpu", t0, t1)
    assert result.files == [str(hour_dir / "moved.parquet"), str(hour_dir / "rel.parquet")]


def test_missing_file_is_a_soft_error(data_dir, write_manifest):
    hour_dir = data_dir / "mydb" / "cpu" / "date=2025-04-10" / "hour=14"
    t0, t1 = ns("2025-04-10T14:00:00Z"), ns("2025-04-10T14:59:00Z")
    write_manifest(hour_dir, [{"path": "/nowhere/gone.parquet", "min_time": t0, "max_time": t1}], t0, t1)

    result = PartitionResolver(str(data_dir)).resolve("mydb", "cpu", t0, t1)
    assert result.files == []
    assert [s.reason for s in result.skipped] == ["missing_file"]


def test_unreadable_manifest_does_not_fail_the_walk(hive_tree):
    broken = hive_tree / "mydb" / "cpu" / "date=2025-04-10" / "hour=13" / "metadata.json"
    broken.write_text("{not json")

    resolver = PartitionResolver(str(hive_tree), max_workers=1)
    result = resolver.resolve("mydb", "cpu", ns("2025-04-10T13:00:00Z"), ns("2025-04-10T14:30:00Z"))
    assert _names(result) == ["c.parquet"]
    assert len(result.skipped) == 1
    assert result.skipped[0].reason == "manifest_unreadable"
    assert result.skipped[0].path.endswith("hour=13")


def test_bad_manifest_entries_are_counted(data_dir, write_points, write_manifest):
    hour_dir = data_dir / "mydb" / "cpu" / "date=2025-04-10" / "hour=14"
    good = write_points(hour_dir / "good.parquet", ["2025-04-10T14:05:00Z"])
    t0, t1 = ns("2025-04-10T14:00:00Z"), ns("2025-04-10T14:59:00Z")
    write_manifest(
        hour_dir,
        [
            {"path": good},
            {"min_time": t0, "max_time": t1},
            {"path": "x.parquet", "min_time": "not a number", "max_time": t1},
        ],
        t0,
        t1,
    )

    result = PartitionResolver(str(data_dir)).resolve("mydb", "cpu", t0, t1)
    # the entry without bounds inherits the partition interval
    assert result.files == [good]
    assert [s.reason for s in result.skipped] == ["bad_manifest_entry"]


def test_unknown_measurement_is_empty(hive_tree):
    result = PartitionResolver(str(hive_tree)).resolve("mydb", "nope", 0, ns("2030-01-01T00:00:00Z"))
    assert result.files == []
    assert result.skipped == []


def test_non_partition_directories_are_ignored(hive_tree):
    (hive_tree / "mydb" / "cpu" / "scratch").mkdir()
    (hive_tree / "mydb" / "cpu" / "date=2025-04-10" / "notes").mkdir()
    resolver = PartitionResolver(str(hive_tree), max_workers=1)
    result = resolver.resolve("mydb", "cpu", ns("2025-04-10T14:00:00Z"), ns("2025-04-10T15:00:00Z"))
    assert _names(result) == ["c.parquet", "d.parquet"]


def test_partition_interval_prunes_before_file_intervals(data_dir, write_points, write_manifest):
    hour_dir = data_dir / "mydb" / "cpu" / "date=2025-04-10" / "hour=14"
    path = write_points(hour_dir / "early.parquet", ["2025-04-10T14:05:00Z"])
    # the file claims 14:00-14:10 but the partition says 14:50-14:55
    write_manifest(
        hour_dir,
        [{"path": path, "min_time": ns("2025-04-10T14:00:00Z"), "max_time": ns("2025-04-10T14:10:00Z")}],
        ns("2025-04-10T14:50:00Z"),
        ns("2025-04-10T14:55:00Z"),
    )
    resolver = PartitionResolver(str(data_dir), max_workers=1)

    result = resolver.resolve("mydb", "cpu", ns("2025-04-10T14:00:00Z"), ns("2025-04-10T14:20:00Z"))
    assert result.files == []
    assert result.skipped == []

    # both intervals overlap once the range reaches the partition
    result = resolver.resolve("mydb", "cpu", ns("2025-04-10T14:00:00Z"), ns("2025-04-10T14:50:00Z"))
    assert result.files == [path]
