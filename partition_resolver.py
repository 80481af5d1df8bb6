# partition_resolver.py

import os
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import List, Optional, Tuple

import structlog

from manifest import ManifestError, ResolveResult, collect_manifest_files, overlaps, read_manifest
from query_errors import Deadline
from time_predicate import ns_to_datetime

log = structlog.get_logger()

_DATE_DIR_RE = re.compile(r"^date=(\d{4}-\d{2}-\d{2})$")
_HOUR_DIR_RE = re.compile(r"^hour=(\d{1,2})$")


def measurement_path(data_dir: str, database: str, measurement: str) -> str:
    return os.path.join(data_dir, database, measurement)


def keep_hour(day: date, hour: int, start_dt: datetime, end_dt: datetime) -> bool:
    """Hour filter, applied only on the start and end calendar days."""
    on_start = day == start_dt.date()
    on_end = day == end_dt.date()
    if on_start and on_end:
        return start_dt.hour <= hour <= end_dt.hour
    if on_start:
        return hour >= start_dt.hour
    if on_end:
        return hour <= end_dt.hour
    return True


def _subdirectories(path: str) -> List[str]:
    with os.scandir(path) as it:
        return [entry.name for entry in it if entry.is_dir()]


class PartitionResolver:
    """
    Resolves files through the date=YYYY-MM-DD/hour=H directory layout.

    Steps:
      - keep date directories between the start and end calendar days (UTC)
      - on boundary days keep only hours inside the interval
      - read each hour manifest, prune the partition on its interval,
        then prune its files on their own intervals

    Hour partitions are read on a small thread pool. Result order follows
    date then hour.
    """

    def __init__(self, data_dir: str, max_workers: int = 4):
        self.data_dir = data_dir
        self.max_workers = max(1, int(max_workers))

    def date_directories(
        self, base: str, start_dt: datetime, end_dt: datetime, result: ResolveResult
    ) -> List[Tuple[date, str]]:
        try:
            names = _subdirectories(base)
        except FileNotFoundError:
            log.debug("resolve.measurement_missing", path=base)
            return []
        except OSError as e:
            result.skip(base, "directory_unreadable", str(e))
            return []

        start_day = start_dt.date()
        end_day = end_dt.date()

        out = []
        for name in names:
            m = _DATE_DIR_RE.match(name)
            if m is None:
                continue
            try:
                day = date.fromisoformat(m.group(1))
            except ValueError:
                log.debug("resolve.bad_date_dir", name=name)
                continue
            if start_day <= day <= end_day:
                out.append((day, os.path.join(base, name)))

        out.sort()
        return out

    def hour_directories(
        self, day: date, date_path: str, start_dt: datetime, end_dt: datetime, result: ResolveResult
    ) -> List[str]:
        try:
            names = _subdirectories(date_path)
        except OSError as e:
            result.skip(date_path, "directory_unreadable", str(e))
            return []

        hours = []
        for name in names:
            m = _HOUR_DIR_RE.match(name)
            if m is None:
                continue
            hour = int(m.group(1))
            if keep_hour(day, hour, start_dt, end_dt):
                hours.append((hour, os.path.join(date_path, name)))

        hours.sort()
        return [path for _, path in hours]

    def resolve(
        self,
        database: str,
        measurement: str,
        start: int,
        end: int,
        deadline: Optional[Deadline] = None,
    ) -> ResolveResult:
        deadline = deadline or Deadline(None)
        result = ResolveResult()
        base = measurement_path(self.data_dir, database, measurement)

        start_dt = ns_to_datetime(start)
        end_dt = ns_to_datetime(end)

        hour_paths = []
        for day, date_path in self.date_directories(base, start_dt, end_dt, result):
            deadline.check()
            hour_paths.extend(self.hour_directories(day, date_path, start_dt, end_dt, result))

        log.debug(
            "resolve.hive_candidates",
            database=database,
            measurement=measurement,
            partitions=len(hour_paths),
        )

        if self.max_workers == 1 or len(hour_paths) <= 1:
            parts = [self._resolve_partition(p, start, end, deadline) for p in hour_paths]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                parts = list(pool.map(lambda p: self._resolve_partition(p, start, end, deadline), hour_paths))

        for part in parts:
            result.merge(part)
        return result

    def _resolve_partition(self, hour_path: str, start: int, end: int, deadline: Deadline) -> ResolveResult:
        deadline.check()
        part = ResolveResult()

        try:
            manifest = read_manifest(hour_path)
        except ManifestError as e:
            part.skip(hour_path, "manifest_unreadable", str(e))
            return part

        if manifest is None:
            log.debug("resolve.no_manifest", path=hour_path)
            return part

        if not overlaps(manifest.min_time, manifest.max_time, start, end):
            log.debug(
                "resolve.partition_pruned",
                path=hour_path,
                min_time=manifest.min_time,
                max_time=manifest.max_time,
            )
            return part

        collect_manifest_files(manifest, hour_path, start, end, part)
        return part
