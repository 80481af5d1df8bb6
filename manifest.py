# manifest.py

import json
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import structlog

from query_errors import SoftError

log = structlog.get_logger()

MANIFEST_NAME = "metadata.json"
PARQUET_EXT = ".parquet"


class ManifestError(Exception):
    """A manifest exists but cannot be read or decoded."""


def _as_int(value, name: str) -> int:
    # writers may emit 64 bit values as strings to survive json number limits
    if isinstance(value, bool) or value is None:
        raise ManifestError(f"{name} is not an integer: {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise ManifestError(f"{name} is not an integer: {value!r}") from None


@dataclass(frozen=True)
class ManifestFile:
    path: str
    min_time: int
    max_time: int


@dataclass(frozen=True)
class PartitionManifest:
    """
    Per hour partition document.

    min_time and max_time span every row in the partition, each listed file
    carries its own interval. min <= max is expected but never enforced.
    """

    min_time: int
    max_time: int
    files: Tuple[ManifestFile, ...] = ()
    invalid_entries: int = 0
    source: str = ""

    @classmethod
    def from_dict(cls, d, source: str = "") -> "PartitionManifest":
        if not isinstance(d, dict):
            raise ManifestError("manifest is not a json object")

        min_time = _as_int(d.get("min_time"), "min_time")
        max_time = _as_int(d.get("max_time"), "max_time")

        files = []
        invalid = 0
        raw_files = d.get("files") or []
        if not isinstance(raw_files, list):
            raise ManifestError("files is not a list")

        for raw in raw_files:
            if not isinstance(raw, dict) or not raw.get("path"):
                invalid += 1
                continue
            try:
                # missing per file bounds fall back to the partition bounds
                f_min = _as_int(raw["min_time"], "file.min_time") if "min_time" in raw else min_time
                f_max = _as_int(raw["max_time"], "file.max_time") if "max_time" in raw else max_time
            except ManifestError:
                invalid += 1
                continue
            files.append(ManifestFile(path=str(raw["path"]), min_time=f_min, max_time=f_max))

        return cls(
            min_time=min_time,
            max_time=max_time,
            files=tuple(files),
            invalid_entries=invalid,
            source=source,
        )

    def to_dict(self) -> dict:
        return {
            "min_time": self.min_time,
            "max_time": self.max_time,
            "files": [
                {"path": f.path, "min_time": f.min_time, "max_time": f.max_time}
                for f in self.files
            ],
        }


@dataclass
class ResolveResult:
    """Resolved File Set plus everything that was skipped on the way."""

    files: List[str] = field(default_factory=list)
    skipped: List[SoftError] = field(default_factory=list)

    def skip(self, path: str, reason: str, detail: str = ""):
        self.skipped.append(SoftError(path=path, reason=reason, detail=detail))
        log.warning("resolve.skipped", path=path, reason=reason, detail=detail)

    def merge(self, other: "ResolveResult"):
        self.files.extend(other.files)
        self.skipped.extend(other.skipped)


def overlaps(min_time: int, max_time: int, start: Optional[int], end: Optional[int]) -> bool:
    """Interval overlap test. A missing bound means no pruning."""
    if start is None or end is None:
        return True
    return not (max_time < start or min_time > end)


def read_manifest(directory: str) -> Optional[PartitionManifest]:
    """
    Read <directory>/metadata.json.

    Returns None if there is no manifest, raises ManifestError if there is
    one but it cannot be used.
    """
    path = os.path.join(directory, MANIFEST_NAME)
    try:
        with open(path, "r", encoding="utf8") as f:
            payload = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        raise ManifestError(f"{path}: {e}") from e
    return PartitionManifest.from_dict(payload, source=path)


def locate_file(recorded: str, partition_dir: str) -> Optional[str]:
    """
    Find a manifest entry on disk.

    The recorded path wins (relative paths are taken relative to the
    partition). If it is gone, the partition directory joined with its base
    name is tried, which covers storage roots that were moved.
    """
    candidate = recorded if os.path.isabs(recorded) else os.path.join(partition_dir, recorded)
    if os.path.isfile(candidate):
        return candidate
    relocated = os.path.join(partition_dir, os.path.basename(recorded))
    if relocated != candidate and os.path.isfile(relocated):
        return relocated
    return None


def collect_manifest_files(
    manifest: PartitionManifest,
    partition_dir: str,
    start: Optional[int],
    end: Optional[int],
    result: ResolveResult,
):
    """Append the manifest files whose own interval overlaps [start, end]."""
    if manifest.invalid_entries:
        result.skip(
            manifest.source or partition_dir,
            "bad_manifest_entry",
            f"{manifest.invalid_entries} entries without a usable path or interval",
        )

    for entry in manifest.files:
        if not overlaps(entry.min_time, entry.max_time, start, end):
            continue
        located = locate_file(entry.path, partition_dir)
        if located is None:
            result.skip(entry.path, "missing_file", f"not found at recorded path or in {partition_dir}")
            continue
        result.files.append(located)
