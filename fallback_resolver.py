# fallback_resolver.py

import os
from collections import deque
from typing import Optional

import structlog

from manifest import (
    MANIFEST_NAME,
    PARQUET_EXT,
    ManifestError,
    ResolveResult,
    collect_manifest_files,
    overlaps,
    read_manifest,
)
from query_errors import Deadline

log = structlog.get_logger()

DEFAULT_MAX_DEPTH = 10


class FallbackResolver:
    """
    Walks a measurement tree when the hive layout gives nothing.

    Used when the query has no time predicate, or when the partition
    resolver returned zero files for a bounded interval.

    Per directory:
      - manifest present: its files are used (overlap tested when an
        interval is given), raw parquet files next to it are ignored
      - no manifest: every *.parquet file is collected
      - subdirectories are always queued, up to max_depth below the root

    The walk keeps a set of real paths, so symlinked loops are visited once.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max(0, int(max_depth))

    def resolve(
        self,
        root: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> ResolveResult:
        deadline = deadline or Deadline(None)
        result = ResolveResult()

        if not os.path.isdir(root):
            log.debug("fallback.root_missing", path=root)
            return result

        visited = set()
        queue = deque([(root, 0)])

        while queue:
            deadline.check()
            path, depth = queue.popleft()

            real = os.path.realpath(path)
            if real in visited:
                result.skip(path, "cycle", f"already visited as {real}")
                continue
            visited.add(real)

            try:
                with os.scandir(path) as it:
                    entries = list(it)
            except OSError as e:
                result.skip(path, "directory_unreadable", str(e))
                continue

            names = {entry.name for entry in entries}
            if MANIFEST_NAME in names:
                self._scan_manifest(path, start, end, result)
            else:
                for entry in sorted(entries, key=lambda e: e.name):
                    if entry.name.endswith(PARQUET_EXT) and _is_file(entry):
                        result.files.append(entry.path)

            for entry in sorted(entries, key=lambda e: e.name):
                if not _is_dir(entry):
                    continue
                if depth >= self.max_depth:
                    result.skip(entry.path, "depth_limit", f"deeper than {self.max_depth} levels")
                    continue
                queue.append((entry.path, depth + 1))

        log.debug("fallback.done", root=root, files=len(result.files), skipped=len(result.skipped))
        return result

    def _scan_manifest(self, path: str, start, end, result: ResolveResult):
        try:
            manifest = read_manifest(path)
        except ManifestError as e:
            result.skip(path, "manifest_unreadable", str(e))
            return
        if manifest is None:
            # removed between listing and reading
            return
        if not overlaps(manifest.min_time, manifest.max_time, start, end):
            log.debug("fallback.partition_pruned", path=path)
            return
        collect_manifest_files(manifest, path, start, end, result)


def _is_file(entry) -> bool:
    try:
        return entry.is_file()
    except OSError:
        return False


def _is_dir(entry) -> bool:
    try:
        return entry.is_dir()
    except OSError:
        return False
