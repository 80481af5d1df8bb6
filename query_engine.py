# query_engine.py

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import duckdb
import structlog

from fallback_resolver import FallbackResolver
from manifest import ResolveResult
from partition_resolver import PartitionResolver, measurement_path
from query_config import Settings
from query_errors import Deadline, EngineExecutionFailure, QueryTimeout, SoftError
from query_rewriter import rewrite
from result_normalizer import normalize_rows
from time_predicate import QueryDescriptor, TimeRange, parse_query

log = structlog.get_logger()


@dataclass
class QueryResult:
    rows: List[dict] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    skipped: List[SoftError] = field(default_factory=list)
    # statement handed to DuckDB, None when the engine was never invoked
    sql: Optional[str] = None
    descriptor: Optional[QueryDescriptor] = None


class StorageEngine:
    """
    Query engine over hive partitioned parquet files.

    This engine does:
      - parses the statement for its table and time predicate
      - resolves parquet files through date=/hour= manifests, falling back
        to a walk of the measurement directory
      - rewrites the table reference into read_parquet over those files
      - runs statements on a single DuckDB connection, one at a time
      - normalizes rows for json transport
    """

    def __init__(
        self,
        data_dir: str | None = None,
        settings: Settings | None = None,
        con: duckdb.DuckDBPyConnection | None = None,
    ):
        self.settings = settings or Settings()
        self.data_dir = data_dir or self.settings.data_dir

        self.partitions = PartitionResolver(self.data_dir, max_workers=self.settings.resolve_workers)
        self.fallback = FallbackResolver(max_depth=self.settings.max_walk_depth)

        self.con = con or duckdb.connect()
        self._lock = threading.Lock()

        log.info(
            "engine.init",
            data_dir=self.data_dir,
            strategy=self.settings.rewrite_strategy,
            max_walk_depth=self.settings.max_walk_depth,
        )

    # ------------------------------------------------------------
    # file resolution
    # ------------------------------------------------------------

    def resolve_files(self, database: str, measurement: str, time_range: TimeRange) -> ResolveResult:
        """
        Hive resolver first, directory walk when it finds nothing.

        No time predicate goes straight to the walk, every file counts.
        """
        deadline = Deadline(self.settings.walk_timeout_s, phase="resolve")
        root = measurement_path(self.data_dir, database, measurement)

        if time_range.unbounded:
            return self.fallback.resolve(root, deadline=deadline)

        hive = self.partitions.resolve(
            database, measurement, time_range.start, time_range.end, deadline=deadline
        )
        if hive.files:
            return hive

        log.info("resolve.hive_empty", database=database, measurement=measurement)
        walked = self.fallback.resolve(root, time_range.start, time_range.end, deadline=deadline)
        walked.skipped[:0] = hive.skipped
        return walked

    # ------------------------------------------------------------
    # queries
    # ------------------------------------------------------------

    def query(self, sql: str, db: str | None = None) -> QueryResult:
        descriptor = parse_query(sql, db or self.settings.default_db)
        resolved = self.resolve_files(descriptor.database, descriptor.measurement, descriptor.time_range)

        log.info(
            "engine.resolved",
            database=descriptor.database,
            measurement=descriptor.measurement,
            files=len(resolved.files),
            skipped=len(resolved.skipped),
        )

        statement = rewrite(descriptor, resolved.files, self.settings.rewrite_strategy)
        if statement is None:
            return QueryResult(skipped=resolved.skipped, descriptor=descriptor)

        columns, types, rows = self._execute(statement)
        return QueryResult(
            rows=normalize_rows(rows, types),
            columns=columns,
            files=resolved.files,
            skipped=resolved.skipped,
            sql=statement,
            descriptor=descriptor,
        )

    def execute_raw(self, sql: str) -> QueryResult:
        """Run a statement as written, no predicate extraction or rewriting."""
        columns, types, rows = self._execute(sql)
        return QueryResult(rows=normalize_rows(rows, types), columns=columns, sql=sql)

    def _execute(self, sql: str) -> Tuple[List[str], Dict[str, str], List[dict]]:
        timeout = self.settings.exec_timeout_s
        log.debug("engine.execute", sql=sql)

        with self._lock:
            timer = None
            if timeout and timeout > 0:
                timer = threading.Timer(timeout, self.con.interrupt)
                timer.daemon = True
                timer.start()

            t0 = time.perf_counter()
            try:
                rel = self.con.sql(sql)
                if rel is None:
                    # statements without a result set
                    return [], {}, []
                columns = list(rel.columns)
                types = {c: str(t) for c, t in zip(columns, rel.types)}
                rows = [dict(zip(columns, r)) for r in rel.fetchall()]
            except duckdb.InterruptException as e:
                raise QueryTimeout("execute", timeout) from e
            except duckdb.Error as e:
                log.error("engine.execute_failed", error=str(e))
                raise EngineExecutionFailure(f"DuckDB query execution failed: {e}", sql=sql) from e
            finally:
                if timer is not None:
                    timer.cancel()

        log.info("engine.executed", rows=len(rows), elapsed_ms=round((time.perf_counter() - t0) * 1000, 2))
        return columns, types, rows

    def close(self):
        with self._lock:
            self.con.close()
