# query_errors.py

import time
from dataclasses import dataclass


class QueryError(Exception):
    """Base class for errors surfaced to the caller of a query."""


class MalformedQuery(QueryError):
    """The statement has no resolvable table target or an unsupported shape."""


class EngineExecutionFailure(QueryError):
    """DuckDB rejected or failed the rewritten statement."""

    def __init__(self, message: str, sql: str | None = None):
        super().__init__(message)
        self.sql = sql


class QueryTimeout(QueryError):
    """
    A resolution or execution phase ran past its deadline.

    Retryable: nothing was mutated, the caller may simply send the query again.
    """

    retryable = True

    def __init__(self, phase: str, timeout_s: float):
        super().__init__(f"{phase} exceeded {timeout_s:g}s deadline")
        self.phase = phase
        self.timeout_s = timeout_s


@dataclass(frozen=True)
class SoftError:
    """
    Something the resolvers skipped without failing the query.

    reason is one of:
      - manifest_unreadable   (PartialManifestReadFailure)
      - directory_unreadable
      - missing_file
      - bad_manifest_entry
      - depth_limit
      - cycle
    """

    path: str
    reason: str
    detail: str = ""


class Deadline:
    """Monotonic deadline shared by the directory walks of one query."""

    def __init__(self, timeout_s: float | None, phase: str = "resolve"):
        self.timeout_s = timeout_s
        self.phase = phase
        self._expires_at = None
        if timeout_s is not None and timeout_s > 0:
            self._expires_at = time.monotonic() + timeout_s

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self):
        if self.expired():
            raise QueryTimeout(self.phase, self.timeout_s)
