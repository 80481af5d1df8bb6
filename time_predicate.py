# time_predicate.py

import re
import time as _time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import sqlglot
import structlog
from sqlglot import exp
from sqlglot.errors import SqlglotError
from sqlglot.tokens import TokenType

from query_errors import MalformedQuery

log = structlog.get_logger()

DIALECT = "duckdb"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NS_PER_MS = 1_000_000

# quoted segments are captured so they alternate with unquoted text in re.split
_QUOTED_RE = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")")
_BARE_TS_RE = re.compile(
    r"(?<![\w.:-])(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})?)(?![\w.:])"
)

_COMPARISONS = {
    exp.GT: ">",
    exp.GTE: ">=",
    exp.LT: "<",
    exp.LTE: "<=",
    exp.EQ: "=",
}
_FLIPPED = {">": "<", ">=": "<=", "<": ">", "<=": ">=", "=": "="}

_CLAUSE_PREFIX_RE = re.compile(r"^\s*(?:GROUP\s+BY|ORDER\s+BY|HAVING)\s+", re.IGNORECASE)
_FRACTION_RE = re.compile(r"(:\d{2})\.(\d+)")

# database and measurement names become directory names
_NAME_RE = re.compile(r"\w+")


@dataclass(frozen=True)
class TimeRange:
    """
    Requested interval in nanoseconds since epoch.

    start and end are both None when the query carried no time predicate,
    which means no pruning is possible and every file must be considered.
    """

    start: Optional[int] = None
    end: Optional[int] = None
    condition_text: Optional[str] = None

    @property
    def unbounded(self) -> bool:
        return self.start is None and self.end is None


@dataclass(frozen=True)
class QueryDescriptor:
    sql: str
    columns: str
    database: str
    measurement: str
    time_range: TimeRange
    where_conditions: str = ""
    order_by: str = ""
    group_by: str = ""
    having: str = ""
    limit: Optional[int] = None
    alias: str = ""
    # character span [start, end) of "FROM <table>" inside sql
    table_span: Optional[Tuple[int, int]] = None


# ------------------------------------------------------------
# literal helpers
# ------------------------------------------------------------

def quote_bare_timestamps(sql: str) -> str:
    """
    Wrap ISO-8601 date-time tokens that are not already inside quotes.

    time >= 2025-04-10T14:00:00Z  ->  time >= '2025-04-10T14:00:00Z'
    """
    parts = _QUOTED_RE.split(sql)
    out = []
    for i, part in enumerate(parts):
        if i % 2 == 1:
            out.append(part)
        else:
            out.append(_BARE_TS_RE.sub(r"'\1'", part))
    return "".join(out)


def parse_time_literal(text: str) -> int:
    """Parse a date/time string to nanoseconds (millisecond precision). Naive values are UTC."""
    raw = text.strip()
    if raw[-1:] in ("Z", "z"):
        raw = raw[:-1] + "+00:00"
    # fromisoformat before 3.11 takes only 3 or 6 fraction digits
    raw = _FRACTION_RE.sub(lambda m: m.group(1) + "." + (m.group(2) + "000000")[:6], raw)
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        raise MalformedQuery(f"Invalid time literal: {text!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return ((dt - EPOCH) // timedelta(milliseconds=1)) * NS_PER_MS


def ns_to_datetime(ns: int) -> datetime:
    return EPOCH + timedelta(microseconds=ns // 1000)


def check_name(name, kind: str = "name") -> str:
    """Accept only word characters, so a name can never leave the data directory."""
    if not isinstance(name, str) or _NAME_RE.fullmatch(name) is None:
        raise MalformedQuery(f"Invalid query: bad {kind} name {name!r}")
    return name


# ------------------------------------------------------------
# where clause walking
# ------------------------------------------------------------

def _unwrap_paren(node):
    while isinstance(node, exp.Paren):
        node = node.this
    return node


def _conjuncts(node) -> List[exp.Expression]:
    """Split a condition on its top level AND chain. Parens around OR are kept."""
    inner = _unwrap_paren(node)
    if isinstance(inner, exp.And):
        return _conjuncts(inner.left) + _conjuncts(inner.right)
    return [node]


def _is_time_column(node) -> bool:
    return isinstance(node, exp.Column) and node.name.lower() == "time"


def _time_literal(node) -> Optional[str]:
    # TIMESTAMP '...' parses as a cast around the string literal
    if isinstance(node, exp.Cast):
        node = node.this
    if isinstance(node, exp.Literal) and node.is_string:
        return node.this
    return None


def _match_comparison(node) -> Optional[Tuple[str, str]]:
    """Return (op, literal) for time <op> 'literal', flipping 'literal' <op> time."""
    node = _unwrap_paren(node)
    for cls, op in _COMPARISONS.items():
        if not isinstance(node, cls):
            continue
        if _is_time_column(node.left):
            literal = _time_literal(node.right)
            if literal is not None:
                return op, literal
        if _is_time_column(node.right):
            literal = _time_literal(node.left)
            if literal is not None:
                return _FLIPPED[op], literal
        return None
    return None


def _match_between(node) -> Optional[Tuple[str, str]]:
    node = _unwrap_paren(node)
    if not isinstance(node, exp.Between) or not _is_time_column(node.this):
        return None
    low = _time_literal(node.args.get("low"))
    high = _time_literal(node.args.get("high"))
    if low is None or high is None:
        return None
    return low, high


def _conjunct_sql(node) -> str:
    text = node.sql(dialect=DIALECT)
    if isinstance(node, exp.Or):
        text = f"({text})"
    return text


def extract_time_range(condition, now_ns: Optional[int] = None) -> Tuple[TimeRange, str]:
    """
    Split a WHERE condition into a TimeRange and the non-time residue text.

    Only top level AND conjuncts are considered: a time comparison under OR
    or NOT cannot bound the rows, so it stays in the residue.

    Resolution:
      - BETWEEN wins and short circuits the other shapes
      - otherwise > / >= give start (tightest wins), < / <= give end
        (tightest wins), and = pins start = end, applied last
      - only start -> end = now, only end -> start = 0
    """
    if condition is None:
        return TimeRange(), ""

    time_nodes = []
    rest = []
    between = None
    lower = None
    upper = None
    exact = None

    for node in _conjuncts(condition):
        span = _match_between(node)
        if span is not None:
            time_nodes.append(node)
            if between is None:
                between = span
            continue

        match = _match_comparison(node)
        if match is None:
            rest.append(node)
            continue

        time_nodes.append(node)
        op, literal = match
        value = parse_time_literal(literal)
        if op in (">", ">="):
            lower = value if lower is None else max(lower, value)
        elif op in ("<", "<="):
            upper = value if upper is None else min(upper, value)
        elif exact is None:
            exact = value

    residue = " AND ".join(_conjunct_sql(n) for n in rest)

    if not time_nodes:
        return TimeRange(), residue

    if between is not None:
        start = parse_time_literal(between[0])
        end = parse_time_literal(between[1])
    else:
        start, end = lower, upper
        if exact is not None:
            start = end = exact

    if start is not None and end is None:
        end = now_ns if now_ns is not None else _time.time_ns()
    elif end is not None and start is None:
        start = 0

    condition_text = " AND ".join(_conjunct_sql(n) for n in time_nodes)
    return TimeRange(start=start, end=end, condition_text=condition_text), residue


# ------------------------------------------------------------
# statement level
# ------------------------------------------------------------

def _outer_table(select: exp.Select):
    from_ = select.args.get("from") or select.args.get("from_")
    if from_ is None:
        return None
    source = from_.this
    if not isinstance(source, exp.Table):
        return None
    # table functions such as read_parquet(...) are not a logical table
    if not isinstance(source.this, exp.Identifier) or source.args.get("catalog") is not None:
        return None
    return source


def _from_table_span(tokens, measurement: str) -> Optional[Tuple[int, int]]:
    """Locate the outermost FROM <table> (or FROM <db>.<table>) token span."""
    depth = 0
    for i, tok in enumerate(tokens):
        if tok.token_type == TokenType.L_PAREN:
            depth += 1
        elif tok.token_type == TokenType.R_PAREN:
            depth -= 1
        elif tok.token_type == TokenType.FROM and depth == 0:
            if i + 1 >= len(tokens):
                return None
            last = tokens[i + 1]
            if i + 3 < len(tokens) and tokens[i + 2].token_type == TokenType.DOT:
                last = tokens[i + 3]
            if last.text.lower() != measurement.lower():
                return None
            return tok.start, last.end + 1
    return None


def _clause_body(node) -> str:
    if node is None:
        return ""
    return _CLAUSE_PREFIX_RE.sub("", node.sql(dialect=DIALECT).strip())


def _limit_value(select: exp.Select) -> Optional[int]:
    node = select.args.get("limit")
    if node is None:
        return None
    value = node.args.get("expression") or node.this
    if isinstance(value, exp.Literal) and value.is_int:
        return int(value.this)
    return None


def parse_query(sql: str, default_db: str, now_ns: Optional[int] = None) -> QueryDescriptor:
    """
    Build a QueryDescriptor from raw SQL text.

    Raises MalformedQuery when the statement cannot be parsed or has no
    plain [database.]measurement table in its outermost FROM.
    """
    if not sql or not sql.strip():
        raise MalformedQuery("Invalid query: empty statement")

    normalized = quote_bare_timestamps(sql.strip().rstrip(";").strip())

    try:
        tokens = sqlglot.tokenize(normalized, read=DIALECT)
        tree = sqlglot.parse_one(normalized, read=DIALECT)
    except SqlglotError as e:
        raise MalformedQuery(f"Invalid query: {e}") from e

    if not isinstance(tree, exp.Select):
        raise MalformedQuery("Invalid query: only SELECT statements can be rewritten")

    table = _outer_table(tree)
    if table is None:
        raise MalformedQuery("Invalid query: FROM clause not found or invalid")

    measurement = check_name(table.name, "measurement")
    database = check_name(table.db or default_db, "database")

    where = tree.args.get("where")
    time_range, residue = extract_time_range(
        where.this if where is not None else None, now_ns=now_ns
    )

    having = tree.args.get("having")
    descriptor = QueryDescriptor(
        sql=normalized,
        columns=", ".join(e.sql(dialect=DIALECT) for e in tree.expressions) or "*",
        database=database,
        measurement=measurement,
        time_range=time_range,
        where_conditions=residue,
        order_by=_clause_body(tree.args.get("order")),
        group_by=_clause_body(tree.args.get("group")),
        having=having.this.sql(dialect=DIALECT) if having is not None else "",
        limit=_limit_value(tree),
        alias=table.alias or "",
        table_span=_from_table_span(tokens, measurement),
    )

    log.debug(
        "predicate.parsed",
        database=database,
        measurement=measurement,
        start=time_range.start,
        end=time_range.end,
        where=residue,
    )
    return descriptor
