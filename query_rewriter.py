# query_rewriter.py

from typing import List, Optional

import structlog

from time_predicate import QueryDescriptor

log = structlog.get_logger()

SUBSTITUTE = "substitute"
RECONSTRUCT = "reconstruct"


def sql_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def virtual_relation(files: List[str]) -> str:
    """
    read_parquet over an explicit file list.

    union_by_name lines columns up by name across files with different
    schemas, columns missing from a file come back as NULL.
    """
    paths = ", ".join(sql_string(f) for f in files)
    return f"read_parquet([{paths}], union_by_name = true)"


def _measurement_alias(descriptor: QueryDescriptor) -> str:
    # keeps cpu.value style references bound to the relation
    return f' AS "{descriptor.measurement}"'


def substitute_relation(descriptor: QueryDescriptor, files: List[str]) -> str:
    """Replace only the FROM <table> span, everything else stays as written."""
    start, end = descriptor.table_span
    sql = descriptor.sql
    relation = virtual_relation(files)
    if not descriptor.alias:
        relation += _measurement_alias(descriptor)
    return f"{sql[:start]}FROM {relation}{sql[end:]}"


def reconstruct_statement(descriptor: QueryDescriptor, files: List[str]) -> str:
    """
    Rebuild the statement from the descriptor clauses:

    SELECT cols FROM rel [WHERE time AND residue] [GROUP BY] [HAVING] [ORDER BY] [LIMIT]
    """
    relation = virtual_relation(files)
    if descriptor.alias:
        relation = f"{relation} AS {descriptor.alias}"
    else:
        relation += _measurement_alias(descriptor)

    parts = [f"SELECT {descriptor.columns} FROM {relation}"]

    conditions = [
        c for c in (descriptor.time_range.condition_text, descriptor.where_conditions) if c
    ]
    if conditions:
        parts.append("WHERE " + " AND ".join(conditions))
    if descriptor.group_by:
        parts.append(f"GROUP BY {descriptor.group_by}")
    if descriptor.having:
        parts.append(f"HAVING {descriptor.having}")
    if descriptor.order_by:
        parts.append(f"ORDER BY {descriptor.order_by}")
    if descriptor.limit is not None:
        parts.append(f"LIMIT {descriptor.limit}")

    return " ".join(parts)


def rewrite(descriptor: QueryDescriptor, files: List[str], strategy: str = SUBSTITUTE) -> Optional[str]:
    """
    Executable statement for the resolved files, or None when there are none.

    None means "no matching files": the caller answers with an empty result
    and never touches the engine.
    """
    if not files:
        log.info(
            "rewrite.no_matching_files",
            database=descriptor.database,
            measurement=descriptor.measurement,
        )
        return None

    if strategy == SUBSTITUTE and descriptor.table_span is not None:
        return substitute_relation(descriptor, files)
    return reconstruct_statement(descriptor, files)
