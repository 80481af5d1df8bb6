# query_cli.py

"""
Command line entrypoint for the query layer.

    hpq query "SELECT * FROM cpu WHERE time >= 2025-04-10T14:00:00Z" --db mydb
    hpq sql "SELECT 42 AS answer"
    hpq resolve "SELECT * FROM cpu WHERE time >= ..." --stats
    hpq lines points.lp
"""

import json
import logging
import os
import sys

import click
import structlog
from tabulate import tabulate

from file_stats import collect_file_stats
from line_protocol import parse, plan_partitions
from query_config import load_settings
from query_engine import StorageEngine
from query_errors import QueryError
from result_normalizer import ns_to_iso
from time_predicate import parse_query

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _setup_logging(verbose: bool, level_name: str = "info") -> None:
    level = logging.DEBUG if verbose else _LEVELS.get(level_name, logging.INFO)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # stdout carries query results, logs go to stderr
    logging.basicConfig(format="%(message)s", level=level, handlers=[logging.StreamHandler(sys.stderr)])
    logging.getLogger().setLevel(level)


def _engine(ctx: click.Context) -> StorageEngine:
    settings = ctx.obj["settings"]
    return StorageEngine(settings.data_dir, settings=settings)


def _echo_rows(rows, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(rows, indent=2, default=str))
        return
    if not rows:
        click.echo("(0 rows)")
        return
    click.echo(tabulate(rows, headers="keys", tablefmt="psql"))
    click.echo(f"({len(rows)} rows)")


def _echo_skipped(skipped) -> None:
    for soft in skipped:
        click.echo(f"skipped {soft.path}: {soft.reason} {soft.detail}".rstrip(), err=True)


@click.group()
@click.option("--data-dir", type=click.Path(file_okay=False), default=None, help="Storage root (DATA_DIR)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, data_dir, verbose: bool) -> None:
    """Query hive partitioned parquet time series with DuckDB."""
    # before load_settings, which already logs
    env_level = os.environ.get("QUERY_LOG_LEVEL", "info").strip().lower()
    _setup_logging(verbose, env_level)

    settings = load_settings().with_overrides(data_dir=data_dir)
    if not verbose and settings.log_level != env_level:
        # .env may have set a different level
        logging.getLogger().setLevel(_LEVELS.get(settings.log_level, logging.INFO))

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = verbose


@main.command("query")
@click.argument("sql")
@click.option("--db", default=None, help="Database when the statement does not name one")
@click.option("--json", "as_json", is_flag=True, help="Print rows as json")
@click.pass_context
def query_cmd(ctx: click.Context, sql: str, db, as_json: bool) -> None:
    """Run a statement through partition resolution and rewriting."""
    engine = _engine(ctx)
    try:
        result = engine.query(sql, db)
    except QueryError as e:
        raise click.ClickException(str(e)) from e
    finally:
        engine.close()

    _echo_skipped(result.skipped)
    _echo_rows(result.rows, as_json)


@main.command("sql")
@click.argument("sql")
@click.option("--json", "as_json", is_flag=True, help="Print rows as json")
@click.pass_context
def sql_cmd(ctx: click.Context, sql: str, as_json: bool) -> None:
    """Run a statement as written."""
    engine = _engine(ctx)
    try:
        result = engine.execute_raw(sql)
    except QueryError as e:
        raise click.ClickException(str(e)) from e
    finally:
        engine.close()

    _echo_rows(result.rows, as_json)


@main.command("resolve")
@click.argument("sql")
@click.option("--db", default=None, help="Database when the statement does not name one")
@click.option("--stats", is_flag=True, help="Read row counts and time bounds from each file footer")
@click.pass_context
def resolve_cmd(ctx: click.Context, sql: str, db, stats: bool) -> None:
    """Show the files a statement would read, without running it."""
    settings = ctx.obj["settings"]
    try:
        descriptor = parse_query(sql, db or settings.default_db)
    except QueryError as e:
        raise click.ClickException(str(e)) from e

    engine = _engine(ctx)
    try:
        resolved = engine.resolve_files(descriptor.database, descriptor.measurement, descriptor.time_range)
    except QueryError as e:
        raise click.ClickException(str(e)) from e
    finally:
        engine.close()

    _echo_skipped(resolved.skipped)

    if not resolved.files:
        click.echo("no matching files")
        return

    if not stats:
        for path in resolved.files:
            click.echo(path)
        return

    table = []
    for fs in collect_file_stats(resolved.files):
        table.append(
            [
                fs.path,
                fs.num_rows,
                len(fs.row_groups),
                ns_to_iso(fs.time_min) if fs.time_min is not None else "",
                ns_to_iso(fs.time_max) if fs.time_max is not None else "",
            ]
        )
    click.echo(tabulate(table, headers=["file", "rows", "row_groups", "time_min", "time_max"], tablefmt="psql"))


@main.command("lines")
@click.argument("source", type=click.File("r"))
def lines_cmd(source) -> None:
    """Parse line protocol and show the partition each point belongs to."""
    points = parse(source.read())
    plan = plan_partitions(points)

    table = [
        [measurement, date_dir, hour_dir, len(group)]
        for (measurement, date_dir, hour_dir), group in sorted(plan.items())
    ]
    click.echo(tabulate(table, headers=["measurement", "date", "hour", "points"], tablefmt="psql"))
    click.echo(f"({len(points)} points)")


if __name__ == "__main__":
    main()
