# query_service.py

"""
Request handlers for the upstream HTTP layer.

The transport is not part of this project: a router hands over the decoded
json body and gets back (status, body).

    POST /query  {"query": "...", "db": "..."}  ->  {"results": [...]}
    POST /sql    {"sql": "..."}                 ->  {"results": [...]}

Errors come back as {"error": "..."} with 400 for bad input, 500 for
execution failures and 504 when a deadline expired.
"""

from typing import Any, Dict, Optional, Tuple

import structlog

from query_engine import StorageEngine
from query_errors import EngineExecutionFailure, MalformedQuery, QueryTimeout

log = structlog.get_logger()

Response = Tuple[int, Dict[str, Any]]


def _error(status: int, message: str) -> Response:
    return status, {"error": message}


def _payload(body) -> Dict[str, Any]:
    return body if isinstance(body, dict) else {}


def handle_query(engine: StorageEngine, body, db: Optional[str] = None) -> Response:
    """
    Database precedence: db argument (query string), then body "db", then the
    engine default.
    """
    params = _payload(body)
    sql = params.get("query")
    if not sql or not isinstance(sql, str):
        return _error(400, "Missing query parameter")

    db_name = db or params.get("db") or None
    if db_name is not None and not isinstance(db_name, str):
        return _error(400, "Invalid db parameter")
    log.info("service.query", db=db_name or engine.settings.default_db, query=sql)

    try:
        result = engine.query(sql, db_name)
    except MalformedQuery as e:
        return _error(400, str(e))
    except QueryTimeout as e:
        return _error(504, str(e))
    except EngineExecutionFailure as e:
        return _error(500, str(e))

    return 200, {"results": result.rows}


def handle_sql(engine: StorageEngine, body) -> Response:
    params = _payload(body)
    sql = params.get("sql")
    if not sql or not isinstance(sql, str):
        return _error(400, "Missing sql parameter")

    log.info("service.sql", sql=sql)

    try:
        result = engine.execute_raw(sql)
    except QueryTimeout as e:
        return _error(504, str(e))
    except EngineExecutionFailure as e:
        return _error(500, str(e))

    return 200, {"results": result.rows}
