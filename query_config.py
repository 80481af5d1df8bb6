"""
Configuration for the query layer.

Loads settings from:
1. Environment variables
2. .env file (if present, via python-dotenv)

Usage:
    from query_config import load_settings

    settings = load_settings()
    engine = StorageEngine(settings.data_dir, settings=settings)
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path

import structlog

log = structlog.get_logger()

REWRITE_STRATEGIES = ("substitute", "reconstruct")

_dotenv_loaded = False


@dataclass(frozen=True)
class Settings:
    data_dir: str = "./data"
    default_db: str = "mydb"
    max_walk_depth: int = 10
    resolve_workers: int = 4
    walk_timeout_s: float = 30.0
    exec_timeout_s: float = 300.0
    rewrite_strategy: str = "substitute"
    log_level: str = "info"

    def with_overrides(self, **kwargs) -> "Settings":
        clean = {k: v for k, v in kwargs.items() if v is not None}
        return replace(self, **clean)


def find_dotenv() -> Path | None:
    """Find a .env file in the current directory or one of its parents."""
    current = Path.cwd()
    for _ in range(10):
        env_file = current / ".env"
        if env_file.exists():
            return env_file
        if current.parent == current:
            break
        current = current.parent
    return None


def load_dotenv_once() -> None:
    global _dotenv_loaded
    if _dotenv_loaded:
        return
    _dotenv_loaded = True

    # tests control the environment explicitly
    if os.environ.get("PYTEST_CURRENT_TEST") or os.environ.get("QUERY_DISABLE_DOTENV", "").lower() in {"1", "true", "yes"}:
        log.debug("config.skip_dotenv")
        return

    from dotenv import load_dotenv

    env_file = find_dotenv()
    if env_file:
        load_dotenv(env_file, override=False)
        log.debug("config.loaded_dotenv", path=str(env_file))


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("config.invalid_int", name=name, value=raw, default=default)
        return default
    return max(minimum, value)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("config.invalid_float", name=name, value=raw, default=default)
        return default


def load_settings(load_env_file: bool = True) -> Settings:
    if load_env_file:
        load_dotenv_once()

    strategy = os.environ.get("QUERY_REWRITE_STRATEGY", "substitute").strip().lower()
    if strategy not in REWRITE_STRATEGIES:
        log.warning("config.invalid_strategy", value=strategy, default="substitute")
        strategy = "substitute"

    return Settings(
        data_dir=os.environ.get("DATA_DIR", "./data"),
        default_db=os.environ.get("QUERY_DEFAULT_DB", "mydb").strip() or "mydb",
        max_walk_depth=_env_int("QUERY_MAX_WALK_DEPTH", 10),
        resolve_workers=_env_int("QUERY_RESOLVE_WORKERS", 4, minimum=1),
        walk_timeout_s=_env_float("QUERY_WALK_TIMEOUT_S", 30.0),
        exec_timeout_s=_env_float("QUERY_EXEC_TIMEOUT_S", 300.0),
        rewrite_strategy=strategy,
        log_level=os.environ.get("QUERY_LOG_LEVEL", "info").strip().lower() or "info",
    )
