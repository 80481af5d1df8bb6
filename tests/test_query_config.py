import time

import pytest

from query_config import Settings, load_settings
from query_errors import Deadline, QueryTimeout

ENV_VARS = [
    "DATA_DIR",
    "QUERY_DEFAULT_DB",
    "QUERY_MAX_WALK_DEPTH",
    "QUERY_RESOLVE_WORKERS",
    "QUERY_WALK_TIMEOUT_S",
    "QUERY_EXEC_TIMEOUT_S",
    "QUERY_REWRITE_STRATEGY",
    "QUERY_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    assert load_settings(load_env_file=False) == Settings()


def test_environment(monkeypatch):
    monkeypatch.setenv("DATA_DIR", "/srv/data")
    monkeypatch.setenv("QUERY_DEFAULT_DB", "telegraf")
    monkeypatch.setenv("QUERY_MAX_WALK_DEPTH", "3")
    monkeypatch.setenv("QUERY_RESOLVE_WORKERS", "0")
    monkeypatch.setenv("QUERY_EXEC_TIMEOUT_S", "2.5")
    monkeypatch.setenv("QUERY_REWRITE_STRATEGY", "Reconstruct")

    s = load_settings(load_env_file=False)
    assert s.data_dir == "/srv/data"
    assert s.default_db == "telegraf"
    assert s.max_walk_depth == 3
    assert s.resolve_workers == 1
    assert s.exec_timeout_s == 2.5
    assert s.rewrite_strategy == "reconstruct"


def test_invalid_values_fall_back(monkeypatch):
    monkeypatch.setenv("QUERY_MAX_WALK_DEPTH", "deep")
    monkeypatch.setenv("QUERY_WALK_TIMEOUT_S", "soon")
    monkeypatch.setenv("QUERY_REWRITE_STRATEGY", "magic")

    s = load_settings(load_env_file=False)
    assert s.max_walk_depth == 10
    assert s.walk_timeout_s == 30.0
    assert s.rewrite_strategy == "substitute"


def test_with_overrides_ignores_none():
    s = Settings().with_overrides(data_dir="/x", default_db=None)
    assert s.data_dir == "/x"
    assert s.default_db == "mydb"


def test_deadline():
    assert not Deadline(None).expired()
    assert not Deadline(0).expired()
    Deadline(None).check()

    d = Deadline(0.001, phase="resolve")
    time.sleep(0.01)
    assert d.expired()
    with pytest.raises(QueryTimeout) as exc:
        d.check()
    assert exc.value.phase == "resolve"
    assert exc.value.retryable
