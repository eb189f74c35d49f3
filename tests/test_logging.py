from __future__ import annotations

import logging

import pytest

from treeflow.core.logging import (
    SessionIdFilter,
    _build_config,
    bind_session_id,
    session_id_ctx_var,
)
from treeflow.settings import Settings, get_settings, is_development_mode

pytestmark = pytest.mark.unit


def _record() -> logging.LogRecord:
    return logging.LogRecord("treeflow", logging.INFO, __file__, 1, "routed", None, None)


def test_filter_uses_bound_session_id():
    record = _record()
    with bind_session_id("talk-7") as value:
        assert value == "talk-7"
        assert SessionIdFilter().filter(record)
    assert record.session_id == "talk-7"  # type: ignore[attr-defined]
    assert session_id_ctx_var.get() is None


def test_filter_without_session_id():
    record = _record()
    SessionIdFilter().filter(record)
    assert record.session_id == "-"  # type: ignore[attr-defined]


def test_bind_generates_an_id():
    with bind_session_id() as value:
        assert value and session_id_ctx_var.get() == value


def test_build_config_stream_and_level():
    config = _build_config("DEBUG", "ext://sys.stderr")
    handler = config["handlers"]["default"]
    assert handler["stream"] == "ext://sys.stderr"
    assert handler["level"] == "DEBUG"
    assert "session_id=%(session_id)s" in config["formatters"]["kv"]["format"]


class TestSettings:
    def test_default_database_is_local_sqlite(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)  # type: ignore[call-arg]
        assert settings.sqlalchemy_database_url == "sqlite+pysqlite:///./treeflow.db"
        assert settings.is_sqlite

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://crm@db/crm")
        settings = Settings(_env_file=None)  # type: ignore[call-arg]
        assert settings.sqlalchemy_database_url == "postgresql+psycopg://crm@db/crm"
        assert not settings.is_sqlite

    @pytest.mark.parametrize(("raw", "expected"), [("true", True), ("false", False)])
    def test_development_mode(self, monkeypatch, raw, expected):
        monkeypatch.setenv("DEVELOPMENT_MODE", raw)
        get_settings.cache_clear()
        try:
            assert is_development_mode() is expected
        finally:
            get_settings.cache_clear()
