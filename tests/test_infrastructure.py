"""
Tests for database URL handling, Redis key naming and log formatting.
"""

import json
import logging

import pytest

from app.config import settings
from app.database import get_database_url
from app.logging_config import JSONFormatter, resolve_level
from app.redis import namespaced


class TestDatabaseUrl:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("postgres://u:p@db:5432/funnels", "postgresql+asyncpg://u:p@db:5432/funnels"),
            ("postgresql://u:p@db/funnels?sslmode=require", "postgresql+asyncpg://u:p@db/funnels"),
            ("postgresql+asyncpg://u:p@db/funnels", "postgresql+asyncpg://u:p@db/funnels"),
        ],
    )
    def test_async_driver_and_no_sslmode(self, monkeypatch, raw, expected):
        monkeypatch.setattr(settings, "database_url", raw)
        assert get_database_url() == expected

    def test_other_query_params_kept(self, monkeypatch):
        monkeypatch.setattr(settings, "database_url", "postgresql://u:p@db/funnels?sslmode=disable&application_name=ff")
        assert get_database_url() == "postgresql+asyncpg://u:p@db/funnels?application_name=ff"

    def test_unset(self, monkeypatch):
        monkeypatch.setattr(settings, "database_url", "")
        assert get_database_url() == ""


def test_redis_keys_namespaced(monkeypatch):
    monkeypatch.setattr(settings, "app_name", "ff-staging")
    assert namespaced("escalation", 42) == "ff-staging:escalation:42"


class TestLogging:
    def _record(self, level=logging.INFO, **extra):
        record = logging.LogRecord("app.funnel.machine", level, __file__, 10, "Started %s", ("c1",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_context_fields_lifted(self):
        line = json.loads(JSONFormatter(service="funnelflow-worker").format(
            self._record(conversation_id="c1", funnel_id="f1", unrelated="x")
        ))
        assert line["service"] == "funnelflow-worker"
        assert line["message"] == "Started c1"
        assert line["conversation_id"] == "c1"
        assert line["funnel_id"] == "f1"
        assert "unrelated" not in line
        assert "location" not in line

    def test_warnings_carry_location(self):
        line = json.loads(JSONFormatter().format(self._record(level=logging.WARNING)))
        assert line["service"] == settings.app_name
        assert line["location"].endswith(":10")

    def test_level_override(self, monkeypatch):
        monkeypatch.setattr(settings, "log_level", "warning")
        assert resolve_level() == logging.WARNING

    def test_unknown_level_uses_environment_default(self, monkeypatch):
        monkeypatch.setattr(settings, "log_level", "chatty")
        monkeypatch.setattr(settings, "app_env", "production")
        assert resolve_level() == logging.INFO
