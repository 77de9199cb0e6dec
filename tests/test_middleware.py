"""Logging formatter, config and app factory tests."""

import json
import logging

import pytest

from shopfloor import create_app
from shopfloor.config import ProductionConfig
from shopfloor.middleware.logging_config import JSONLineFormatter, LogLineFormatter
from shopfloor.services.role_repository import SqlRoleRepository, StaticRoleRepository


def _record(**extra):
    record = logging.LogRecord("shopfloor.services.flow_service", logging.INFO, __file__, 10,
                               "Step started by=%s", (10,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_includes_context(self):
        out = json.loads(JSONLineFormatter().format(_record(order_no="T-1", step_order=2)))
        assert out["message"] == "Step started by=10"
        assert out["order_no"] == "T-1"
        assert out["step_order"] == 2
        assert "station_id" not in out

    def test_readable_shows_scope(self):
        out = LogLineFormatter().format(_record(order_no="T-1", step_order=2, duration_ms=12.4))
        assert "[T-1 #2]" in out
        assert "(12ms)" in out


class TestAppFactory:
    def test_testing_app_uses_injected_repository(self, app):
        assert isinstance(app.extensions["role_repository"], StaticRoleRepository)
        assert app.config["TESTING"] is True

    def test_default_repository_is_sql(self):
        fresh = create_app("testing")
        assert isinstance(fresh.extensions["role_repository"], SqlRoleRepository)

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError):
            ProductionConfig()

    def test_blueprints_registered(self, app):
        assert {"station", "order", "production", "remediation", "batch", "health"} <= set(app.blueprints)
