# tests/test_config_logging.py
"""Tests for app/config.py and app/infra/logging_config.py."""
from __future__ import annotations

import json
import logging

import pytest

from app.config import Settings, validate_or_warn, warn_on_risky_config
from app.infra.logging_config import ConsoleFormatter, JSONFormatter, LogContext, mask_token


def _settings(**overrides) -> Settings:
    # _env_file=None keeps a developer's .env out of the tests
    return Settings(_env_file=None, **overrides)


# ============================================================================
# Settings
# ============================================================================

class TestSettings:
    def test_database_url_wins(self):
        s = _settings(database_url="postgresql://u:p@db:5432/app")
        assert s.database_dsn == "postgresql://u:p@db:5432/app"

    def test_dsn_from_parts(self):
        s = _settings(pguser="push", pgpassword="pw", pghost="db", pgport=6543, pgdatabase="dispatch")
        assert s.database_dsn == "postgresql://push:pw@db:6543/dispatch"

    def test_firebase_configured(self):
        assert _settings().firebase_configured is False
        assert _settings(firebase_credentials_file="/etc/fcm.json").firebase_configured is True
        assert _settings(firebase_credentials_json="{}").firebase_configured is True

    def test_non_prod_requires_nothing(self):
        assert _settings(app_env="dev").validate_required_for_production() == []

    def test_prod_missing_fields(self):
        missing = _settings(app_env="prod").validate_required_for_production()
        assert "admin_token" in missing
        assert any("firebase" in m for m in missing)

    def test_prod_hard_fails(self):
        with pytest.raises(RuntimeError, match="admin_token"):
            validate_or_warn(_settings(app_env="prod"))

    def test_prod_complete(self):
        s = _settings(app_env="prod", admin_token="x" * 40, firebase_credentials_json="{}")
        assert s.validate_required_for_production() == []

    def test_retention_defaults(self):
        s = _settings()
        assert s.retention_days == 30
        assert s.retention_run_hour == 2
        assert s.scheduler_timezone == "Australia/Sydney"
        assert s.dispatch_batch_limit == 50


class TestWarnOnRiskyConfig:
    def test_warns_about_unconfigured_transport(self):
        warnings = warn_on_risky_config(_settings())
        assert any("Firebase" in w for w in warnings)
        assert any("admin_token" in w for w in warnings)

    def test_warns_about_short_interval(self):
        warnings = warn_on_risky_config(_settings(dispatch_interval_seconds=5))
        assert any("dispatch_interval_seconds" in w for w in warnings)

    def test_warns_about_bad_run_hour(self):
        warnings = warn_on_risky_config(_settings(retention_run_hour=25))
        assert any("retention_run_hour" in w for w in warnings)

    def test_quiet_when_tuned(self):
        s = _settings(
            admin_token="x" * 40,
            firebase_credentials_json="{}",
            dispatch_retry_base_delay_seconds=60,
        )
        assert warn_on_risky_config(s) == []


# ============================================================================
# Logging
# ============================================================================

def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 10, msg, None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


class TestFormatters:
    def test_json_includes_context_and_summary(self):
        record = _record(cycle_id="c-1", recipient_id="user-a", summary={"fetched": 3})
        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["cycle_id"] == "c-1"
        assert data["recipient_id"] == "user-a"
        assert data["summary"] == {"fetched": 3}
        assert "notification_id" not in data

    def test_console_shows_short_context(self):
        line = ConsoleFormatter().format(_record(cycle_id="c-1", recipient_id="1234567890abcdef"))

        assert "cycle=c-1" in line
        assert "recipient=12345678]" in line
        assert line.endswith("hello")


class TestLogContext:
    def test_adds_context_to_records(self, caplog):
        log = LogContext(logging.getLogger("app.test"), cycle_id="c-1", recipient_id=None)

        with caplog.at_level(logging.INFO, logger="app.test"):
            log.info("cycle started")

        record = caplog.records[-1]
        assert record.cycle_id == "c-1"
        assert not hasattr(record, "recipient_id")

    def test_bind_layers_fields(self):
        base = LogContext(logging.getLogger("app.test"), cycle_id="c-1")

        child = base.bind(recipient_id="user-a", notification_id=None)

        assert child.context == {"cycle_id": "c-1", "recipient_id": "user-a"}
        assert base.context == {"cycle_id": "c-1"}


class TestMaskToken:
    def test_long_token(self):
        assert mask_token("dQw4w9WgXcQ:APA91bHun4MxP5egoKMwt2KZFBaFUH-1RYqx") == "dQw4w9****Yqx"

    def test_short_token(self):
        assert mask_token("abc") == "****"
