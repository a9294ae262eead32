"""
Infrastructure Tests

Configuration, structured logging and Sentry event filtering.

Run with: pytest tests/test_infrastructure.py -v
"""

import json
import logging
import sys

import pytest

from config import Settings
from logging_config import (
    JSONFormatter,
    RunContextFilter,
    clear_run_context,
    current_run_context,
    set_run_context,
)
from sentry_integration import filter_sensitive_data


def make_record(message="hello", **extra):
    record = logging.LogRecord("reconciliation.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSettings:
    """Environment-backed settings."""

    def test_tolerance_defaults(self, settings):
        assert settings.tolerance_defaults() == {
            "amount_percentage_tolerance": 0.01,
            "amount_absolute_tolerance": settings.RECON_AMOUNT_ABSOLUTE_TOLERANCE,
            "date_tolerance_days": 3,
            "fuzzy_match_threshold": 80,
            "date_parse_policy": "fail_open",
            "flag_amount_mismatches": False,
        }

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RECON_DATE_TOLERANCE_DAYS", "7")
        monkeypatch.setenv("RECON_PARTIAL_DISCREPANCY_THRESHOLD", "10")

        settings = Settings(_env_file=None)

        assert settings.RECON_DATE_TOLERANCE_DAYS == 7
        assert settings.RECON_PARTIAL_DISCREPANCY_THRESHOLD == 10

    def test_production_rejects_sqlite(self):
        settings = Settings(_env_file=None, ENVIRONMENT="production", DATABASE_URL="sqlite+aiosqlite:///x.db")
        assert "DATABASE_URL cannot point to SQLite in production" in settings.validate_production_config()

    def test_invalid_date_parse_policy(self):
        settings = Settings(_env_file=None, DATABASE_URL="sqlite://", RECON_DATE_PARSE_POLICY="maybe")
        assert any("RECON_DATE_PARSE_POLICY" in e for e in settings.validate_production_config())

    def test_database_url_from_components(self):
        settings = Settings(
            _env_file=None,
            DATABASE_URL="",
            POSTGRES_HOST="db",
            POSTGRES_USER="recon",
            POSTGRES_PASSWORD="pw",
        )
        assert settings.get_database_url() == "postgresql+asyncpg://recon:pw@db:5432/reconciliation"

    def test_json_logs_follow_environment(self):
        assert Settings(_env_file=None, ENVIRONMENT="production").json_logs is True
        assert Settings(_env_file=None, ENVIRONMENT="development").json_logs is False
        assert Settings(_env_file=None, ENVIRONMENT="development", LOG_JSON=True).json_logs is True


class TestJSONFormatter:
    """Structured log lines."""

    def test_basic_fields(self):
        line = JSONFormatter(service_name="recon-test").format(make_record())
        data = json.loads(line)

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["service"] == "recon-test"
        assert data["logger"] == "reconciliation.test"

    def test_extra_fields(self):
        record = make_record(event="reconciliation.run_started", run_id="run-1")
        data = json.loads(JSONFormatter().format(record))

        assert data["event"] == "reconciliation.run_started"
        assert data["run_id"] == "run-1"
        assert "extra" not in data

    def test_other_extras_nested(self):
        record = make_record(request_id="abc123", scope=None)
        data = json.loads(JSONFormatter().format(record))

        assert data["extra"] == {"request_id": "abc123"}
        assert "scope" not in data

    def test_exception(self):
        try:
            raise ValueError("bad amount")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "bad amount"


class TestRunContextFilter:
    """Active run tagging."""

    @pytest.fixture(autouse=True)
    def reset_context(self):
        yield
        clear_run_context()

    def test_adds_run_context(self):
        set_run_context("run-9", "Nairobi")

        record = make_record()
        assert RunContextFilter().filter(record)
        assert record.run_id == "run-9"
        assert record.scope == "Nairobi"

    def test_explicit_values_win(self):
        set_run_context("run-9", "Nairobi")

        record = make_record(run_id="run-1")
        RunContextFilter().filter(record)
        assert record.run_id == "run-1"
        assert record.scope == "Nairobi"

    def test_cleared(self):
        set_run_context("run-9")
        clear_run_context()

        record = make_record()
        RunContextFilter().filter(record)
        assert record.run_id is None
        assert current_run_context() == (None, None)


class TestSentryFiltering:
    """Sensitive data never leaves the process."""

    def test_redacts_credentials_and_payer_details(self):
        event = {
            "request": {
                "headers": {"Authorization": "Bearer abc", "Accept": "application/json"},
                "data": {"consumer_secret": "s3cret", "amount": "10"},
            },
            "extra": {"metadata": {"payer_phone": "+254700000000", "county": "Nairobi"}},
        }

        filtered = filter_sensitive_data(event, {})

        assert filtered["request"]["headers"]["Authorization"] == "[REDACTED]"
        assert filtered["request"]["headers"]["Accept"] == "application/json"
        assert filtered["request"]["data"]["consumer_secret"] == "[REDACTED]"
        assert filtered["request"]["data"]["amount"] == "10"
        assert filtered["extra"]["metadata"]["payer_phone"] == "[REDACTED]"
        assert filtered["extra"]["metadata"]["county"] == "Nairobi"

    def test_ledgers_reduced_to_length(self):
        event = {
            "request": {
                "data": {
                    "app_transactions": [{"amount": "1"}, {"amount": "2"}, {"amount": "3"}],
                    "gateway_transactions": [],
                    "scope": "Kisumu",
                },
            },
        }

        filtered = filter_sensitive_data(event, {})

        assert filtered["request"]["data"]["app_transactions"] == "[3 transactions]"
        assert filtered["request"]["data"]["gateway_transactions"] == "[0 transactions]"
        assert filtered["request"]["data"]["scope"] == "Kisumu"
