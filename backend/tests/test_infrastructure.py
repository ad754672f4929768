"""
Infrastructure Tests

This test suite verifies:
1. Settings parsing and production validation
2. JSON log formatting and request context
3. Sentry event redaction

Run with: pytest tests/test_infrastructure.py -v
"""

import json
import logging

from conftest import make_settings
from logging_config import JSONFormatter, RequestContextFilter
from sentry_integration import filter_sensitive_data, capture_exception


class TestSettings:
    """Configuration parsing and validation"""

    def test_defaults(self):
        settings = make_settings()
        assert settings.DEFAULT_CURRENCY == "ETB"
        assert settings.AUTO_MATCH_THRESHOLD == 0.85
        assert settings.SUGGEST_MATCH_THRESHOLD == 0.60
        assert settings.AUTO_MATCH_LOOKBACK_MINUTES == 60

    def test_key_rotation(self):
        settings = make_settings(INTERNAL_API_KEY="primary", INTERNAL_API_KEYS="old-1, old-2,")
        assert settings.internal_api_keys == ["primary", "old-1", "old-2"]

    def test_threshold_validation(self):
        settings = make_settings(AUTO_MATCH_THRESHOLD=0.5, SUGGEST_MATCH_THRESHOLD=0.7)
        errors = settings.validate_production_config()
        assert "SUGGEST_MATCH_THRESHOLD cannot exceed AUTO_MATCH_THRESHOLD" in errors

    def test_production_rejects_sqlite_and_wildcard_cors(self):
        settings = make_settings(
            ENVIRONMENT="production",
            DATABASE_URL="sqlite+aiosqlite:///./prod.db",
            CORS_ORIGINS="*",
        )
        errors = settings.validate_production_config()
        assert "DATABASE_URL cannot be SQLite in production" in errors
        assert "CORS_ORIGINS cannot be '*' in production" in errors

    def test_postgres_url_from_parts(self):
        settings = make_settings(
            POSTGRES_HOST="db.internal",
            POSTGRES_USER="recon",
            POSTGRES_PASSWORD="pw",
            POSTGRES_DB="ledger",
        )
        assert settings.get_database_url() == "postgresql+asyncpg://recon:pw@db.internal:5432/ledger?ssl=require"

    def test_development_cors_includes_local_dashboard(self):
        settings = make_settings(ENVIRONMENT="development", CORS_ORIGINS="https://ops.example")
        assert "https://ops.example" in settings.cors_origins_list
        assert "http://localhost:3000" in settings.cors_origins_list


class TestLogging:
    """Structured log output"""

    def _record(self, **extra):
        record = logging.LogRecord(
            name="reconciliation", level=logging.INFO, pathname=__file__, lineno=1,
            msg="Reconciliation event: %s", args=("reconciliation.auto_matched",), exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        output = JSONFormatter(service_name="deposit-recon").format(
            self._record(record_id="r1", user_id="user-1")
        )
        data = json.loads(output)

        assert data["message"] == "Reconciliation event: reconciliation.auto_matched"
        assert data["service"] == "deposit-recon"
        assert data["level"] == "INFO"
        assert data["extra"] == {"record_id": "r1", "user_id": "user-1"}

    def test_request_context_filter(self):
        context = RequestContextFilter()
        context.set_request_context("req-1", "operator-1")

        record = self._record()
        assert context.filter(record)
        assert record.request_id == "req-1"
        assert record.operator_id == "operator-1"

        context.clear_request_context()
        record = self._record()
        context.filter(record)
        assert record.request_id is None


class TestSentry:
    """Error tracking helpers"""

    def test_sensitive_fields_redacted(self):
        event = {
            "request": {
                "headers": {"X-Internal-Api-Key": "abc", "Accept": "application/json"},
                "data": {"submitter_id": "user-1", "text": "You have sent ETB 100"},
            },
            "extra": {"nested": {"webhook_secret": "s"}},
        }

        filtered = filter_sensitive_data(event, {})

        assert filtered["request"]["headers"]["X-Internal-Api-Key"] == "[REDACTED]"
        assert filtered["request"]["headers"]["Accept"] == "application/json"
        assert filtered["request"]["data"]["text"] == "[REDACTED]"
        assert filtered["request"]["data"]["submitter_id"] == "user-1"
        assert filtered["extra"]["nested"]["webhook_secret"] == "[REDACTED]"

    def test_capture_is_noop_without_dsn(self):
        assert capture_exception(RuntimeError("boom"), action="test") is None
