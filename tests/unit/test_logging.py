"""Unit tests for logging service."""

import json

import pytest
import structlog

from authvault.services.logging_service import audit, configure_logging, redact_sensitive


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestRedactSensitive:
    """Tests for redact_sensitive processor."""

    @pytest.mark.parametrize(
        "key",
        [
            "password",
            "password_hash",
            "refresh_token",
            "token_digest",
            "reset_code",
            "jwt_access_secret",
            "authorization",
            "api_key",
        ],
    )
    def test_redacts_sensitive_keys(self, key):
        result = redact_sensitive(None, None, {key: "value", "event": "test"})
        assert result[key] == "REDACTED"

    def test_preserves_non_sensitive_fields(self):
        event_dict = {"user_id": 7, "revoked_count": 2, "duration_ms": 100, "event": "x"}
        result = redact_sensitive(None, None, dict(event_dict))
        assert result == event_dict

    def test_case_insensitive_redaction(self):
        result = redact_sensitive(None, None, {"Refresh_TOKEN": "abc", "event": "test"})
        assert result["Refresh_TOKEN"] == "REDACTED"

    def test_event_name_never_redacted(self):
        result = redact_sensitive(None, None, {"event": "refresh_token_stored"})
        assert result["event"] == "refresh_token_stored"


class TestConfigureLogging:
    """Tests for configure_logging output."""

    def test_output_is_json_and_redacted(self, capsys):
        configure_logging("INFO")
        structlog.get_logger("authvault.test").info("login_checked", user_id=3, password="hunter2")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "login_checked"
        assert record["level"] == "info"
        assert record["user_id"] == 3
        assert record["password"] == "REDACTED"
        assert "timestamp" in record

    def test_level_filters(self, capsys):
        configure_logging("WARNING")
        structlog.get_logger().info("quiet")
        assert capsys.readouterr().out == ""

    def test_context_vars_are_merged(self, capsys):
        configure_logging("INFO")
        structlog.contextvars.bind_contextvars(request_id="req-1")
        structlog.get_logger().info("with_context")

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["request_id"] == "req-1"


class TestAudit:
    """Tests for audit events."""

    def test_audit_event_shape(self):
        with structlog.testing.capture_logs() as logs:
            audit("USER_LOGIN", user_id=1, email="a@b.com", success=True)

        assert logs == [
            {
                "event": "audit_event",
                "log_level": "info",
                "action": "USER_LOGIN",
                "user_id": 1,
                "email": "a@b.com",
                "success": True,
            }
        ]
