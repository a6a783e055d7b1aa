"""Tests for log redaction and correlation ids."""

import pytest
import structlog

from sentinel_auth.logging import (
    _add_correlation_id,
    _level_number,
    _redact_pii,
    configure_logging,
    correlation_id_var,
    get_logger,
)


def _redact(**fields):
    return _redact_pii(None, "info", {"event": "login_failed", **fields})


class TestRedaction:
    @pytest.mark.parametrize("key", ["password", "new_password", "jwt_secret", "mfa_code", "otp", "authorization"])
    def test_credentials_fully_masked(self, key):
        assert _redact(**{key: "Str0ng!Passw0rd"})[key] == "***"

    def test_identifiers_partially_masked(self):
        event = _redact(email="operator@example.com", refresh_token="abcdef0123456789")

        assert event["email"] == "op***om"
        assert event["refresh_token"] == "ab***89"

    def test_short_identifier(self):
        assert _redact(email="a@b")["email"] == "***"

    def test_other_fields_untouched(self):
        event = _redact(user_id="user-1", error_code="invalid_token", attempts=3, reused=True)

        assert event["user_id"] == "user-1"
        assert event["error_code"] == "invalid_token"
        assert event["attempts"] == 3
        assert event["event"] == "login_failed"


def test_correlation_id_added():
    reset = correlation_id_var.set("req-42")
    try:
        event = _add_correlation_id(None, "info", {"event": "x"})
    finally:
        correlation_id_var.reset(reset)

    assert event["correlation_id"] == "req-42"


def test_level_number():
    assert _level_number("debug") == 10
    assert _level_number("WARNING") == 30
    assert _level_number("chatty") == 20


def test_configure_applies_to_existing_loggers(capsys):
    logger = get_logger("sentinel_auth.tests")
    try:
        configure_logging("ERROR")
        logger.info("hidden_event")
        logger.error("shown_event", password="Str0ng!Passw0rd")
    finally:
        configure_logging()

    out = capsys.readouterr().out
    assert "hidden_event" not in out
    assert "shown_event" in out
    assert "Str0ng!Passw0rd" not in out


def test_reconfigure_keeps_structlog_usable():
    configure_logging("INFO", json_output=False)
    try:
        assert structlog.is_configured()
    finally:
        configure_logging()
