"""Tests for observability utilities."""

import json
import logging
from enum import Enum

from helpers import LogRecorder
from wabridge.observability.alerts import ALERT_LOGGER_NAME, alert_credential_expired
from wabridge.observability.correlation import (
    correlation_scope,
    get_correlation_id,
    reset_correlation_id,
    resolve_correlation_id,
    set_correlation_id,
)
from wabridge.observability.logging import JsonFormatter, get_logger
from wabridge.observability.redaction import (
    hash_identifier,
    redact_string,
    redact_value,
    safe_log_context,
)


class _Color(str, Enum):
    RED = "red"


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_bare_whatsapp_number(self):
        assert "15551234567" not in redact_string("from 15551234567")

    def test_redact_email(self):
        result = redact_string("Email: user@example.com")
        assert "user@example.com" not in result

    def test_redact_bearer_token(self):
        result = redact_string("Authorization: Bearer EAAGm0PX4ZCpsBA")
        assert "EAAGm0PX4ZCpsBA" not in result

    def test_redact_openai_key(self):
        assert "sk-abcdefgh12345" not in redact_string("key sk-abcdefgh12345")

    def test_redact_graph_access_token(self):
        token = "EAAGm0PX4ZCpsBAabcdefghijklmnop"
        assert token not in redact_string(f"token={token}")

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"password": "secret123", "user": "john"})
        assert "secret123" not in result
        assert "password" in result

    def test_redact_value_list_only_len(self):
        assert redact_value(["a", "b", "c"]) == "list(len=3)"

    def test_redact_value_scalars(self):
        assert redact_value(None) == "null"
        assert redact_value(True) == "true"
        assert redact_value(42) == "42"

    def test_enum_logged_by_value(self):
        assert redact_value(_Color.RED) == "red"

    def test_safe_log_context(self):
        ctx = safe_log_context(phone="+5511999998888", count=42)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx["count"] == "42"

    def test_hash_identifier_is_stable_and_short(self):
        assert hash_identifier("15551234567") == hash_identifier("15551234567")
        assert hash_identifier("15551234567") != hash_identifier("15551234568")
        assert len(hash_identifier("15551234567")) == 12


class TestCorrelation:
    def test_scope_sets_and_restores(self):
        token = set_correlation_id("outer")
        try:
            with correlation_scope("inner") as cid:
                assert cid == "inner"
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        finally:
            reset_correlation_id(token)

    def test_scope_generates_when_missing(self):
        with correlation_scope(None) as cid:
            assert cid
            assert get_correlation_id() == cid

    def test_well_formed_header_kept(self):
        assert resolve_correlation_id("req-123_abc.1") == "req-123_abc.1"

    def test_unsafe_header_replaced(self):
        cid = resolve_correlation_id("bad value\n{\"x\": 1}")
        assert cid != "bad value\n{\"x\": 1}"
        assert " " not in cid

    def test_missing_header_generates(self):
        assert resolve_correlation_id(None)


class TestJsonFormatter:
    def test_includes_extra_fields_and_correlation(self):
        record = logging.LogRecord("wabridge.test", logging.INFO, __file__, 1, "hello", None, None)
        record.extra_fields = {"business_id": "1"}

        with correlation_scope("corr-1"):
            payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["correlationId"] == "corr-1"
        assert payload["business_id"] == "1"
        assert payload["service"] == "wabridge"

    def test_get_logger_single_handler(self):
        logger = get_logger("wabridge.test.single")
        get_logger("wabridge.test.single")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)


class TestAlerts:
    def test_credential_alert_is_critical(self, monkeypatch):
        recorder = LogRecorder()
        monkeypatch.setattr("wabridge.observability.alerts.alert_logger", recorder)

        alert_credential_expired(business_id=3, phone_number_id="123456789", operation="send_text")

        assert recorder.levels() == ["critical"]
        fields = recorder.extra_fields("critical")[0]
        assert fields["alert"] == "credential_expired"
        assert fields["business_id"] == "3"
        assert fields["phone_number_id"] == "123456789"

    def test_alert_logger_name(self):
        assert logging.getLogger(ALERT_LOGGER_NAME) is get_logger(ALERT_LOGGER_NAME)
