"""Tests for log redaction and correlation ids."""
from otpauth.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    mask_value,
    set_correlation_id,
)


def test_otp_code_is_fully_masked():
    event = _redact_pii(None, "info", {"event": "otp_issued", "otp_code": "AB12CD"})

    assert event["otp_code"] == "***"
    assert event["event"] == "otp_issued"


def test_long_values_keep_edges():
    event = _redact_pii(
        None,
        "info",
        {"phone_number": "+15551234567", "session_token": "a" * 30 + "zz", "user_id": 4},
    )

    assert event["phone_number"] == "+1***67"
    assert event["session_token"] == "aa***zz"
    assert event["user_id"] == 4


def test_error_code_is_not_redacted():
    event = _redact_pii(None, "warning", {"error_code": "invalid_code"})

    assert event["error_code"] == "invalid_code"


def test_mask_value_short():
    assert mask_value("") == "***"


def test_correlation_id_added():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})
        cid = set_correlation_id()
        assert _add_correlation_id(None, "info", {})["correlation_id"] == cid
    finally:
        correlation_id_var.reset(token)
