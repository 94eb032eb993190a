from __future__ import annotations

from parkshare._redact import redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "userId": "123",
        "authorization": "Bearer abc",
        "api_key": "k",
        "X-Api-Key": "k2",
        "password": "pw",
        "nested": {"secret": "s", "spotId": "spot-1"},
        "items": [{"token": "t"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["userId"] == "123"
    assert redacted["authorization"] == "<redacted>"
    assert redacted["api_key"] == "<redacted>"
    assert redacted["X-Api-Key"] == "<redacted>"
    assert redacted["password"] == "<redacted>"
    assert redacted["nested"] == {"secret": "<redacted>", "spotId": "spot-1"}
    assert redacted["items"] == [{"token": "<redacted>"}]
    # The input is left untouched.
    assert payload["password"] == "pw"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_summarises_bytes() -> None:
    assert redact_for_log(b"\x00\x01\x02") == "<bytes:3b>"
