"""Tests for log sanitization."""

from replywire.logging_config import mask_address, sanitize_secrets


class TestMaskAddress:

    def test_masks_to_last_four_digits(self):
        assert mask_address("15551230000@c.us") == "...0000"

    def test_plain_number(self):
        assert mask_address("15551234567") == "...4567"

    def test_empty(self):
        assert mask_address("") == ""


class TestSanitizeSecrets:
    """structlog processor behavior."""

    def test_hex_key_redacted(self):
        event = sanitize_secrets(None, "info", {"event": "x", "detail": "key=" + "ab" * 32})
        assert "ab" * 32 not in event["detail"]
        assert "***REDACTED***" in event["detail"]

    def test_addresses_masked(self):
        event = sanitize_secrets(None, "info", {"event": "sent to 15551230000@c.us"})
        assert event["event"] == "sent to ...0000@c.us"

    def test_phone_numbers_masked(self):
        event = sanitize_secrets(None, "info", {"event": "x", "phone": "+15551234567"})
        assert event["phone"] == "...4567"

    def test_nested_values_scrubbed(self):
        event = sanitize_secrets(None, "info", {
            "event": "x",
            "errors": ["send to 15551230000@c.us failed"],
            "context": {"to": "15551230000@c.us", "count": 2},
        })
        assert event["errors"] == ["send to ...0000@c.us failed"]
        assert event["context"] == {"to": "...0000@c.us", "count": 2}

    def test_non_string_values_untouched(self):
        event = sanitize_secrets(None, "info", {"event": "x", "attempts": 3, "ok": True})
        assert event["attempts"] == 3
        assert event["ok"] is True
