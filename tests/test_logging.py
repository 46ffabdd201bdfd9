"""Tests for the credential redaction log processor and request log context."""

import structlog

from sessionward.logging import _redact_credentials, get_correlation_id, set_correlation_id


class TestRedaction:
    def test_passwords_and_hashes_fully_redacted(self):
        event = _redact_credentials(
            None,
            "info",
            {"event": "x", "password": "S3cret!", "password_hash": "$argon2id$abc"},
        )

        assert event["password"] == "[REDACTED]"
        assert event["password_hash"] == "[REDACTED]"

    def test_tokens_partially_masked(self):
        event = _redact_credentials(
            None, "info", {"event": "x", "refresh_token": "eyJhbGciOi.payload.sig"}
        )

        assert event["refresh_token"] == "ey***ig"

    def test_nested_values_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {"event": "x", "body": {"new_password": "N3wPass!", "handle": "alice"}},
        )

        assert event["body"] == {"new_password": "[REDACTED]", "handle": "alice"}

    def test_unrelated_keys_untouched(self):
        event = _redact_credentials(None, "info", {"event": "login_succeeded", "user_id": "u1"})

        assert event == {"event": "login_succeeded", "user_id": "u1"}


class TestCorrelationId:
    def test_bound_into_log_context(self):
        set_correlation_id("req-1")

        assert get_correlation_id() == "req-1"
        assert structlog.contextvars.get_contextvars() == {"correlation_id": "req-1"}

    def test_new_request_replaces_previous_context(self):
        set_correlation_id("req-1")
        structlog.contextvars.bind_contextvars(user_id="u1")

        generated = set_correlation_id()

        assert generated != "req-1"
        assert structlog.contextvars.get_contextvars() == {"correlation_id": generated}
