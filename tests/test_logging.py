"""
Tests for structured logging helpers.
"""

import structlog

from ava_api.observability.logging import (
    add_app_context,
    log_context,
    redact_secrets,
    token_fingerprint,
)


class TestRedactSecrets:
    def test_masks_credentials(self):
        event = redact_secrets(
            None,
            "info",
            {"event": "login_failed", "password": "hunter2", "refresh_token": "eyJ.abc.def"},
        )

        assert event["password"] == "[REDACTED]"
        assert event["refresh_token"] == "[REDACTED]"
        assert event["event"] == "login_failed"

    def test_leaves_other_keys(self):
        event = redact_secrets(None, "info", {"event": "token_refreshed", "user_id": "u-1"})

        assert event == {"event": "token_refreshed", "user_id": "u-1"}


class TestAppContext:
    def test_adds_service_fields(self):
        event = add_app_context(None, "info", {"event": "application_starting"})

        assert event["service"]
        assert event["environment"] == "development"


class TestTokenFingerprint:
    def test_prefix_only(self):
        assert token_fingerprint("0b7c1c2e-4a5f-4d3e-9c1b-2f8e7d6c5b4a") == "0b7c1c2e"


class TestLogContext:
    def test_binds_and_unbinds(self):
        with log_context(request_id="req-123"):
            assert structlog.contextvars.get_contextvars()["request_id"] == "req-123"

        assert "request_id" not in structlog.contextvars.get_contextvars()
