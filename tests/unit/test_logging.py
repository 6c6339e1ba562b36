"""
Unit tests for the structlog processors.
"""

from syncengine.utils.logging import add_intuit_env, redact_secrets


class TestProcessors:
    def test_tokens_masked(self):
        event = redact_secrets(
            None,
            "info",
            {"event": "token_refreshed", "access_token": "eyJhbGciOi", "account_id": "a1"},
        )

        assert event["access_token"] == "eyJh***"
        assert event["account_id"] == "a1"

    def test_empty_values_left_alone(self):
        event = redact_secrets(None, "info", {"event": "x", "refresh_token": None})
        assert event["refresh_token"] is None

    def test_intuit_env_stamped(self):
        event = add_intuit_env(None, "info", {"event": "x"})
        assert event["intuit_env"] == "sandbox"

    def test_explicit_env_kept(self):
        event = add_intuit_env(None, "info", {"event": "x", "intuit_env": "production"})
        assert event["intuit_env"] == "production"
