"""Tests for environment-driven settings and log hygiene helpers."""

import pytest
from pydantic import ValidationError

from travelauth.config import Settings, get_settings, reset_settings_cache
from travelauth.logging import _redact_credentials, hash_for_log, sanitize_error_message


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.session_ttl_minutes == 60
        assert settings.remember_me_session_ttl_minutes == 30 * 24 * 60
        assert settings.reset_token_ttl_minutes == 60
        assert settings.clock_skew_seconds == 30
        assert settings.login_rate_limit == 5
        assert settings.login_rate_limit_window_seconds == 900
        assert settings.count_successful_logins is False
        assert settings.email_verification_ttl_minutes == 24 * 60
        assert settings.refresh_rate_limit == 30

    def test_test_mode_description_matches_behaviour(self):
        description = Settings.model_fields["test_mode"].description

        assert "hashing" not in description
        assert "in-memory fallbacks" in description

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "7")
        monkeypatch.setenv("ROTATE_SESSION_ON_REFRESH", "true")
        monkeypatch.setenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "1.5")

        settings = Settings.from_env()

        assert settings.login_rate_limit == 7
        assert settings.rotate_session_on_refresh is True
        assert settings.external_call_timeout_seconds == 1.5

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("MAX_SESSIONS_PER_USER", "9")
        reset_settings_cache()
        assert get_settings().max_sessions_per_user == 9
        reset_settings_cache()

    @pytest.mark.parametrize(
        "field",
        [
            "access_token_ttl_minutes",
            "session_ttl_minutes",
            "reset_token_ttl_minutes",
            "email_verification_ttl_minutes",
            "login_rate_limit",
            "refresh_rate_limit",
            "verification_request_rate_limit_window_seconds",
            "login_rate_limit_window_seconds",
            "api_rate_limit_free",
        ],
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_negative_clock_skew_rejected(self):
        with pytest.raises(ValidationError):
            Settings(clock_skew_seconds=-1)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(external_call_timeout_seconds=0)


class TestLogHygiene:
    def test_hash_for_log_is_stable_and_opaque(self):
        digest = hash_for_log("alice@example.com")

        assert digest == hash_for_log("alice@example.com")
        assert "alice" not in digest
        assert hash_for_log(None) is None

    def test_sanitize_strips_credentials(self):
        message = sanitize_error_message("auth failed password=hunter2 for user")

        assert "hunter2" not in message

    def test_sanitize_strips_paths(self):
        message = sanitize_error_message("cannot open /var/lib/redis/dump.rdb")

        assert "/var/lib" not in message

    def test_sanitize_handles_empty(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_sanitize_truncates(self):
        assert len(sanitize_error_message("x" * 2000)) == 500

    def test_sanitize_strips_connection_credentials(self):
        message = sanitize_error_message("Error connecting to redis://:s3cret@cache:6379/0")

        assert "s3cret" not in message

    def test_redaction_processor_drops_credentials(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2",
                "refresh_token": "eyJhbGciOi",
                "token_type": "refresh",
                "email": "alice@example.com",
                "email_hash": "abc123",
                "user_id": "u-1",
            },
        )

        assert event["password"] == "[redacted]"
        assert event["refresh_token"] == "[redacted]"
        assert event["token_type"] == "refresh"
        assert event["email"] == "a***@example.com"
        assert event["email_hash"] == "abc123"
        assert event["user_id"] == "u-1"
