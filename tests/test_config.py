"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from taptab.config import Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    """Environment variable mapping."""

    def test_env_values_are_read(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "e" * 40)
        monkeypatch.setenv("OTP_TTL_SECONDS", "120")
        monkeypatch.setenv("REMEMBER_ME_FACTOR", "10")
        monkeypatch.setenv("USE_MEMORY_STORE", "true")

        settings = Settings.from_env()

        assert settings.jwt_secret == "e" * 40
        assert settings.otp_ttl_seconds == 120
        assert settings.remember_me_factor == 10
        assert settings.use_memory_store is True

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "3")
        reset_settings_cache()
        assert get_settings().otp_max_attempts == 3

    def test_defaults(self):
        settings = Settings(jwt_secret="d" * 32)

        assert settings.access_token_ttl_minutes == 24 * 60
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.remember_me_factor == 30
        assert settings.otp_ttl_seconds == 300
        assert settings.otp_max_attempts == 5
        assert settings.otp_code_length == 6
        assert settings.cron_secret is None


class TestSettingsValidation:
    """Rejected configurations."""

    def test_secret_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False)

    def test_secret_generated_in_test_mode(self):
        settings = Settings(test_mode=True)
        assert len(settings.jwt_secret) >= 32

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    @pytest.mark.parametrize(
        "field, value",
        [
            ("otp_ttl_seconds", 0),
            ("otp_max_attempts", -1),
            ("access_token_ttl_minutes", 0),
            ("otp_code_length", 3),
            ("otp_code_length", 11),
            ("token_clock_skew_seconds", -5),
        ],
    )
    def test_out_of_range_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="v" * 32, **{field: value})

    def test_otp_secret_falls_back_to_jwt_secret(self):
        assert Settings(jwt_secret="j" * 32).effective_otp_secret == "j" * 32
        assert Settings(jwt_secret="j" * 32, otp_secret="o" * 32).effective_otp_secret == "o" * 32
