"""Tests for application configuration."""

import pytest

from metering.config import Settings, settings


class TestSettings:
    """Tests for the Settings class and module-level settings instance."""

    def test_default_database_url(self):
        """Default DATABASE_URL should be a local SQLite file."""
        assert settings.DATABASE_URL == "sqlite:///./metering.db"

    def test_default_app_name(self):
        assert settings.APP_NAME == "Usage Metering Service"

    def test_default_quota_limits(self):
        """Free and anonymous visitors get 3 generations, paid users 25."""
        assert settings.FREE_TIER_MONTHLY_LIMIT == 3
        assert settings.PAID_TIER_MONTHLY_LIMIT == 25
        assert settings.ANONYMOUS_GENERATION_LIMIT == 3

    def test_default_reset_policy(self):
        assert settings.QUOTA_RESET_POLICY == "calendar_month"

    def test_session_defaults(self):
        assert settings.SESSION_IDLE_TIMEOUT_MINUTES == 30
        assert settings.MAX_EVENTS_PER_BATCH == 100
        assert settings.SESSION_COOKIE_NAME == "anonymous_session"
        assert settings.SESSION_COOKIE_MAX_AGE_SECONDS == 30 * 24 * 60 * 60

    def test_scheduler_disabled_by_default(self):
        assert settings.ENABLE_SCHEDULER is False

    def test_settings_is_instance_of_settings_class(self):
        """Module-level settings should be an instance of Settings."""
        assert isinstance(settings, Settings)


class TestTierLimit:
    """Tests for Settings.tier_limit."""

    def test_free_tier(self):
        assert settings.tier_limit("free") == settings.FREE_TIER_MONTHLY_LIMIT

    def test_paid_tier(self):
        assert settings.tier_limit("paid") == settings.PAID_TIER_MONTHLY_LIMIT

    def test_unknown_tier_raises(self):
        with pytest.raises(ValueError, match="Unknown subscription tier"):
            settings.tier_limit("enterprise")

    def test_env_override(self, monkeypatch):
        """Limits can be overridden from the environment."""
        monkeypatch.setenv("PAID_TIER_MONTHLY_LIMIT", "50")
        assert Settings().tier_limit("paid") == 50

    def test_invalid_reset_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("QUOTA_RESET_POLICY", "weekly")
        with pytest.raises(ValueError):
            Settings()
