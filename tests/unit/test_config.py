"""Unit tests for configuration module."""

import pytest

from gmail_mirror.config import Settings, get_settings


class TestSettings:
    """Test suite for Settings class."""

    def test_default_settings(self) -> None:
        """Test that default settings are properly initialized."""
        settings = Settings(_env_file=None)

        assert settings.log_level == "INFO"
        assert settings.debug is False
        assert settings.max_retries == 3
        assert settings.sync_max_conversations == 1000
        assert settings.sync_interval_minutes == 30
        assert settings.post_send_sync_delay_seconds == 3.0
        assert settings.message_body_cache_ttl == 86400
        assert settings.message_body_fallback_cache_ttl == 3600
        assert settings.gmail_user_id == "me"

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test loading settings from environment variables."""
        monkeypatch.setenv("GMAIL_MIRROR_S3_BUCKET_NAME", "mail-archive")
        monkeypatch.setenv("GMAIL_MIRROR_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("GMAIL_MIRROR_SYNC_ENABLED", "false")
        monkeypatch.setenv("GMAIL_MIRROR_REDIS_URL", "redis://cache:6379/0")

        # Clear the cache to ensure fresh settings
        get_settings.cache_clear()

        settings = get_settings()

        assert settings.s3_bucket_name == "mail-archive"
        assert settings.log_level == "DEBUG"
        assert settings.sync_enabled is False
        assert settings.redis_url == "redis://cache:6379/0"

        # Clean up
        get_settings.cache_clear()

    def test_get_settings_returns_cached_instance(self) -> None:
        """Test that get_settings returns the same cached instance."""
        get_settings.cache_clear()

        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2

        # Clean up
        get_settings.cache_clear()
