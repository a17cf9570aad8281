"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from scripts.lib.errors import ConfigError
from scripts.lib.settings import DEFAULT_BASE_URL, PROJECT_ROOT, Settings


class TestFromEnv:
    def test_missing_api_key(self):
        with pytest.raises(ConfigError, match="GHL_API_KEY"):
            Settings.from_env({})

    def test_defaults(self):
        settings = Settings.from_env({"GHL_API_KEY": "agency"})
        assert settings.base_url == DEFAULT_BASE_URL
        assert settings.strategy == "tag"
        assert settings.pipeline_whitelist == ("youth", "adult", "leagues")
        assert settings.cache_ttl_seconds == 120.0
        assert settings.credentials_csv == PROJECT_ROOT / "secrets" / "api_keys.csv"
        assert settings.require_date_range is False

    def test_overrides(self):
        settings = Settings.from_env({
            "GHL_API_KEY": "agency",
            "GHL_BASE_URL": "https://example.test/",
            "CLASSIFICATION_STRATEGY": "Stage",
            "PIPELINE_WHITELIST": "Adult, Leagues",
            "STATS_CACHE_TTL": "0",
            "CREDENTIALS_CSV": "/etc/stats/keys.csv",
            "REQUIRE_DATE_RANGE": "true",
            "CORS_ORIGINS": "https://a.test, https://b.test",
        })
        assert settings.base_url == "https://example.test"
        assert settings.strategy == "stage"
        assert settings.pipeline_whitelist == ("adult", "leagues")
        assert settings.cache_ttl_seconds == 0
        assert settings.credentials_csv == Path("/etc/stats/keys.csv")
        assert settings.require_date_range is True
        assert settings.cors_origins == ("https://a.test", "https://b.test")

    def test_invalid_strategy(self):
        with pytest.raises(ConfigError, match="CLASSIFICATION_STRATEGY"):
            Settings.from_env({"GHL_API_KEY": "agency", "CLASSIFICATION_STRATEGY": "pipeline"})

    @pytest.mark.parametrize("key,value", [
        ("GHL_PAGE_SIZE", "lots"),
        ("GHL_PAGE_SIZE", "0"),
        ("STATS_CACHE_TTL", "-5"),
    ])
    def test_invalid_numbers(self, key, value):
        with pytest.raises(ConfigError, match=key):
            Settings.from_env({"GHL_API_KEY": "agency", key: value})
