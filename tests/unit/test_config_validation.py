#  Generation Broker - Config Validation Tests
#
#  Tests for validate_config() startup checks.
#
#  Depends on: broker/config.py
#  Used by:    pytest

import logging
from unittest.mock import patch

import pytest

from broker.config import ConfigError, cfg, validate_config

_GOOD_SECRET = "a" * 32


class TestValidateConfig:
    def test_raises_on_empty_secret(self):
        with patch("broker.config.AUTH_SECRET_KEY", ""):
            with pytest.raises(ConfigError, match="missing or too short"):
                validate_config()

    def test_raises_on_short_secret(self):
        with patch("broker.config.AUTH_SECRET_KEY", "tooshort"):
            with pytest.raises(ConfigError, match="missing or too short"):
                validate_config()

    def test_passes_with_valid_secret(self):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.JIEKOU_API_KEY", "vendor-key"):
            validate_config()

    def test_warns_on_missing_vendor_key(self, caplog):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.JIEKOU_API_KEY", ""):
            with caplog.at_level(logging.WARNING):
                validate_config()
            assert "JIEKOU_API is not set" in caplog.text

    def test_raises_on_bad_port(self):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.PORT", 70000):
            with pytest.raises(ConfigError, match="server.port"):
                validate_config()

    @pytest.mark.parametrize("name", ["POLL_INTERVAL", "SUPERVISOR_TICK_INTERVAL", "VENDOR_TIMEOUT"])
    def test_raises_on_non_positive_timing(self, name):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch(f"broker.config.{name}", 0):
            with pytest.raises(ConfigError, match="must be > 0"):
                validate_config()

    def test_raises_on_zero_concurrency(self):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.MAX_CONCURRENT_TASKS", 0):
            with pytest.raises(ConfigError, match="max_concurrent_tasks"):
                validate_config()

    def test_raises_on_negative_retry_budget(self):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.SUPERVISOR_MAX_RETRIES", -1):
            with pytest.raises(ConfigError, match="polling.max_retries"):
                validate_config()

    def test_raises_on_partial_oss_credentials(self):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.OSS_ENDPOINT", "https://oss.example.com"), \
             patch("broker.config.OSS_BUCKET", ""):
            with pytest.raises(ConfigError, match="partially configured"):
                validate_config()

    def test_raises_on_invalid_cors_origin(self):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.CORS_ORIGINS", ["not-a-url"]):
            with pytest.raises(ConfigError, match="CORS origin must start with"):
                validate_config()

    def test_warns_on_cors_wildcard(self, caplog):
        with patch("broker.config.AUTH_SECRET_KEY", _GOOD_SECRET), \
             patch("broker.config.CORS_ORIGINS", ["*"]):
            with caplog.at_level(logging.WARNING):
                validate_config()
            assert "allows all origins" in caplog.text


class TestCfg:
    def test_missing_path_returns_default(self):
        assert cfg("no.such.key", "fallback") == "fallback"

    def test_dot_path_lookup(self):
        with patch("broker.config._config", {"execution": {"max_retries": 7}}):
            assert cfg("execution.max_retries") == 7
