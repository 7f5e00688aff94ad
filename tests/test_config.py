"""
Tests for settings loading and validation.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tracker_orchestrator.config import (
    RateLimitConfig,
    Settings,
    SmartPollingConfig,
)


class TestSettings:
    """Test Settings defaults, environment loading and validators."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.log_level == "INFO"
        assert settings.log_format == "json"
        assert settings.control_store == "memory"
        assert settings.min_delay_between_requests == 3.0
        assert settings.minimum_request_spacing == 5.0
        assert settings.emergency_cooldown == 1800.0

    def test_from_environment(self):
        env = {
            "VENDOR_TOKEN": "abc",
            "CONTROL_STORE": "REDIS",
            "REDIS_URL": "redis://cache:6379/2",
            "MAX_REQUESTS_PER_MINUTE": "10",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings(_env_file=None)

        assert settings.vendor_token == "abc"
        assert settings.control_store == "redis"
        assert settings.max_requests_per_minute == 10
        assert settings.log_level == "DEBUG"

    def test_background_intervals_from_environment(self):
        env = {"HEALTH_LOG_INTERVAL": "45", "QUEUE_KICK_INTERVAL": "2.5"}
        with patch.dict(os.environ, env, clear=True):
            settings = Settings(_env_file=None)

        config = settings.request_manager_config
        assert config.health_log_interval == 45.0
        assert config.queue_kick_interval == 2.5

    @pytest.mark.parametrize(
        "field, value",
        [
            ("log_level", "VERBOSE"),
            ("log_format", "xml"),
            ("control_store", "dynamodb"),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_sub_configs(self, test_settings):
        assert test_settings.vendor_config.base_url == "https://vendor.test/openapi"
        assert test_settings.vendor_config.token == "test-token"
        assert test_settings.request_manager_config.max_requests_per_minute == 20
        assert test_settings.smart_polling_config.base_interval == 30.0
        assert test_settings.session_config.realtime_interval == 10.0
        assert test_settings.coordinator_config.cache_ttl == 60.0
        assert test_settings.server_config.debug is True

    def test_invalid_sub_config_surfaces(self):
        settings = Settings(
            _env_file=None, polling_min_interval=60.0, polling_base_interval=30.0
        )

        with pytest.raises(ValidationError):
            settings.smart_polling_config


class TestComponentConfigs:
    """Test component config bounds."""

    def test_rate_limit_bounds(self):
        with pytest.raises(ValidationError):
            RateLimitConfig(max_requests_per_minute=0)
        with pytest.raises(ValidationError):
            RateLimitConfig(base_backoff_delay=120.0, max_backoff_delay=60.0)

    def test_smart_polling_bounds(self):
        with pytest.raises(ValidationError):
            SmartPollingConfig(min_interval=40.0, base_interval=30.0)
        with pytest.raises(ValidationError):
            SmartPollingConfig(max_devices_per_batch=0)

        config = SmartPollingConfig(min_interval=30.0, base_interval=30.0, max_interval=30.0)
        assert config.base_interval == 30.0
