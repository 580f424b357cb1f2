"""
Unit Tests for Group Buy Configuration
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import GroupBuyConfig, LoggingConfig, PlatformConfig
from core.config_manager import ConfigManager


@pytest.mark.unit
class TestGroupBuyConfig:

    def test_defaults(self, monkeypatch):
        for key in ("GROUP_BUY_GRACE_PERIOD_HOURS", "GROUP_BUY_RETRY_BATCH_SIZE", "ORGANIZATION_SERVICE_URL"):
            monkeypatch.delenv(key, raising=False)

        config = GroupBuyConfig.from_env()

        assert config.grace_period_hours == 48
        assert config.retry_batch_size == 500
        assert config.organization_service_url == "http://localhost:8212"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GROUP_BUY_GRACE_PERIOD_HOURS", "24")
        monkeypatch.setenv("GROUP_BUY_RETRY_BATCH_SIZE", "100")

        config = GroupBuyConfig.from_env()

        assert config.grace_period_hours == 24
        assert config.retry_batch_size == 100

    def test_malformed_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("GROUP_BUY_GRACE_PERIOD_HOURS", "two days")

        assert GroupBuyConfig.from_env().grace_period_hours == 48

    def test_platform_config_carries_policy(self, monkeypatch):
        monkeypatch.setenv("GROUP_BUY_GRACE_PERIOD_HOURS", "12")

        assert PlatformConfig.from_env().group_buy.grace_period_hours == 12


@pytest.mark.unit
class TestConfigManager:

    def test_service_prefixed_variable_wins(self, monkeypatch):
        monkeypatch.setenv("GROUP_BUY_SERVICE_PORT", "9100")
        monkeypatch.setenv("SERVICE_PORT", "9000")

        config = ConfigManager("group_buy_service", PlatformConfig()).get_service_config()

        assert config.service_port == 9100

    def test_service_endpoint_strips_trailing_slash(self, monkeypatch):
        monkeypatch.setenv("ORGANIZATION_SERVICE_URL", "http://organization:8212/")

        endpoint = ConfigManager("group_buy_service", PlatformConfig()).get_service_endpoint(
            "ORGANIZATION_SERVICE_URL", "http://localhost:8212"
        )

        assert endpoint == "http://organization:8212"

    def test_discover_service_defaults(self, monkeypatch):
        monkeypatch.delenv("POSTGRES_HOST", raising=False)
        monkeypatch.delenv("POSTGRES_PORT", raising=False)

        host, port = ConfigManager("group_buy_service", PlatformConfig()).discover_service(
            service_name="postgres",
            default_host="localhost",
            default_port=5432,
            env_host_key="POSTGRES_HOST",
            env_port_key="POSTGRES_PORT",
        )

        assert (host, port) == ("localhost", 5432)


@pytest.mark.unit
class TestLoggingConfig:

    def test_module_level_overrides(self, monkeypatch):
        monkeypatch.setenv(
            "LOG_MODULE_LEVELS",
            "microservices.group_buy_service.retry_reconciliation=debug, core.nats_client=WARNING",
        )

        config = LoggingConfig.from_env()

        assert config.module_levels == {
            "microservices.group_buy_service.retry_reconciliation": "DEBUG",
            "core.nats_client": "WARNING",
        }

    def test_malformed_overrides_skipped(self, monkeypatch):
        monkeypatch.setenv("LOG_MODULE_LEVELS", "no_level,=INFO,core.postgres_client=")

        assert LoggingConfig.from_env().module_levels == {}

    def test_production_default_level(self, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.delenv("ENV", raising=False)
        monkeypatch.setenv("ENVIRONMENT", "production")

        assert LoggingConfig.from_env().log_level == "INFO"
