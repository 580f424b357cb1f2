"""
Centralized Configuration Manager

Per-service configuration resolved from environment variables on top of the
platform settings loaded by core.config.

Usage:
    from core.config_manager import ConfigManager

    config_manager = ConfigManager("group_buy_service")
    config = config_manager.get_service_config()
    host, port = config_manager.discover_service(
        service_name="postgres_service",
        default_host="localhost",
        default_port=5432,
        env_host_key="POSTGRES_HOST",
        env_port_key="POSTGRES_PORT",
    )
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.config import PlatformConfig, get_settings

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        aliases = {"dev": cls.DEVELOPMENT, "test": cls.TESTING, "prod": cls.PRODUCTION}
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return cls.DEVELOPMENT


@dataclass
class ServiceConfig:
    """Resolved configuration for a single service"""
    service_name: str
    service_host: str = "0.0.0.0"
    service_port: int = 0
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"
    extra: Dict[str, Any] = field(default_factory=dict)


class ConfigManager:
    """Configuration access for one service"""

    def __init__(self, service_name: str, settings: Optional[PlatformConfig] = None):
        self.service_name = service_name
        self.settings = settings or get_settings()
        self._prefix = service_name.upper()
        self._service_config: Optional[ServiceConfig] = None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Read a raw value, preferring the service-prefixed variable"""
        return os.getenv(f"{self._prefix}_{key}") or os.getenv(key, default)

    def get_service_config(self) -> ServiceConfig:
        if self._service_config is None:
            port = self.get("PORT") or os.getenv("SERVICE_PORT", "0")
            self._service_config = ServiceConfig(
                service_name=self.service_name,
                service_host=self.get("HOST", "0.0.0.0"),
                service_port=int(port),
                environment=Environment.parse(self.settings.environment),
                debug=self.settings.debug,
                log_level=self.settings.logging.log_level,
            )
        return self._service_config

    def discover_service(
        self,
        service_name: str,
        default_host: str,
        default_port: int,
        env_host_key: Optional[str] = None,
        env_port_key: Optional[str] = None,
    ) -> Tuple[str, int]:
        """
        Resolve a dependency endpoint.

        Priority: explicit environment variables, then defaults.
        """
        host = os.getenv(env_host_key) if env_host_key else None
        port = os.getenv(env_port_key) if env_port_key else None

        resolved_host = host or default_host
        resolved_port = int(port) if port else default_port
        logger.debug(f"Resolved {service_name} -> {resolved_host}:{resolved_port}")
        return resolved_host, resolved_port

    def get_service_endpoint(self, url_env_key: str, default_url: str) -> str:
        """Base URL of a peer HTTP service"""
        return os.getenv(url_env_key, default_url).rstrip("/")

    def print_config_summary(self, show_secrets: bool = False) -> None:
        config = self.get_service_config()
        infra = self.settings.infrastructure
        password = infra.postgres_password if show_secrets else "***"
        lines = [
            f"=== {self.service_name} configuration ===",
            f"environment: {config.environment.value}",
            f"port: {config.service_port}",
            f"log_level: {config.log_level}",
            f"postgres: {infra.postgres_user}:{password}@{infra.postgres_host}:{infra.postgres_port}/{infra.postgres_db}",
            f"nats: {infra.resolved_nats_url} (enabled={infra.nats_enabled})",
            f"grace_period_hours: {self.settings.group_buy.grace_period_hours}",
            f"retry_batch_size: {self.settings.group_buy.retry_batch_size}",
        ]
        for line in lines:
            logger.info(line)


def create_config(service_name: str) -> ConfigManager:
    return ConfigManager(service_name)
