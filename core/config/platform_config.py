#!/usr/bin/env python3
"""Platform main configuration

Combines the infrastructure, logging and group-buy sub-configs.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .group_buy_config import GroupBuyConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"


@dataclass
class PlatformConfig:
    """Main platform configuration"""
    environment: str = "development"
    debug: bool = False

    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    group_buy: GroupBuyConfig = field(default_factory=GroupBuyConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> 'PlatformConfig':
        """Load platform config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "false")),
            infrastructure=InfraConfig.from_env(),
            logging=LoggingConfig.from_env(),
            group_buy=GroupBuyConfig.from_env(),
        )
