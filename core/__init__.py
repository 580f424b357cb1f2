#!/usr/bin/env python3
"""
Core Module for Microservices Architecture

Shared infrastructure components for the services in this repository.

COMPONENTS:
    - config/: Environment-driven configuration (infra, logging, group-buy policy)
    - config_manager.py: Per-service configuration and endpoint discovery
    - logger.py: Service logger setup
    - postgres_client.py: asyncpg pool with task-scoped transactions
    - nats_client.py: NATS JetStream event bus

USAGE:
    from core.config_manager import ConfigManager

    config = ConfigManager("group_buy_service")
"""

from .config_manager import ConfigManager, Environment, ServiceConfig, create_config

__all__ = [
    "ConfigManager",
    "Environment",
    "ServiceConfig",
    "create_config",
]

__version__ = "2.0.0"
