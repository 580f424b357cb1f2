#!/usr/bin/env python3
"""Logging configuration"""
import os
from dataclasses import dataclass, field
from typing import Dict

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _bool(val: str) -> bool:
    return val.lower() == "true"


def _module_levels(val: str) -> Dict[str, str]:
    """Parse "module=LEVEL,module=LEVEL" overrides, skipping malformed pairs"""
    levels = {}
    for pair in (val or "").split(","):
        name, sep, level = pair.partition("=")
        if sep and name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


@dataclass
class LoggingConfig:
    """Logging configuration"""
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT
    log_file: str = ""
    enable_console: bool = True

    # Per-module overrides, e.g. the reconciliation job at DEBUG
    module_levels: Dict[str, str] = field(default_factory=dict)

    # Service identity for logging
    service_name: str = "group_buy_service"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        """Load logging config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO"),
            log_format=os.getenv("LOG_FORMAT", DEFAULT_LOG_FORMAT),
            log_file=os.getenv("LOG_FILE", ""),
            enable_console=_bool(os.getenv("LOG_CONSOLE", "true")),
            module_levels=_module_levels(os.getenv("LOG_MODULE_LEVELS", "")),
            service_name=os.getenv("SERVICE_NAME", "group_buy_service"),
            environment=env,
        )
