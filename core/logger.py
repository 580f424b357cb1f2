"""
Service logger setup

Configures the root handlers once per process from LoggingConfig and hands
back a named logger for the calling service.
"""

import logging
import sys
from typing import Optional

from core.config import get_settings

_configured = False


def _configure_root(level: str, fmt: str, log_file: str, enable_console: bool) -> None:
    global _configured
    root = logging.getLogger()
    root.setLevel(level)

    formatter = logging.Formatter(fmt)
    if enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    _configured = True


def setup_service_logger(service_name: str, level: Optional[str] = None) -> logging.Logger:
    """Return the logger for a service, configuring handlers on first use"""
    log_config = get_settings().logging
    resolved_level = (level or log_config.log_level).upper()

    if not _configured:
        _configure_root(
            level=resolved_level,
            fmt=log_config.log_format,
            log_file=log_config.log_file,
            enable_console=log_config.enable_console,
        )

    logger = logging.getLogger(service_name)
    logger.setLevel(resolved_level)

    for module_name, module_level in log_config.module_levels.items():
        logging.getLogger(module_name).setLevel(module_level)

    return logger
