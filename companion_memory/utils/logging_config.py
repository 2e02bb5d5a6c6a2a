"""
Centralized logging configuration for the memory subsystem.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

# Chatty client libraries, kept at WARNING unless LOG_LEVEL is DEBUG
LIBRARY_LOGGERS = ('boto3', 'botocore', 'urllib3', 'opensearch')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _level(config: AppConfig) -> int:
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Over the stdio MCP transport stdout carries the protocol, so records go to
    stderr there.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    stream = sys.stderr if config.mcp.transport == 'stdio' else sys.stdout
    level = _level(config)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler(stream)])

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """Logger for a companion_memory module, at the configured level."""
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger
