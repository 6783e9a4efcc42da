"""
Process-level setup for applications embedding the shared store.

Usage:
    from palletdesk.sharedstore.main import setup_logging
    config = SharedStoreConfig.from_env()
    setup_logging(config)
    config.log_config()

Configuration is entirely via environment variables.
See config.py for all available settings.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import SharedStoreConfig

logger = logging.getLogger(__name__)


def setup_logging(config: SharedStoreConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Shared store configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Executor threads log through asyncio on slow shares
    logging.getLogger("asyncio").setLevel(logging.WARNING)
