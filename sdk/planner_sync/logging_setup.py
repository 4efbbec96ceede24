"""
Logging setup for applications embedding the SDK.

The SDK itself only logs through module loggers (logging.getLogger(__name__))
with structured context in ``extra``. Applications call setup_logging() once
at startup to route those records.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import SyncSettings

SDK_LOGGER = "sdk.planner_sync"


def setup_logging(settings: SyncSettings, *, root: bool = True) -> logging.Handler:
    """Configure logging based on configuration.

    Args:
        settings: SDK settings (log_level, log_format)
        root: Install on the root logger; otherwise only on the SDK logger

    Returns:
        The installed handler
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    target = logging.getLogger() if root else logging.getLogger(SDK_LOGGER)
    target.setLevel(level)
    target.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return handler
