"""
Logging configuration for the application.

This module sets up consistent logging across all components of the pipeline,
making it easier to follow each stage of a run and debug failures.

The level is held by the ``gdsdiff`` package logger only; module loggers stay
at NOTSET and inherit it, so one ``setLevel`` call (from settings or the CLI)
controls every stage.
"""

import logging
import sys
from typing import Optional

from rich.logging import RichHandler

from gdsdiff.config.settings import get_settings

PACKAGE_LOGGER = "gdsdiff"


def _default_level() -> int:
    """Resolve the default level from ``Settings.LOG_LEVEL`` (falls back to INFO)."""
    return getattr(logging, get_settings().LOG_LEVEL, logging.INFO)


def get_package_logger() -> logging.Logger:
    """Return the ``gdsdiff`` logger, seeding its level from settings once."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if package_logger.level == logging.NOTSET:
        package_logger.setLevel(_default_level())
    return package_logger


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       We detect this and let logs propagate to root (single output).
    2. Direct usage: No RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Explicit level for this logger only (default: inherit from
            the ``gdsdiff`` package logger)

    Returns:
        logging.Logger: Configured logger instance
    """
    get_package_logger()
    logger = logging.getLogger(name)

    # Only configure if it hasn't been configured yet
    if not logger.handlers:
        if level is not None:
            logger.setLevel(level)

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            # Direct usage (tests, scripts, notebooks): add our own handler
            # and stop propagation so root's basicConfig does not repeat it
            handler = logging.StreamHandler(sys.stdout)
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)
