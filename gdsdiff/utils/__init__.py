"""
Utilities module for gdsdiff.

This module contains logging configuration shared by every pipeline stage.
"""

from .logger import get_logger, get_package_logger, setup_logger

__all__ = ["get_logger", "get_package_logger", "setup_logger"]
