"""
Application settings and configuration.

This module centralizes the environment-driven settings of the pipeline:
where downloaded datasets are cached, how long a download may block and how
verbose logging is. Values can be overridden through environment variables
or a local ``.env`` file.
"""

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import find_dotenv, load_dotenv


class Settings:
    """
    Application settings with environment variable support.

    All variables use the ``GDSDIFF_`` prefix so they can be set in
    containers or CI without clashing with other tools.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv(find_dotenv(usecwd=True))

        # Dataset cache (owned by the loader)
        self.CACHE_DIR = Path(
            os.environ.get(
                "GDSDIFF_CACHE_DIR", str(Path.home() / ".gdsdiff" / "cache")
            )
        ).expanduser()

        # Network
        self.DOWNLOAD_TIMEOUT = float(os.environ.get("GDSDIFF_DOWNLOAD_TIMEOUT", "300"))

        # Logging settings
        self.LOG_LEVEL = os.environ.get("GDSDIFF_LOG_LEVEL", "INFO").upper()

        # Analysis defaults
        self.MIN_SAMPLES = int(os.environ.get("GDSDIFF_MIN_SAMPLES", "3"))
        self.P_VALUE_THRESHOLD = float(
            os.environ.get("GDSDIFF_P_VALUE_THRESHOLD", "0.01")
        )
        self.LFC_THRESHOLD = float(os.environ.get("GDSDIFF_LFC_THRESHOLD", "1.0"))

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All settings
        """
        settings_dict = {}
        for attr in dir(self):
            if not attr.startswith("_") and not callable(getattr(self, attr)):
                settings_dict[attr] = getattr(self, attr)
        return settings_dict


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
