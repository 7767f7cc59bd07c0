"""Version information for gdsdiff."""

__version__ = "0.3.0"
