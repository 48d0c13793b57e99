"""Version information for termrelay."""

__version__ = "0.3.0"
