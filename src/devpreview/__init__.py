"""Local development-server supervisor."""

__version__ = "0.1.0"
