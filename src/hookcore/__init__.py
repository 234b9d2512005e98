"""Event-driven hook automation core."""

__version__ = "0.1.0"
