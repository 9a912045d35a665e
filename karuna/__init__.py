"""Karuna proactive check-in service."""

__version__ = "0.1.0"
