"""Utility modules for logging, request tracing, and common helpers."""

from syncengine.utils.logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
