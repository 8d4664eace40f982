"""Utility helpers shared across pidwarden."""

from ._logging import create_null_logger, create_supervisor_logger

__all__ = ["create_null_logger", "create_supervisor_logger"]
