"""Structured logging helpers for applications embedding the SDK."""

from insforge.infra.logging.config import configure_logging
from insforge.infra.logging.formatters import JSONFormatter

__all__ = [
    "JSONFormatter",
    "configure_logging",
]
