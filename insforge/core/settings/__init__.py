"""Modular Pydantic Settings v2 configuration.

One frozen settings model per domain, each with its own environment prefix:
- ClientSettings (INSFORGE_): endpoint, anon key, HTTP transport
- RealtimeSettings (REALTIME_): socket, heartbeat, channel behavior
- LoggingSettings (LOG_): log level and format

Import settings via cached loaders:
    from insforge.core.settings import get_realtime_settings

Configuration precedence (highest to lowest):
    1. init kwargs (explicit constructor arguments, testing)
    2. Environment variables
    3. .env file
"""

from __future__ import annotations

from .client import ClientSettings
from .loader import (
    clear_all_caches,
    get_client_settings,
    get_logging_settings,
    get_realtime_settings,
)
from .logs import LoggingSettings
from .realtime import RealtimeSettings

__all__ = [
    "ClientSettings",
    "LoggingSettings",
    "RealtimeSettings",
    "clear_all_caches",
    "get_client_settings",
    "get_logging_settings",
    "get_realtime_settings",
]
