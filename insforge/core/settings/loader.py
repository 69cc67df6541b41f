"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the process.

Usage:
    from insforge.core.settings.loader import get_realtime_settings

    settings = get_realtime_settings()  # First call: loads and validates
    settings = get_realtime_settings()  # Subsequent calls: returns cached instance

Testing:
    In tests, clear the cache to force reload:
    get_realtime_settings.cache_clear()

    Or pass explicit instances:
    settings = RealtimeSettings(heartbeat_interval=0)
"""

from __future__ import annotations

from functools import lru_cache

from .client import ClientSettings
from .logs import LoggingSettings
from .realtime import RealtimeSettings


@lru_cache(maxsize=1)
def get_client_settings() -> ClientSettings:
    """Get cached client settings.

    Returns:
        Validated and frozen ClientSettings instance.
    """
    return ClientSettings()


@lru_cache(maxsize=1)
def get_realtime_settings() -> RealtimeSettings:
    """Get cached realtime settings.

    Returns:
        Validated and frozen RealtimeSettings instance.
    """
    return RealtimeSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings.

    Returns:
        Validated and frozen LoggingSettings instance.
    """
    return LoggingSettings()


def clear_all_caches() -> None:
    """Clear every cached settings instance."""
    get_client_settings.cache_clear()
    get_realtime_settings.cache_clear()
    get_logging_settings.cache_clear()
