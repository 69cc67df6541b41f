"""Logging configuration setup.

The SDK only ever logs through ``logging.getLogger(__name__)`` and never
touches the root logger on import. Applications that want the SDK's
structured output call ``configure_logging`` once at startup:

    from insforge.core.settings import get_logging_settings
    from insforge.infra.logging import configure_logging

    configure_logging(**get_logging_settings().to_logging_kwargs())
"""

from __future__ import annotations

import logging
import logging.config
from typing import Any

LOGGER_NAME = "insforge"


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    service_name: str = "insforge",
    console_enabled: bool = True,
) -> None:
    """Configure the ``insforge`` logger hierarchy with dictConfig.

    Args:
        log_level: Level for the ``insforge`` logger.
        json_logs: Emit JSON Lines when True, plain text otherwise.
        service_name: Static ``service`` field added to JSON records.
        console_enabled: Attach a stderr handler.

    Example:
        configure_logging(log_level="DEBUG", json_logs=False)
    """
    formatter_name = "json" if json_logs else "text"
    handlers: dict[str, Any] = {}
    if console_enabled:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": formatter_name,
            "stream": "ext://sys.stderr",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": _build_formatters_config(json_logs, service_name),
            "handlers": handlers,
            "loggers": {
                LOGGER_NAME: {
                    "level": log_level,
                    "handlers": list(handlers),
                    "propagate": not handlers,
                },
            },
        }
    )

    logging.getLogger(__name__).debug(
        "Logging configured",
        extra={"log_level": log_level, "json_logs": json_logs},
    )


def _build_formatters_config(json_logs: bool, service_name: str) -> dict[str, Any]:
    """Build formatters configuration for dictConfig."""
    if json_logs:
        return {
            "json": {
                "()": "insforge.infra.logging.formatters.JSONFormatter",
                "fmt_keys": {
                    "level": "levelname",
                    "logger": "name",
                    "message": "message",
                },
                "static": {"service": service_name},
            }
        }
    return {
        "text": {
            "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        }
    }
