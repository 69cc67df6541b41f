"""Realtime socket settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RealtimeSettings(BaseSettings):
    """Realtime socket and channel settings.

    Environment variables use REALTIME_ prefix.
    Example: REALTIME_HEARTBEAT_INTERVAL=30
    """

    # ──────────────────────────────────────────────────────────────
    # Socket
    # ──────────────────────────────────────────────────────────────

    socket_path: str = Field(
        default="/realtime/websocket",
        pattern=r"^/.*$",
        description="Path of the realtime WebSocket endpoint on the base URL",
    )

    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for opening the socket in seconds",
    )

    heartbeat_interval: float = Field(
        default=30.0,
        ge=0,
        le=300,
        description="Interval between heartbeat frames in seconds (0 to disable)",
    )

    # ──────────────────────────────────────────────────────────────
    # Channels
    # ──────────────────────────────────────────────────────────────

    broadcast_ack_timeout: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="How long an acknowledged broadcast waits for its reply",
    )

    strict_filters: bool = Field(
        default=False,
        description=(
            "Reject change events whose filter is malformed or uses an unknown "
            "operator instead of letting them through"
        ),
    )

    # ──────────────────────────────────────────────────────────────
    # Diagnostics
    # ──────────────────────────────────────────────────────────────

    debug: bool = Field(
        default=False,
        description="Log every inbound and outbound frame at DEBUG level",
    )

    model_config = SettingsConfigDict(
        env_prefix="REALTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
