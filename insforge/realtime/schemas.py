"""Pydantic models for realtime results, inbound messages and the REST API.

Wire/REST field names are camelCase; models expose snake_case attributes
and accept either spelling on input.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ──────────────────────────────────────────────────────────────
# Socket results and messages
# ──────────────────────────────────────────────────────────────


class RealtimeError(CamelModel):
    """Error reported by the realtime server or raised locally."""

    code: str = Field(default="UNKNOWN", description="Machine-readable error code")
    message: str = Field(default="Unknown error", description="Human-readable message")


class SubscribeResponse(CamelModel):
    """Outcome of a low-level channel subscription.

    Server-side rejections are reported here rather than raised; callers
    inspect ``ok``.
    """

    ok: bool
    channel: str
    error: RealtimeError | None = None


class SocketMessageMeta(CamelModel):
    """Delivery metadata attached to an inbound message."""

    channel: str | None = None
    message_id: str = ""
    sender_type: str = "user"
    sender_id: str | None = None
    timestamp: str = ""


class SocketMessage(CamelModel):
    """Inbound message handed to ``Realtime.on`` listeners."""

    meta: SocketMessageMeta = Field(default_factory=SocketMessageMeta)
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


# ──────────────────────────────────────────────────────────────
# Channel management (REST)
# ──────────────────────────────────────────────────────────────


class RealtimeChannel(CamelModel):
    """Channel definition managed through the REST API."""

    id: str
    pattern: str
    description: str | None = None
    webhook_urls: list[str] | None = None
    enabled: bool
    created_at: str
    updated_at: str


class CreateChannelRequest(CamelModel):
    """Body of ``POST /api/realtime/channels``."""

    pattern: str
    description: str | None = None
    webhook_urls: list[str] | None = None
    enabled: bool = True


class UpdateChannelRequest(CamelModel):
    """Body of ``PUT /api/realtime/channels/{id}``; unset fields are not sent."""

    pattern: str | None = None
    description: str | None = None
    webhook_urls: list[str] | None = None
    enabled: bool | None = None


class DeleteChannelResponse(CamelModel):
    message: str


# ──────────────────────────────────────────────────────────────
# Message history (REST)
# ──────────────────────────────────────────────────────────────


class RealtimeMessage(CamelModel):
    """Persisted message from the history endpoint."""

    id: str
    event_name: str
    channel_id: str | None = None
    channel_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    sender_type: str = Field(description="'system' or 'user'")
    sender_id: str | None = None
    ws_audience_count: int
    wh_audience_count: int
    wh_delivered_count: int
    created_at: str


class EventCount(CamelModel):
    event_name: str
    count: int


class MessageStats(CamelModel):
    """Aggregate delivery statistics."""

    total_messages: int
    wh_delivery_rate: float
    top_events: list[EventCount] = Field(default_factory=list)
