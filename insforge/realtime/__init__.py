"""Realtime pub/sub client.

Provides the realtime connection manager and its channel abstraction:
- ``Realtime``: one shared socket, connection state, low-level
  subscribe/publish, event listeners, REST channel management
- ``Channel``: per-topic broadcast, change-event and presence streams

Usage:
    from insforge.realtime import Insert, Realtime

    channel = realtime.channel("todos")
    inserts = channel.postgres_change_flow(Insert, table="todos").subscribe()
    await channel.subscribe()
"""

from __future__ import annotations

from .actions import Delete, Insert, PostgresAction, PostgresChangeEvent, Update, decode_postgres_action
from .channel import BroadcastConfig, Channel, ChannelOptions, ChannelStatus, PresenceConfig
from .dispatcher import EventDispatcher
from .filters import FilterOperator, PostgresChangeConfig, PostgresChangeFilter, matches_config, matches_filter
from .manager import Realtime, build_socket_url
from .presence import PresenceAction, PresenceState
from .schemas import (
    MessageStats,
    RealtimeChannel,
    RealtimeError,
    RealtimeMessage,
    SocketMessage,
    SocketMessageMeta,
    SubscribeResponse,
)
from .state import Connected, Connecting, ConnectionFailed, ConnectionState, Disconnected, ObservableValue
from .streams import CallbackStream, StreamSubscription

__all__ = [
    "BroadcastConfig",
    "CallbackStream",
    "Channel",
    "ChannelOptions",
    "ChannelStatus",
    "Connected",
    "Connecting",
    "ConnectionFailed",
    "ConnectionState",
    "Delete",
    "Disconnected",
    "EventDispatcher",
    "FilterOperator",
    "Insert",
    "MessageStats",
    "ObservableValue",
    "PostgresAction",
    "PostgresChangeConfig",
    "PostgresChangeEvent",
    "PostgresChangeFilter",
    "PresenceAction",
    "PresenceConfig",
    "PresenceState",
    "Realtime",
    "RealtimeChannel",
    "RealtimeError",
    "RealtimeMessage",
    "SocketMessage",
    "SocketMessageMeta",
    "StreamSubscription",
    "SubscribeResponse",
    "Update",
    "build_socket_url",
    "decode_postgres_action",
    "matches_config",
    "matches_filter",
]
