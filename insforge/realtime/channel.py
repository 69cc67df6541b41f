"""Per-topic channel over the shared realtime connection.

A channel moves through ``UNSUBSCRIBED -> SUBSCRIBING -> SUBSCRIBED`` on
``subscribe()`` and ``SUBSCRIBED -> UNSUBSCRIBING -> UNSUBSCRIBED`` on
``unsubscribe()``. Change-event flows are announced in the join payload, so
they must be created before the channel is subscribed.

Usage:
    channel = realtime.channel("todos")
    inserts = channel.postgres_change_flow(Insert, table="todos").subscribe()
    await channel.subscribe(block_until_subscribed=True)

    async for action in inserts:
        print(action.record)
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, TypeAdapter

from insforge.core.exceptions import ChannelJoinError, ChannelStateError, RealtimeConnectionError
from insforge.realtime import protocol
from insforge.realtime.actions import (
    ACTION_TYPES,
    Delete,
    Insert,
    PostgresAction,
    PostgresChangeEvent,
    Update,
    decode_postgres_action,
)
from insforge.realtime.callbacks import CallbackManager
from insforge.realtime.delivery import DeliveryWorker
from insforge.realtime.filters import WILDCARD, PostgresChangeConfig, PostgresChangeFilter, dedupe_configs
from insforge.realtime.presence import PresenceAction, PresenceCache
from insforge.realtime.protocol import Frame
from insforge.realtime.schemas import RealtimeError
from insforge.realtime.state import ObservableValue
from insforge.realtime.streams import CallbackStream, StreamSubscription

if TYPE_CHECKING:
    from insforge.realtime.manager import Realtime

logger = logging.getLogger(__name__)

M = TypeVar("M")

_KIND_BY_CLASS: dict[type, PostgresChangeEvent] = {
    Insert: PostgresChangeEvent.INSERT,
    Update: PostgresChangeEvent.UPDATE,
    Delete: PostgresChangeEvent.DELETE,
}


class ChannelStatus(StrEnum):
    UNSUBSCRIBED = "UNSUBSCRIBED"
    SUBSCRIBING = "SUBSCRIBING"
    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBING = "UNSUBSCRIBING"


@dataclass
class BroadcastConfig:
    """Broadcast options sent with the join.

    Attributes:
        acknowledge_broadcasts: Ask the server to reply to every broadcast.
        receive_own_broadcasts: Deliver this client's broadcasts back to it.
    """

    acknowledge_broadcasts: bool = False
    receive_own_broadcasts: bool = False


@dataclass
class PresenceConfig:
    key: str = ""


@dataclass
class ChannelOptions:
    """Mutable options handed to the ``configure`` callback of ``Realtime.channel``."""

    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)


def _resolve_kind(kind: type | PostgresChangeEvent | str) -> PostgresChangeEvent:
    if isinstance(kind, type):
        if kind in _KIND_BY_CLASS:
            return _KIND_BY_CLASS[kind]
        raise ValueError(f"Unknown change event type: {kind.__name__}")
    if isinstance(kind, str):
        return PostgresChangeEvent(kind.upper())
    raise ValueError(f"Unknown change event type: {kind!r}")


class Channel:
    """One topic on the shared realtime connection.

    Channels are created through ``Realtime.channel(topic)``, which returns
    the same instance for the same topic until it is removed.
    """

    def __init__(self, topic: str, realtime: Realtime, options: ChannelOptions | None = None) -> None:
        self.topic = topic
        self.options = options or ChannelOptions()
        self.status: ObservableValue[ChannelStatus] = ObservableValue(ChannelStatus.UNSUBSCRIBED)

        self._realtime = realtime
        self._callbacks = CallbackManager()
        self._presence = PresenceCache()
        self._lock = threading.Lock()
        self._postgres_configs: list[PostgresChangeConfig] = []
        self._streams: weakref.WeakSet[StreamSubscription[Any]] = weakref.WeakSet()
        self._worker = DeliveryWorker(self._on_message, name=topic)
        self._join_ref: str | None = None
        self._join_error: RealtimeError | None = None

    def __repr__(self) -> str:
        return f"Channel(topic={self.topic!r}, status={self.status.value.value})"

    @property
    def broadcast_config(self) -> BroadcastConfig:
        return self.options.broadcast

    @property
    def presence_config(self) -> PresenceConfig:
        return self.options.presence

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    async def subscribe(self, block_until_subscribed: bool = False) -> None:
        """Join the channel.

        Connects the shared socket when needed, routes this topic's frames
        to the channel and sends the join. With ``block_until_subscribed``
        the call returns once the server accepts the join. There is no
        built-in timeout; wrap the call in ``asyncio.wait_for`` for one.

        Raises:
            RealtimeConnectionError: If the socket cannot be opened.
            ChannelJoinError: If blocking and the server rejects the join.
        """
        current = self.status.value
        if current is ChannelStatus.SUBSCRIBED:
            return

        if current is not ChannelStatus.SUBSCRIBING:
            self.status.set(ChannelStatus.SUBSCRIBING)
            self._join_error = None
            try:
                await self._realtime.connect()
                self._realtime._register_route(self)
                self._join_ref = self._realtime._next_ref()
                await self._realtime._send(
                    Frame(
                        topic=self.topic,
                        event=protocol.PHX_JOIN,
                        payload=self.build_join_payload(),
                        ref=self._join_ref,
                    )
                )
            except Exception:
                self._realtime._unregister_route(self)
                self.status.set(ChannelStatus.UNSUBSCRIBED)
                raise

            logger.debug("Channel join sent", extra={"topic": self.topic, "ref": self._join_ref})

        if not block_until_subscribed:
            return

        status = await self.status.wait_for(
            lambda value: value in (ChannelStatus.SUBSCRIBED, ChannelStatus.UNSUBSCRIBED)
        )
        if status is not ChannelStatus.SUBSCRIBED:
            error = self._join_error or RealtimeError(code="SUBSCRIBE_FAILED", message="Subscription failed")
            raise ChannelJoinError(code=error.code, message=error.message, topic=self.topic)

    async def unsubscribe(self) -> None:
        """Leave the channel and drop every local registration."""
        if self.status.value is ChannelStatus.UNSUBSCRIBED:
            return

        self.status.set(ChannelStatus.UNSUBSCRIBING)
        try:
            if self._realtime.is_connected:
                await self._realtime._send(Frame(topic=self.topic, event=protocol.PHX_LEAVE, payload={}))
            else:
                logger.debug("Not connected, skipping leave frame", extra={"topic": self.topic})
        except RealtimeConnectionError as e:
            logger.warning("Failed to send leave frame", extra={"topic": self.topic, "error": str(e)})
        finally:
            self._realtime._unregister_route(self)
            self._reset()
            self.status.set(ChannelStatus.UNSUBSCRIBED)

    async def close(self) -> None:
        """Drop registrations and stop delivery without notifying the server."""
        self._realtime._unregister_route(self)
        self._reset()
        await self._worker.stop()
        self.status.set(ChannelStatus.UNSUBSCRIBED)

    def _connection_lost(self, reason: str) -> None:
        """Drop to UNSUBSCRIBED after the socket went away.

        Callbacks, open streams and change-event configs are kept, so a later
        ``subscribe()`` sends the same join on the new socket.
        """
        current = self.status.value
        if current is ChannelStatus.UNSUBSCRIBED:
            return
        if current is ChannelStatus.SUBSCRIBING:
            self._join_error = RealtimeError(code="CONNECTION_LOST", message=f"Connection lost: {reason}")
        self._join_ref = None
        self._presence.clear()
        logger.info("Channel left after connection loss", extra={"topic": self.topic, "reason": reason})
        self.status.set(ChannelStatus.UNSUBSCRIBED)

    def _reset(self) -> None:
        self._callbacks.clear()
        self._presence.clear()
        with self._lock:
            self._postgres_configs.clear()
        self._join_ref = None
        for stream in list(self._streams):
            stream.close()

    def build_join_payload(self) -> dict[str, Any]:
        """Join payload announcing broadcast, presence and change-event config."""
        config: dict[str, Any] = {
            "broadcast": {
                "ack": self.broadcast_config.acknowledge_broadcasts,
                "self": self.broadcast_config.receive_own_broadcasts,
            },
            "presence": {"key": self.presence_config.key},
        }

        with self._lock:
            configs = list(self._postgres_configs)
        configs = dedupe_configs([*configs, *self._callbacks.get_postgres_configs()])
        if configs:
            config[protocol.POSTGRES_CHANGES] = [c.to_payload() for c in configs]
        return {"config": config}

    # ──────────────────────────────────────────────────────────────
    # Broadcast
    # ──────────────────────────────────────────────────────────────

    async def broadcast(self, event: str, payload: Mapping[str, Any] | BaseModel) -> None:
        """Send a broadcast to everyone on the channel.

        Goes over the socket when SUBSCRIBED and connected, otherwise through
        the REST broadcast endpoint. When acknowledgments are enabled the call waits
        up to ``broadcast_ack_timeout`` for the server's reply; a missing
        reply is logged, not raised.
        """
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        else:
            data = dict(payload)

        if self.status.value is not ChannelStatus.SUBSCRIBED or not self._realtime.is_connected:
            await self._realtime._broadcast_via_http(self.topic, event, data)
            return

        frame = Frame(
            topic=self.topic,
            event=protocol.BROADCAST,
            payload={"type": protocol.BROADCAST, "event": event, "payload": data},
        )
        if not self.broadcast_config.acknowledge_broadcasts:
            await self._realtime._send(frame)
            return

        timeout = self._realtime.settings.broadcast_ack_timeout
        try:
            reply = await self._realtime._request(frame, timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Broadcast not acknowledged",
                extra={"topic": self.topic, "event": event, "timeout": timeout},
            )
            return
        except RealtimeConnectionError as e:
            logger.warning(
                "Connection lost awaiting broadcast acknowledgment",
                extra={"topic": self.topic, "event": event, "error": str(e)},
            )
            return

        if not protocol.reply_succeeded(reply):
            error = protocol.reply_error(reply, "BROADCAST_FAILED", "Broadcast rejected")
            logger.warning(
                "Broadcast rejected by server",
                extra={"topic": self.topic, "event": event, "code": error.code, "error": error.message},
            )

    def broadcast_flow(self, event: str = WILDCARD, model: type[M] | None = None) -> CallbackStream[Any]:
        """Lazy stream of broadcast payloads named ``event`` (``*`` for all).

        With ``model`` each payload is validated into that type; payloads
        that fail validation are logged and skipped.
        """
        transform = TypeAdapter(model).validate_python if model is not None else None
        return CallbackStream(
            lambda callback: self._callbacks.add_broadcast_callback(event, callback),
            self._callbacks.remove_callback_by_id,
            transform=transform,
            on_subscribe=self._streams.add,
            on_close=self._streams.discard,
        )

    # ──────────────────────────────────────────────────────────────
    # Change events
    # ──────────────────────────────────────────────────────────────

    def postgres_change_flow(
        self,
        kind: type | PostgresChangeEvent | str = PostgresChangeEvent.ALL,
        schema: str = "public",
        *,
        table: str | None = None,
        filter: str | None = None,
        configure: Callable[[PostgresChangeFilter], Any] | None = None,
    ) -> CallbackStream[PostgresAction]:
        """Lazy stream of change events of ``kind`` (``Insert``, ``Update``,
        ``Delete`` or ``"*"``) on ``schema``.

        The filter config is recorded immediately and sent with the next
        join, so this must be called before ``subscribe()``.

        Raises:
            ChannelStateError: If the channel is already SUBSCRIBED.
        """
        if self.status.value is ChannelStatus.SUBSCRIBED:
            raise ChannelStateError(
                "postgres_change_flow() cannot be called after subscribing to "
                f"channel '{self.topic}'. Set up all flows before calling subscribe()."
            )

        event = _resolve_kind(kind)
        builder = PostgresChangeFilter(event.value, schema)
        builder.table = table
        builder.filter = filter
        if configure is not None:
            configure(builder)
        config = builder.build()
        accepted = ACTION_TYPES[event]

        with self._lock:
            self._postgres_configs.append(config)

        def register(callback: Callable[[Any], None]) -> str:
            def deliver(action: PostgresAction) -> None:
                if isinstance(action, accepted):
                    callback(action)

            return self._callbacks.add_postgres_callback(config, deliver)

        return CallbackStream(
            register,
            self._callbacks.remove_callback_by_id,
            on_subscribe=self._streams.add,
            on_close=self._streams.discard,
        )

    # ──────────────────────────────────────────────────────────────
    # Presence
    # ──────────────────────────────────────────────────────────────

    async def track(self, payload: Mapping[str, Any] | BaseModel) -> None:
        """Publish this client's presence payload."""
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        else:
            data = dict(payload)
        await self._realtime._send(
            Frame(
                topic=self.topic,
                event=protocol.PRESENCE,
                payload={"type": protocol.PRESENCE, "event": "track", "payload": data},
            )
        )

    async def untrack(self) -> None:
        await self._realtime._send(
            Frame(
                topic=self.topic,
                event=protocol.PRESENCE,
                payload={"type": protocol.PRESENCE, "event": "untrack"},
            )
        )

    def presence_change_flow(self) -> CallbackStream[PresenceAction]:
        """Lazy stream of presence joins and leaves."""
        return CallbackStream(
            self._callbacks.add_presence_callback,
            self._callbacks.remove_callback_by_id,
            on_subscribe=self._streams.add,
            on_close=self._streams.discard,
        )

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        """Current presence entries by key, as last synced from the server."""
        return self._presence.snapshot()

    # ──────────────────────────────────────────────────────────────
    # Inbound
    # ──────────────────────────────────────────────────────────────

    def _receive(self, frame: Frame) -> None:
        """Queue a frame from the read loop for in-order delivery."""
        self._worker.submit(frame)

    async def _drain(self) -> None:
        await self._worker.join()

    def _on_message(self, frame: Frame) -> None:
        payload = frame.payload or {}

        match frame.event:
            case protocol.BROADCAST:
                event = payload.get("event")
                data = payload.get("payload")
                if isinstance(event, str) and isinstance(data, dict):
                    self._callbacks.trigger_broadcast(event, data)
                else:
                    logger.debug("Dropping malformed broadcast", extra={"topic": self.topic})

            case protocol.POSTGRES_CHANGES:
                action = decode_postgres_action(payload)
                if action is not None:
                    self._callbacks.trigger_postgres_change(action, strict=self._realtime.settings.strict_filters)

            case protocol.PRESENCE_DIFF:
                presence = self._presence.apply_diff(payload)
                if presence.joins or presence.leaves:
                    self._callbacks.trigger_presence(presence)

            case protocol.PRESENCE_STATE:
                presence = self._presence.sync(payload)
                if presence.joins:
                    self._callbacks.trigger_presence(presence)

            case protocol.PHX_REPLY:
                self._handle_reply(frame)

            case protocol.PHX_ERROR | protocol.PHX_CLOSE:
                logger.warning(
                    "Channel closed by server",
                    extra={"topic": self.topic, "event": frame.event},
                )

            case _:
                logger.debug("Ignoring channel event", extra={"topic": self.topic, "event": frame.event})

    def _handle_reply(self, frame: Frame) -> None:
        if self.status.value is not ChannelStatus.SUBSCRIBING:
            return
        if frame.ref is not None and frame.ref != self._join_ref:
            return

        payload = frame.payload or {}
        if protocol.reply_succeeded(payload):
            logger.info("Channel subscribed", extra={"topic": self.topic})
            self.status.set(ChannelStatus.SUBSCRIBED)
            return

        self._join_error = protocol.reply_error(payload, "SUBSCRIBE_FAILED", "Subscription failed")
        logger.warning(
            "Channel join rejected",
            extra={"topic": self.topic, "code": self._join_error.code, "error": self._join_error.message},
        )
        self._realtime._unregister_route(self)
        self.status.set(ChannelStatus.UNSUBSCRIBED)
