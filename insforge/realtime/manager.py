"""Realtime connection manager.

Owns the single WebSocket shared by every channel of a client:
- Explicit connection state (``Disconnected``, ``Connecting``, ``Connected``,
  ``ConnectionFailed``) exposed as an observable
- One background read loop that decodes frames and routes them to the event
  dispatcher and to the channel registered for the frame's topic
- Low-level subscribe/unsubscribe/publish with request/reply correlation
- Heartbeats while connected
- REST channel management and message history endpoints

Example:
    realtime = Realtime(http)
    await realtime.connect()

    realtime.on("chat", lambda message: print(message.payload))
    response = await realtime.subscribe("chat")
    if not response.ok:
        print(response.error.message)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from websockets.asyncio.client import connect as ws_connect

from insforge.core.exceptions import NotConnectedError, RealtimeConnectionError
from insforge.core.settings import RealtimeSettings, get_realtime_settings
from insforge.infra.http import InsforgeHttpClient
from insforge.realtime import protocol
from insforge.realtime.channel import BroadcastConfig, Channel, ChannelOptions, ChannelStatus, PresenceConfig
from insforge.realtime.delivery import DeliveryWorker
from insforge.realtime.dispatcher import EventDispatcher, Handler
from insforge.realtime.protocol import Frame, RefCounter
from insforge.realtime.schemas import (
    CreateChannelRequest,
    DeleteChannelResponse,
    MessageStats,
    RealtimeChannel,
    RealtimeError,
    RealtimeMessage,
    SubscribeResponse,
    UpdateChannelRequest,
)
from insforge.realtime.state import (
    Connected,
    Connecting,
    ConnectionFailed,
    ConnectionState,
    Disconnected,
    ObservableValue,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/realtime"


class Socket(Protocol):
    """The part of a WebSocket connection the manager uses."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


SocketFactory = Callable[[str, dict[str, str]], Awaitable[Socket]]


async def open_websocket(url: str, headers: dict[str, str]) -> Socket:
    """Open a WebSocket with the ``websockets`` asyncio client."""
    return await ws_connect(url, additional_headers=headers, open_timeout=None)


def build_socket_url(base_url: str, socket_path: str) -> str:
    """Turn an ``http(s)`` base URL into the ``ws(s)`` socket URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base.removeprefix("https://")
    elif base.startswith("http://"):
        base = "ws://" + base.removeprefix("http://")
    return base + socket_path


class Realtime:
    """Connection manager and channel factory.

    Args:
        http: REST client; also supplies the base URL and bearer token.
        settings: Realtime settings (defaults to ``get_realtime_settings()``).
        socket_factory: Coroutine function ``(url, headers) -> socket`` used
            to open the WebSocket. Tests inject an in-memory socket here.
    """

    def __init__(
        self,
        http: InsforgeHttpClient,
        settings: RealtimeSettings | None = None,
        *,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        self._http = http
        self.settings = settings or get_realtime_settings()
        self._socket_factory = socket_factory or open_websocket

        self.connection_state: ObservableValue[ConnectionState] = ObservableValue(Disconnected())

        self._socket: Socket | None = None
        self._connect_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._refs = RefCounter()
        # ref -> future resolved with the reply payload
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}

        self._lock = threading.Lock()
        # Names confirmed through the low-level subscribe()
        self._subscribed: set[str] = set()
        # topic -> Channel, kept until remove_channel()
        self._channels: dict[str, Channel] = {}
        # topic -> Channel currently receiving frames
        self._routes: dict[str, Channel] = {}

        self._dispatcher = EventDispatcher()
        # topic -> worker delivering that topic's frames to listeners
        self._event_workers: dict[str, DeliveryWorker] = {}

    @property
    def socket_url(self) -> str:
        return build_socket_url(self._http.base_url, self.settings.socket_path)

    @property
    def is_connected(self) -> bool:
        return self._socket is not None and isinstance(self.connection_state.value, Connected)

    # ──────────────────────────────────────────────────────────────
    # Connection
    # ──────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the socket; returns immediately when already connected.

        Concurrent callers share one attempt.

        Raises:
            RealtimeConnectionError: If the socket cannot be opened within
                ``connect_timeout``.
        """
        if self.is_connected:
            return

        async with self._connect_lock:
            if self.is_connected:
                return

            self.connection_state.set(Connecting())
            token = self._http.current_token()
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            url = self.socket_url
            logger.debug("Connecting to realtime server", extra={"url": url, "has_token": bool(token)})

            try:
                socket = await asyncio.wait_for(
                    self._socket_factory(url, headers),
                    timeout=self.settings.connect_timeout,
                )
            except TimeoutError as e:
                message = f"Connection timeout after {self.settings.connect_timeout}s"
                self._connect_failed(message)
                raise RealtimeConnectionError(message, extra={"url": url}) from e
            except Exception as e:
                message = str(e) or type(e).__name__
                self._connect_failed(message)
                raise RealtimeConnectionError(message, extra={"url": url}) from e

            self._socket = socket
            self._reader_task = asyncio.create_task(self._read_loop(socket), name="realtime:reader")
            if self.settings.heartbeat_interval > 0:
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="realtime:heartbeat")
            self.connection_state.set(Connected())
            logger.info("Connected to realtime server", extra={"url": url})

            with self._lock:
                resubscribe = sorted(self._subscribed)
            for name in resubscribe:
                await self._send(
                    Frame(topic=name, event=protocol.SUBSCRIBE, payload={"channel": name}, ref=self._next_ref())
                )

        self._dispatcher.emit(protocol.EVENT_CONNECT, None)

    def _connect_failed(self, message: str) -> None:
        logger.error("Realtime connection failed", extra={"error": message})
        self.connection_state.set(ConnectionFailed(message))
        self._dispatcher.emit(protocol.EVENT_CONNECT_ERROR, message)

    async def disconnect(self) -> None:
        """Close the socket and stop background tasks. Idempotent."""
        socket, self._socket = self._socket, None
        await self._stop_tasks()
        self._fail_pending("Disconnected")
        with self._lock:
            self._subscribed.clear()
        self._release_routes("client disconnect")

        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()
            logger.info("Disconnected from realtime server")

        self.connection_state.set(Disconnected())
        if socket is not None:
            self._dispatcher.emit(protocol.EVENT_DISCONNECT, "client disconnect")

    async def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        for attr in ("_heartbeat_task", "_reader_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(RealtimeConnectionError(f"Connection lost: {reason}"))

    def _release_routes(self, reason: str) -> None:
        """Return every joined channel to UNSUBSCRIBED; joins do not survive the socket."""
        with self._lock:
            channels = list(self._routes.values())
            self._routes.clear()
        for channel in channels:
            channel._connection_lost(reason)

    def _socket_lost(self, socket: Socket, state: ConnectionState, reason: str) -> None:
        if self._socket is not socket:
            return
        self._socket = None
        self._reader_task = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        self._fail_pending(reason)
        self._release_routes(reason)
        self.connection_state.set(state)
        # Listeners run after the read loop has returned
        asyncio.get_running_loop().call_soon(self._dispatcher.emit, protocol.EVENT_DISCONNECT, reason)

    async def _read_loop(self, socket: Socket) -> None:
        """Receive frames until the socket closes or fails."""
        try:
            async for raw in socket:
                self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Realtime read loop failed", extra={"error": str(e)})
            self._socket_lost(socket, ConnectionFailed(str(e) or type(e).__name__), str(e))
            return

        logger.info("Realtime socket closed by server")
        self._socket_lost(socket, Disconnected(), "closed by server")

    async def _heartbeat_loop(self) -> None:
        """Send a heartbeat frame every ``heartbeat_interval`` seconds."""
        try:
            while self._socket is not None:
                await asyncio.sleep(self.settings.heartbeat_interval)
                try:
                    await self._send(
                        Frame(topic=protocol.PHOENIX_TOPIC, event=protocol.HEARTBEAT, payload={}, ref=self._next_ref())
                    )
                except (NotConnectedError, RealtimeConnectionError) as e:
                    logger.warning("Heartbeat failed", extra={"error": str(e)})
                    return
        except asyncio.CancelledError:
            pass

    # ──────────────────────────────────────────────────────────────
    # Framing
    # ──────────────────────────────────────────────────────────────

    def _next_ref(self) -> str:
        return self._refs.next()

    async def _send(self, frame: Frame) -> None:
        socket = self._socket
        if socket is None:
            raise NotConnectedError("Not connected to realtime server. Call connect() first.")

        text = protocol.encode_frame(frame)
        if self.settings.debug:
            logger.debug(">>> SEND", extra={"frame": text})
        try:
            await socket.send(text)
        except Exception as e:
            raise RealtimeConnectionError(f"Failed to send frame: {e}", extra={"topic": frame.topic}) from e

    async def _request(self, frame: Frame, timeout: float | None = None) -> dict[str, Any]:
        """Send ``frame`` and wait for the ``phx_reply`` carrying its ref.

        Raises:
            NotConnectedError: If there is no open socket.
            RealtimeConnectionError: If the socket is lost before the reply.
            TimeoutError: If ``timeout`` elapses first.
        """
        if frame.ref is None:
            frame.ref = self._next_ref()
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[frame.ref] = future
        try:
            await self._send(frame)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(frame.ref, None)

    def _handle_raw(self, raw: str | bytes) -> None:
        if self.settings.debug:
            logger.debug("<<< RECV", extra={"frame": raw})

        frame = protocol.decode_frame(raw)
        if frame is None:
            logger.debug("Dropping malformed frame")
            return

        if frame.is_reply and frame.ref is not None:
            future = self._pending.get(frame.ref)
            if future is not None:
                if not future.done():
                    future.set_result(frame.payload or {})
                return

        if frame.topic == protocol.PHOENIX_TOPIC:
            return

        with self._lock:
            channel = self._routes.get(frame.topic)
        if channel is not None:
            channel._receive(frame)
        self._event_worker(frame.topic).submit(frame)

    def _event_worker(self, topic: str) -> DeliveryWorker:
        worker = self._event_workers.get(topic)
        if worker is None:
            worker = self._event_workers[topic] = DeliveryWorker(self._emit_frame, name=f"events:{topic}")
        return worker

    def _emit_frame(self, frame: Frame) -> None:
        message = protocol.to_socket_message(frame)
        self._dispatcher.emit(frame.event, message)
        if message.event != frame.event:
            self._dispatcher.emit(message.event, message)

        if frame.event in (protocol.REALTIME_ERROR, protocol.PHX_ERROR):
            payload = frame.payload or {}
            error = RealtimeError(
                code=str(payload.get("code") or "UNKNOWN"),
                message=str(payload.get("message") or "Unknown error"),
            )
            logger.warning("Realtime error", extra={"code": error.code, "error": error.message})
            self._dispatcher.emit(protocol.EVENT_ERROR, error)

    async def drain(self) -> None:
        """Wait until every frame read so far has been handed to callbacks."""
        for worker in list(self._event_workers.values()):
            await worker.join()
        with self._lock:
            channels = list(self._routes.values())
        for channel in channels:
            await channel._drain()

    # ──────────────────────────────────────────────────────────────
    # Low-level subscriptions
    # ──────────────────────────────────────────────────────────────

    async def subscribe(self, channel: str) -> SubscribeResponse:
        """Subscribe to ``channel``, connecting first when needed.

        Subscribing to an already subscribed name returns success without a
        second request. Failures are reported in the result, not raised.
        """
        with self._lock:
            if channel in self._subscribed:
                return SubscribeResponse(ok=True, channel=channel)

        if not self.is_connected:
            try:
                await self.connect()
            except RealtimeConnectionError as e:
                return SubscribeResponse(
                    ok=False,
                    channel=channel,
                    error=RealtimeError(code="CONNECTION_FAILED", message=e.message),
                )

        try:
            reply = await self._request(
                Frame(topic=channel, event=protocol.SUBSCRIBE, payload={"channel": channel})
            )
        except (NotConnectedError, RealtimeConnectionError) as e:
            return SubscribeResponse(
                ok=False,
                channel=channel,
                error=RealtimeError(code="CONNECTION_LOST", message=e.message),
            )

        if protocol.reply_succeeded(reply):
            with self._lock:
                self._subscribed.add(channel)
            logger.debug("Subscribed", extra={"channel": channel})
            return SubscribeResponse(ok=True, channel=channel)

        error = protocol.reply_error(reply, "SUBSCRIBE_FAILED", "Subscription failed")
        logger.warning("Subscribe rejected", extra={"channel": channel, "code": error.code})
        return SubscribeResponse(ok=False, channel=channel, error=error)

    async def unsubscribe(self, channel: str) -> None:
        """Forget ``channel`` locally and tell the server when connected."""
        with self._lock:
            self._subscribed.discard(channel)

        if not self.is_connected:
            logger.debug("Not connected, skipping unsubscribe frame", extra={"channel": channel})
            return
        await self._send(Frame(topic=channel, event=protocol.UNSUBSCRIBE, payload={"channel": channel}))

    def get_subscribed_channels(self) -> list[str]:
        with self._lock:
            return sorted(self._subscribed)

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        """Send ``event`` with ``payload`` to ``channel``.

        Raises:
            NotConnectedError: If not connected; nothing is sent.
        """
        if not self.is_connected:
            raise NotConnectedError("Not connected to realtime server. Call connect() first.")
        await self._send(Frame(topic=channel, event=event, payload=dict(payload), ref=self._next_ref()))

    def on(self, event: str, handler: Handler) -> str:
        """Listen for ``event``; reserved names are ``connect``, ``connect_error``,
        ``disconnect`` and ``error``."""
        return self._dispatcher.on(event, handler)

    def off(self, event: str, handler_or_id: Handler | str) -> None:
        self._dispatcher.off(event, handler_or_id)

    def once(self, event: str, handler: Handler) -> str:
        return self._dispatcher.once(event, handler)

    # ──────────────────────────────────────────────────────────────
    # Channels
    # ──────────────────────────────────────────────────────────────

    def channel(
        self,
        topic: str,
        configure: Callable[[ChannelOptions], Any] | None = None,
        *,
        broadcast: BroadcastConfig | None = None,
        presence: PresenceConfig | None = None,
    ) -> Channel:
        """Return the channel for ``topic``, creating it on first use.

        Options only apply when the channel is created.
        """
        with self._lock:
            existing = self._channels.get(topic)
        if existing is not None:
            return existing

        options = ChannelOptions(
            broadcast=broadcast or BroadcastConfig(),
            presence=presence or PresenceConfig(),
        )
        if configure is not None:
            configure(options)

        with self._lock:
            return self._channels.setdefault(topic, Channel(topic, self, options))

    @property
    def channels(self) -> list[Channel]:
        with self._lock:
            return list(self._channels.values())

    async def remove_channel(self, topic: str) -> None:
        """Unsubscribe (when SUBSCRIBED) and close the channel for ``topic``."""
        with self._lock:
            channel = self._channels.pop(topic, None)
        if channel is None:
            return

        if channel.status.value is ChannelStatus.SUBSCRIBED:
            await channel.unsubscribe()
        await channel.close()

    async def remove_all_channels(self) -> None:
        with self._lock:
            topics = list(self._channels)
        for topic in topics:
            await self.remove_channel(topic)

    def _register_route(self, channel: Channel) -> None:
        with self._lock:
            self._routes[channel.topic] = channel

    def _unregister_route(self, channel: Channel) -> None:
        with self._lock:
            if self._routes.get(channel.topic) is channel:
                del self._routes[channel.topic]

    async def _broadcast_via_http(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        logger.debug("Broadcasting over HTTP", extra={"topic": topic, "event": event})
        await self._http.post(
            f"{API_PREFIX}/broadcast",
            json={"topic": topic, "event": event, "payload": payload},
        )

    # ──────────────────────────────────────────────────────────────
    # Channel management (REST)
    # ──────────────────────────────────────────────────────────────

    async def list_channels(self) -> list[RealtimeChannel]:
        data = await self._http.get(f"{API_PREFIX}/channels")
        return [RealtimeChannel.model_validate(item) for item in data or []]

    async def get_channel(self, channel_id: str) -> RealtimeChannel:
        data = await self._http.get(f"{API_PREFIX}/channels/{channel_id}")
        return RealtimeChannel.model_validate(data)

    async def create_channel(
        self,
        pattern: str,
        description: str | None = None,
        webhook_urls: list[str] | None = None,
        enabled: bool = True,
    ) -> RealtimeChannel:
        body = CreateChannelRequest(
            pattern=pattern,
            description=description,
            webhook_urls=webhook_urls,
            enabled=enabled,
        )
        data = await self._http.post(
            f"{API_PREFIX}/channels",
            json=body.model_dump(by_alias=True, exclude_none=True),
        )
        return RealtimeChannel.model_validate(data)

    async def update_channel(
        self,
        channel_id: str,
        pattern: str | None = None,
        description: str | None = None,
        webhook_urls: list[str] | None = None,
        enabled: bool | None = None,
    ) -> RealtimeChannel:
        """Update a channel; arguments left as None are not sent."""
        body = UpdateChannelRequest(
            pattern=pattern,
            description=description,
            webhook_urls=webhook_urls,
            enabled=enabled,
        )
        data = await self._http.put(
            f"{API_PREFIX}/channels/{channel_id}",
            json=body.model_dump(by_alias=True, exclude_none=True),
        )
        return RealtimeChannel.model_validate(data)

    async def delete_channel(self, channel_id: str) -> DeleteChannelResponse:
        data = await self._http.delete(f"{API_PREFIX}/channels/{channel_id}")
        return DeleteChannelResponse.model_validate(data or {"message": "deleted"})

    # ──────────────────────────────────────────────────────────────
    # Message history (REST)
    # ──────────────────────────────────────────────────────────────

    async def get_messages(
        self,
        channel_id: str | None = None,
        event_name: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RealtimeMessage]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if channel_id is not None:
            params["channelId"] = channel_id
        if event_name is not None:
            params["eventName"] = event_name

        data = await self._http.get(f"{API_PREFIX}/messages", params=params)
        return [RealtimeMessage.model_validate(item) for item in data or []]

    async def get_message_stats(self, channel_id: str | None = None, since: str | None = None) -> MessageStats:
        params: dict[str, Any] = {}
        if channel_id is not None:
            params["channelId"] = channel_id
        if since is not None:
            params["since"] = since

        data = await self._http.get(f"{API_PREFIX}/messages/stats", params=params or None)
        return MessageStats.model_validate(data)

    # ──────────────────────────────────────────────────────────────
    # Shutdown
    # ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close every channel, stop delivery and disconnect."""
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            await channel.close()
        workers, self._event_workers = self._event_workers, {}
        for worker in workers.values():
            await worker.stop()
        await self.disconnect()
