"""Unit tests for the channel abstraction."""
from __future__ import annotations

import asyncio
import json
import logging

import pytest
from pydantic import BaseModel

from insforge.core.exceptions import ChannelJoinError, ChannelStateError, RealtimeConnectionError
from insforge.core.settings import RealtimeSettings
from insforge.realtime import (
    BroadcastConfig,
    ChannelStatus,
    Delete,
    FilterOperator,
    Insert,
    PresenceConfig,
    Realtime,
    Update,
)


class ChatMessage(BaseModel):
    text: str


def _change(kind: str, record: dict | None = None, old_record: dict | None = None, table: str = "todos") -> dict:
    data: dict = {"schema": "public", "table": table, "type": kind, "commit_timestamp": "2024-05-01T10:00:00Z"}
    if record is not None:
        data["record"] = record
    if old_record is not None:
        data["old_record"] = old_record
    return {"data": data}


async def _next(subscription, timeout: float = 1.0):
    return await asyncio.wait_for(anext(subscription), timeout)


# ──────────────────────────────────────────────────────────────
# Test channel factory
# ──────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestChannelFactory:
    """Realtime.channel() identity and removal."""

    def test_same_topic_returns_same_instance(self, realtime):
        assert realtime.channel("x") is realtime.channel("x")
        assert realtime.channel("x") is not realtime.channel("y")

    @pytest.mark.asyncio
    async def test_removed_channel_is_replaced(self, realtime):
        first = realtime.channel("x")

        await realtime.remove_channel("x")

        second = realtime.channel("x")
        assert second is not first
        assert realtime.channels == [second]

    def test_configure_callback_sets_options(self, realtime):
        def configure(options):
            options.broadcast.acknowledge_broadcasts = True
            options.presence.key = "user-1"

        channel = realtime.channel("room-1", configure)

        assert channel.broadcast_config.acknowledge_broadcasts is True
        assert channel.presence_config.key == "user-1"

    def test_options_ignored_for_existing_channel(self, realtime):
        channel = realtime.channel("room-1")

        again = realtime.channel("room-1", broadcast=BroadcastConfig(receive_own_broadcasts=True))

        assert again is channel
        assert channel.broadcast_config.receive_own_broadcasts is False

    @pytest.mark.asyncio
    async def test_remove_channel_unsubscribes_first(self, realtime, fake_socket):
        channel = realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)

        await realtime.remove_channel("room-1")

        assert channel.status.value is ChannelStatus.UNSUBSCRIBED
        assert len(fake_socket.frames("phx_leave")) == 1

    @pytest.mark.asyncio
    async def test_remove_all_channels(self, realtime):
        realtime.channel("a")
        realtime.channel("b")

        await realtime.remove_all_channels()

        assert realtime.channels == []


# ──────────────────────────────────────────────────────────────
# Test subscribe / unsubscribe
# ──────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestChannelLifecycle:
    """UNSUBSCRIBED -> SUBSCRIBING -> SUBSCRIBED and back."""

    @pytest.mark.asyncio
    async def test_blocking_subscribe(self, realtime, fake_socket):
        channel = realtime.channel("room-1")
        statuses: list = []
        channel.status.watch(statuses.append)

        await channel.subscribe(block_until_subscribed=True)

        assert channel.status.value is ChannelStatus.SUBSCRIBED
        assert statuses == [ChannelStatus.SUBSCRIBING, ChannelStatus.SUBSCRIBED]
        assert realtime.is_connected

    @pytest.mark.asyncio
    async def test_join_payload(self, realtime, fake_socket):
        channel = realtime.channel(
            "todos",
            broadcast=BroadcastConfig(acknowledge_broadcasts=True, receive_own_broadcasts=True),
            presence=PresenceConfig(key="user-1"),
        )
        channel.postgres_change_flow(Insert, table="todos")
        channel.postgres_change_flow(Insert, table="todos")
        channel.postgres_change_flow(
            "*",
            configure=lambda f: f.where("status", FilterOperator.EQ, "open"),
        )

        await channel.subscribe()

        join = fake_socket.frames("phx_join")[0]
        assert join["topic"] == "todos"
        assert join["ref"]
        assert join["payload"] == {
            "config": {
                "broadcast": {"ack": True, "self": True},
                "presence": {"key": "user-1"},
                "postgres_changes": [
                    {"event": "INSERT", "schema": "public", "table": "todos"},
                    {"event": "*", "schema": "public", "filter": "status=eq.open"},
                ],
            }
        }

    @pytest.mark.asyncio
    async def test_join_payload_without_change_events(self, realtime, fake_socket):
        await realtime.channel("room-1").subscribe()

        config = fake_socket.frames("phx_join")[0]["payload"]["config"]
        assert "postgres_changes" not in config
        assert config["broadcast"] == {"ack": False, "self": False}

    @pytest.mark.asyncio
    async def test_subscribe_when_subscribed_is_noop(self, realtime, fake_socket):
        channel = realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)

        await channel.subscribe(block_until_subscribed=True)

        assert len(fake_socket.frames("phx_join")) == 1

    @pytest.mark.asyncio
    async def test_rejected_join_raises_when_blocking(self, realtime, fake_socket):
        fake_socket.reject["secret"] = {"code": "UNAUTHORIZED", "message": "Not allowed"}
        channel = realtime.channel("secret")

        with pytest.raises(ChannelJoinError) as exc_info:
            await channel.subscribe(block_until_subscribed=True)

        assert exc_info.value.code == "UNAUTHORIZED"
        assert exc_info.value.topic == "secret"
        assert channel.status.value is ChannelStatus.UNSUBSCRIBED

    @pytest.mark.asyncio
    async def test_connect_failure_reverts_status(self, http, realtime_settings):
        async def refusing(url, headers):
            raise OSError("refused")

        manager = Realtime(http, realtime_settings, socket_factory=refusing)
        channel = manager.channel("room-1")

        with pytest.raises(RealtimeConnectionError, match="refused"):
            await channel.subscribe()

        assert channel.status.value is ChannelStatus.UNSUBSCRIBED
        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, realtime, fake_socket):
        channel = realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)
        statuses: list = []
        channel.status.watch(statuses.append)

        await channel.unsubscribe()

        assert statuses == [ChannelStatus.UNSUBSCRIBING, ChannelStatus.UNSUBSCRIBED]
        assert fake_socket.frames("phx_leave") == [{"topic": "room-1", "event": "phx_leave", "payload": {}}]
        assert realtime.channel("room-1") is channel

    @pytest.mark.asyncio
    async def test_unsubscribe_when_unsubscribed_is_noop(self, realtime, fake_socket):
        await realtime.channel("room-1").unsubscribe()

        assert fake_socket.sent == []

    @pytest.mark.asyncio
    async def test_unsubscribe_closes_streams_and_stops_routing(self, realtime, fake_socket, settle):
        channel = realtime.channel("room-1")
        messages = channel.broadcast_flow("chat").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        await channel.unsubscribe()
        fake_socket.push("room-1", "broadcast", {"type": "broadcast", "event": "chat", "payload": {"n": 1}})
        await settle()

        assert messages.closed
        with pytest.raises(StopAsyncIteration):
            await _next(messages)

    @pytest.mark.asyncio
    async def test_frames_for_other_topics_are_ignored(self, realtime, fake_socket, settle):
        channel = realtime.channel("room-1")
        messages = channel.broadcast_flow().subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("room-2", "broadcast", {"type": "broadcast", "event": "chat", "payload": {"n": 1}})
        await settle()

        with pytest.raises(TimeoutError):
            await _next(messages, timeout=0.05)
        messages.close()


# ──────────────────────────────────────────────────────────────
# Test connection loss
# ──────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestConnectionLoss:
    """Channels drop to UNSUBSCRIBED with the socket and can join again."""

    @pytest.mark.asyncio
    async def test_disconnect_releases_channel(self, realtime, fake_socket, http_requests):
        channel = realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)

        await realtime.disconnect()

        assert channel.status.value is ChannelStatus.UNSUBSCRIBED
        assert realtime.channel("room-1") is channel

        await channel.broadcast("chat", {"text": "hi"})

        assert fake_socket.frames("broadcast") == []
        assert http_requests[0].url.path == "/api/realtime/broadcast"
        assert json.loads(http_requests[0].content)["topic"] == "room-1"

    @pytest.mark.asyncio
    async def test_server_close_then_rejoin_with_same_changes(self, realtime, fake_socket, settle):
        channel = realtime.channel("todos")
        inserts = channel.postgres_change_flow(Insert, table="todos").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.server_close()
        await settle()

        assert channel.status.value is ChannelStatus.UNSUBSCRIBED
        assert not realtime.is_connected

        await realtime.connect()
        await channel.subscribe(block_until_subscribed=True)

        joins = fake_socket.frames("phx_join")
        assert len(joins) == 2
        assert joins[0]["payload"]["config"]["postgres_changes"] == joins[1]["payload"]["config"]["postgres_changes"]
        assert joins[0]["ref"] != joins[1]["ref"]
        assert channel.status.value is ChannelStatus.SUBSCRIBED

        fake_socket.push("todos", "postgres_changes", _change("INSERT", record={"id": 7}))
        await settle()

        action = await _next(inserts)
        assert action.record == {"id": 7}
        inserts.close()

    @pytest.mark.asyncio
    async def test_socket_failure_fails_pending_join(self, realtime, fake_socket):
        await realtime.connect()
        fake_socket.auto_reply = False
        channel = realtime.channel("room-1")
        join = asyncio.create_task(channel.subscribe(block_until_subscribed=True))
        for _ in range(5):
            await asyncio.sleep(0)
        assert channel.status.value is ChannelStatus.SUBSCRIBING

        fake_socket.fail(ConnectionError("reset by peer"))

        with pytest.raises(ChannelJoinError) as exc_info:
            await asyncio.wait_for(join, 1)
        assert exc_info.value.code == "CONNECTION_LOST"
        assert channel.status.value is ChannelStatus.UNSUBSCRIBED

    @pytest.mark.asyncio
    async def test_unsubscribed_channel_ignores_loss(self, realtime, fake_socket, settle):
        channel = realtime.channel("room-1")
        statuses: list[ChannelStatus] = []
        channel.status.watch(statuses.append)
        await realtime.connect()

        fake_socket.server_close()
        await settle()

        assert channel.status.value is ChannelStatus.UNSUBSCRIBED
        assert ChannelStatus.SUBSCRIBING not in statuses


# ──────────────────────────────────────────────────────────────
# Test broadcast
# ──────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestBroadcast:
    """Socket and HTTP broadcast paths."""

    @pytest.mark.asyncio
    async def test_own_broadcast_is_received(self, realtime):
        channel = realtime.channel("room-1", broadcast=BroadcastConfig(receive_own_broadcasts=True))
        messages = channel.broadcast_flow("chat").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        await channel.broadcast("chat", {"text": "hi"})

        assert await _next(messages) == {"text": "hi"}
        messages.close()

    @pytest.mark.asyncio
    async def test_broadcast_frame_shape(self, realtime, fake_socket):
        channel = realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)

        await channel.broadcast("chat", ChatMessage(text="hi"))

        frame = fake_socket.frames("broadcast")[0]
        assert frame == {
            "topic": "room-1",
            "event": "broadcast",
            "payload": {"type": "broadcast", "event": "chat", "payload": {"text": "hi"}},
        }

    @pytest.mark.asyncio
    async def test_broadcast_falls_back_to_http(self, realtime, fake_socket, http_requests):
        channel = realtime.channel("room-1")

        await channel.broadcast("chat", {"text": "hi"})

        assert fake_socket.sent == []
        request = http_requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/realtime/broadcast"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert json.loads(request.content) == {"topic": "room-1", "event": "chat", "payload": {"text": "hi"}}

    @pytest.mark.asyncio
    async def test_acknowledged_broadcast_waits_for_reply(self, realtime, fake_socket):
        channel = realtime.channel("room-1", broadcast=BroadcastConfig(acknowledge_broadcasts=True))
        await channel.subscribe(block_until_subscribed=True)

        await asyncio.wait_for(channel.broadcast("chat", {"text": "hi"}), 1)

        frame = fake_socket.frames("broadcast")[0]
        assert frame["ref"]

    @pytest.mark.asyncio
    async def test_missing_ack_is_logged_not_raised(self, realtime, fake_socket, caplog):
        channel = realtime.channel("room-1", broadcast=BroadcastConfig(acknowledge_broadcasts=True))
        await channel.subscribe(block_until_subscribed=True)
        fake_socket.auto_reply = False

        with caplog.at_level(logging.WARNING, logger="insforge"):
            await channel.broadcast("chat", {"text": "hi"})

        assert "Broadcast not acknowledged" in caplog.text

    @pytest.mark.asyncio
    async def test_typed_broadcast_flow(self, realtime, fake_socket, settle):
        channel = realtime.channel("room-1")
        messages = channel.broadcast_flow("chat", model=ChatMessage).subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("room-1", "broadcast", {"type": "broadcast", "event": "chat", "payload": {"bad": 1}})
        fake_socket.push("room-1", "broadcast", {"type": "broadcast", "event": "chat", "payload": {"text": "ok"}})
        await settle()

        assert await _next(messages) == ChatMessage(text="ok")
        messages.close()

    @pytest.mark.asyncio
    async def test_wildcard_flow_and_deregistration(self, realtime, fake_socket, settle):
        channel = realtime.channel("room-1")
        everything = channel.broadcast_flow().subscribe()
        chat_only = channel.broadcast_flow("chat").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("room-1", "broadcast", {"type": "broadcast", "event": "typing", "payload": {"u": "a"}})
        await settle()
        chat_only.close()
        fake_socket.push("room-1", "broadcast", {"type": "broadcast", "event": "chat", "payload": {"t": "x"}})
        await settle()

        assert await _next(everything) == {"u": "a"}
        assert await _next(everything) == {"t": "x"}
        with pytest.raises(StopAsyncIteration):
            await _next(chat_only)
        everything.close()


# ──────────────────────────────────────────────────────────────
# Test change events
# ──────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestPostgresChanges:
    """Change-event flows, filters and ordering."""

    @pytest.mark.asyncio
    async def test_insert_delivered_exactly_once(self, realtime, fake_socket, settle):
        await realtime.connect()
        channel = realtime.channel("todos")
        inserts = channel.postgres_change_flow(Insert, schema="public").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("todos", "postgres_changes", _change("INSERT", record={"id": 1, "title": "x"}))
        await settle()

        action = await _next(inserts)
        assert isinstance(action, Insert)
        assert action.record == {"id": 1, "title": "x"}
        assert action.table == "todos"
        with pytest.raises(TimeoutError):
            await _next(inserts, timeout=0.05)
        inserts.close()

    @pytest.mark.asyncio
    async def test_registration_after_subscribed_fails_fast(self, realtime, fake_socket):
        channel = realtime.channel("todos")
        await channel.subscribe(block_until_subscribed=True)
        sent_before = len(fake_socket.sent)

        with pytest.raises(ChannelStateError, match="before calling subscribe"):
            channel.postgres_change_flow(Insert)

        assert len(fake_socket.sent) == sent_before

    @pytest.mark.asyncio
    async def test_kind_selects_action_type(self, realtime, fake_socket, settle):
        channel = realtime.channel("todos")
        updates = channel.postgres_change_flow(Update).subscribe()
        everything = channel.postgres_change_flow("*").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("todos", "postgres_changes", _change("INSERT", record={"id": 1}))
        fake_socket.push("todos", "postgres_changes", _change("UPDATE", record={"id": 1}, old_record={"id": 1}))
        fake_socket.push("todos", "postgres_changes", _change("DELETE", old_record={"id": 1}))
        await settle()

        assert isinstance(await _next(updates), Update)
        kinds = [type(await _next(everything)) for _ in range(3)]
        assert kinds == [Insert, Update, Delete]
        updates.close()
        everything.close()

    @pytest.mark.asyncio
    async def test_filters_applied_locally(self, realtime, fake_socket, settle):
        channel = realtime.channel("orders")
        big = channel.postgres_change_flow(
            Insert,
            table="orders",
            configure=lambda f: f.where("total", FilterOperator.GT, 100),
        ).subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("orders", "postgres_changes", _change("INSERT", record={"total": 50}, table="orders"))
        fake_socket.push("orders", "postgres_changes", _change("INSERT", record={"total": 150}, table="orders"))
        fake_socket.push("orders", "postgres_changes", _change("INSERT", record={"total": 500}, table="users"))
        await settle()

        action = await _next(big)
        assert action.record == {"total": 150}
        with pytest.raises(TimeoutError):
            await _next(big, timeout=0.05)
        big.close()

    @pytest.mark.asyncio
    async def test_strict_filters_setting(self, http, socket_factory, fake_socket):
        settings = RealtimeSettings(heartbeat_interval=0, strict_filters=True)
        manager = Realtime(http, settings, socket_factory=socket_factory)
        channel = manager.channel("todos")
        typo = channel.postgres_change_flow(Insert, filter="status=equals.open").subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("todos", "postgres_changes", _change("INSERT", record={"status": "open"}))
        await fake_socket.settle()
        await manager.drain()

        with pytest.raises(TimeoutError):
            await _next(typo, timeout=0.05)
        await manager.close()

    @pytest.mark.asyncio
    async def test_invalid_change_payload_is_dropped(self, realtime, fake_socket, settle):
        channel = realtime.channel("todos")
        inserts = channel.postgres_change_flow(Insert).subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("todos", "postgres_changes", {"data": {"schema": "public", "type": "INSERT"}})
        fake_socket.push("todos", "postgres_changes", _change("INSERT", record={"id": 2}))
        await settle()

        assert (await _next(inserts)).record == {"id": 2}
        inserts.close()

    @pytest.mark.asyncio
    async def test_per_topic_order_is_preserved(self, realtime, fake_socket, settle):
        channel = realtime.channel("todos")
        inserts = channel.postgres_change_flow(Insert).subscribe()
        await channel.subscribe(block_until_subscribed=True)

        for i in range(20):
            fake_socket.push("todos", "postgres_changes", _change("INSERT", record={"id": i}))
        await settle()

        ids = [(await _next(inserts)).record["id"] for _ in range(20)]
        assert ids == list(range(20))
        inserts.close()


# ──────────────────────────────────────────────────────────────
# Test presence
# ──────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestPresence:
    @pytest.mark.asyncio
    async def test_track_and_untrack_frames(self, realtime, fake_socket):
        channel = realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)

        await channel.track({"status": "online"})
        await channel.untrack()

        track, untrack = fake_socket.frames("presence")
        assert track["payload"] == {"type": "presence", "event": "track", "payload": {"status": "online"}}
        assert untrack["payload"] == {"type": "presence", "event": "untrack"}

    @pytest.mark.asyncio
    async def test_presence_flow_and_state(self, realtime, fake_socket, settle):
        channel = realtime.channel("room-1")
        changes = channel.presence_change_flow().subscribe()
        await channel.subscribe(block_until_subscribed=True)

        fake_socket.push("room-1", "presence_state", {"alice": {"metas": [{"phx_ref": "1", "name": "Alice"}]}})
        fake_socket.push(
            "room-1",
            "presence_diff",
            {
                "joins": {"bob": {"metas": [{"phx_ref": "2", "name": "Bob"}]}},
                "leaves": {"alice": {"metas": [{"phx_ref": "1"}]}},
            },
        )
        await settle()

        synced = await _next(changes)
        diff = await _next(changes)
        assert list(synced.joins) == ["alice"]
        assert list(diff.joins) == ["bob"]
        assert diff.leaves["alice"].presence_ref == "1"
        assert channel.presence_state() == {"bob": [{"phx_ref": "2", "name": "Bob"}]}
        changes.close()
