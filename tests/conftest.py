"""Pytest configuration and shared fixtures.

Organization:
    - Environment: keep settings independent of the developer's shell
    - HTTP Fixtures: InsforgeHttpClient over httpx.MockTransport
    - Realtime Fixtures: in-memory socket and a Realtime wired to it

The fake socket plays a minimal realtime server: it acknowledges joins,
subscribes and acknowledged broadcasts, echoes broadcasts back on channels
joined with ``self: true``, and lets tests push arbitrary frames.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx
import pytest

from insforge.core.settings import RealtimeSettings, clear_all_caches
from insforge.infra.http import InsforgeHttpClient
from insforge.realtime import Realtime

os.environ.setdefault("INSFORGE_BASE_URL", "http://localhost:7130")
os.environ.setdefault("REALTIME_HEARTBEAT_INTERVAL", "0")

BASE_URL = "http://localhost:7130"

_EOF = object()


# ============================================================================
# Fake realtime server
# ============================================================================


class FakeSocket:
    """In-memory socket that records outbound frames and plays replies."""

    def __init__(self) -> None:
        self.url: str | None = None
        self.headers: dict[str, str] = {}
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.auto_reply = True
        # topic -> error body returned instead of an ok reply
        self.reject: dict[str, dict[str, Any]] = {}
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._echo_topics: set[str] = set()

    # Outbound ------------------------------------------------------------

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("socket is closed")
        frame = json.loads(message)
        self.sent.append(frame)
        if self.auto_reply:
            self._respond(frame)

    def _respond(self, frame: dict[str, Any]) -> None:
        topic = frame["topic"]
        ref = frame.get("ref")
        payload = frame.get("payload") or {}

        match frame["event"]:
            case "phx_join" | "subscribe":
                if topic in self.reject:
                    self.reply(topic, ref, status="error", response=self.reject[topic])
                    return
                if payload.get("config", {}).get("broadcast", {}).get("self"):
                    self._echo_topics.add(topic)
                self.reply(topic, ref)
            case "broadcast":
                if topic in self._echo_topics:
                    self.push(topic, "broadcast", payload)
                if ref is not None:
                    self.reply(topic, ref)
            case "heartbeat":
                self.reply(topic, ref)

    def frames(self, event: str | None = None) -> list[dict[str, Any]]:
        """Outbound frames, optionally only those with ``event``."""
        return [frame for frame in self.sent if event is None or frame["event"] == event]

    # Inbound -------------------------------------------------------------

    def reply(self, topic: str, ref: str | None, status: str = "ok", response: dict | None = None) -> None:
        self.feed_json(
            {
                "topic": topic,
                "event": "phx_reply",
                "ref": ref,
                "payload": {"status": status, "response": response or {}},
            }
        )

    def push(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        self.feed_json({"topic": topic, "event": event, "payload": payload})

    def feed_json(self, data: Any) -> None:
        self.feed(json.dumps(data))

    def feed(self, raw: str | bytes) -> None:
        self._incoming.put_nowait(raw)

    def fail(self, error: Exception) -> None:
        """Make the read loop see ``error``."""
        self._incoming.put_nowait(error)

    def server_close(self) -> None:
        self._incoming.put_nowait(_EOF)

    async def settle(self) -> None:
        """Wait until the reader has processed every fed item."""
        await self._incoming.join()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_EOF)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._incoming.get()
            try:
                if item is _EOF:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
            finally:
                self._incoming.task_done()


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Reload settings for every test."""
    clear_all_caches()
    yield
    clear_all_caches()


# ============================================================================
# HTTP Fixtures
# ============================================================================


@pytest.fixture
def http_requests() -> list[httpx.Request]:
    """Requests seen by the mock transport."""
    return []


@pytest.fixture
def http_handler(http_requests) -> Callable[[httpx.Request], httpx.Response]:
    """Default mock handler: record the request and answer ``{}``.

    Override in a test module to serve specific responses.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        return httpx.Response(200, json={})

    return handler


@pytest.fixture
async def http(http_handler) -> AsyncGenerator[InsforgeHttpClient]:
    client = InsforgeHttpClient(
        base_url=BASE_URL,
        anon_key="anon-key",
        transport=httpx.MockTransport(http_handler),
    )
    yield client
    await client.close()


# ============================================================================
# Realtime Fixtures
# ============================================================================


@pytest.fixture
def fake_socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def realtime_settings() -> RealtimeSettings:
    return RealtimeSettings(heartbeat_interval=0, broadcast_ack_timeout=0.2, connect_timeout=1)


@pytest.fixture
def socket_factory(fake_socket):
    """Socket factory handing out ``fake_socket`` and recording the URL/headers."""

    async def factory(url: str, headers: dict[str, str]) -> FakeSocket:
        fake_socket.url = url
        fake_socket.headers = headers
        return fake_socket

    return factory


@pytest.fixture
async def realtime(http, realtime_settings, socket_factory) -> AsyncGenerator[Realtime]:
    manager = Realtime(http, realtime_settings, socket_factory=socket_factory)
    yield manager
    await manager.close()


@pytest.fixture
def settle(fake_socket, realtime):
    """Wait until frames fed so far reached every callback."""

    async def _settle() -> None:
        await fake_socket.settle()
        await realtime.drain()
        # Let stream consumers and async handlers run
        for _ in range(3):
            await asyncio.sleep(0)

    return _settle
