"""Realtime wire framing.

Every frame is a JSON text message shaped as::

    {"topic": "room-1", "event": "phx_join", "payload": {...}, "ref": "7"}

``payload`` and ``ref`` are optional on the wire. Replies to a request carry
the request's ``ref`` and the ``phx_reply`` event.
"""

from __future__ import annotations

import itertools
import json
import threading
from dataclasses import dataclass, field
from typing import Any

from insforge.realtime.schemas import RealtimeError, SocketMessage, SocketMessageMeta

# Channel lifecycle
PHX_JOIN = "phx_join"
PHX_LEAVE = "phx_leave"
PHX_REPLY = "phx_reply"
PHX_ERROR = "phx_error"
PHX_CLOSE = "phx_close"

# Low-level subscription
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"

# Channel payload types
BROADCAST = "broadcast"
POSTGRES_CHANGES = "postgres_changes"
PRESENCE = "presence"
PRESENCE_STATE = "presence_state"
PRESENCE_DIFF = "presence_diff"

# Connection keep-alive
HEARTBEAT = "heartbeat"
PHOENIX_TOPIC = "phoenix"

REALTIME_ERROR = "realtime:error"

# Events emitted by the connection manager itself
EVENT_CONNECT = "connect"
EVENT_CONNECT_ERROR = "connect_error"
EVENT_DISCONNECT = "disconnect"
EVENT_ERROR = "error"

_META_KEYS = ("channel", "messageId", "senderType", "senderId", "timestamp")


@dataclass
class Frame:
    """One realtime protocol message."""

    topic: str
    event: str
    payload: dict[str, Any] | None = field(default_factory=dict)
    ref: str | None = None

    @property
    def is_reply(self) -> bool:
        return self.event == PHX_REPLY


class RefCounter:
    """Thread-safe monotonic counter rendering refs as strings."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            return str(next(self._counter))


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to JSON text, omitting unset optional keys."""
    data: dict[str, Any] = {"topic": frame.topic, "event": frame.event}
    if frame.payload is not None:
        data["payload"] = frame.payload
    if frame.ref is not None:
        data["ref"] = frame.ref
    return json.dumps(data, separators=(",", ":"), default=str)


def decode_frame(raw: str | bytes) -> Frame | None:
    """Parse one inbound text message.

    Returns:
        The frame, or None when the message is not a well-formed frame
        (binary data, invalid JSON, wrong shape).
    """
    if not isinstance(raw, str):
        return None

    try:
        data = json.loads(raw)
    except ValueError:
        return None

    if not isinstance(data, dict):
        return None

    event = data.get("event")
    if not isinstance(event, str) or not event:
        return None

    topic = data.get("topic")
    if topic is None:
        topic = ""
    elif not isinstance(topic, str):
        return None

    payload = data.get("payload")
    if payload is None:
        payload = {}
    elif not isinstance(payload, dict):
        return None

    ref = data.get("ref")
    return Frame(
        topic=topic,
        event=event,
        payload=payload,
        ref=str(ref) if ref is not None else None,
    )


def reply_succeeded(payload: dict[str, Any]) -> bool:
    """Whether a reply payload reports success (``status: ok`` or ``ok: true``)."""
    return payload.get("status") == "ok" or payload.get("ok") is True


def reply_error(payload: dict[str, Any], default_code: str, default_message: str) -> RealtimeError:
    """Extract ``{code, message}`` from a failed reply payload."""
    error = payload.get("error")
    if not isinstance(error, dict):
        error = payload.get("response")
    if not isinstance(error, dict):
        error = {}

    code = error.get("code")
    message = error.get("message") or error.get("reason")
    return RealtimeError(
        code=str(code) if code else default_code,
        message=str(message) if message else default_message,
    )


def to_socket_message(frame: Frame) -> SocketMessage:
    """Build the listener-facing message for a frame.

    Server messages either nest delivery metadata under ``meta`` (everything
    else in the payload is user data) or carry it as flat keys.
    """
    payload = dict(frame.payload or {})
    raw_meta = payload.pop("meta", None)

    if isinstance(raw_meta, dict):
        meta = SocketMessageMeta.model_validate(raw_meta)
        data = payload
    else:
        meta = SocketMessageMeta.model_validate(
            {key: payload[key] for key in _META_KEYS if key in payload}
        )
        inner = payload.get("payload")
        data = inner if isinstance(inner, dict) else payload

    if meta.channel is None and frame.topic:
        meta = meta.model_copy(update={"channel": frame.topic})

    inner_event = payload.get("event")
    return SocketMessage(
        meta=meta,
        event=inner_event if isinstance(inner_event, str) and inner_event else frame.event,
        payload=data,
    )
