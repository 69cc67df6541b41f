"""Python client for the InsForge backend.

Usage:
    from insforge import InsforgeClient

    async with InsforgeClient("https://myapp.insforge.app", anon_key="anon") as client:
        await client.realtime.connect()
"""

from __future__ import annotations

from insforge._version import __version__
from insforge.client import InsforgeClient
from insforge.core.exceptions import (
    ChannelJoinError,
    ChannelStateError,
    InsforgeException,
    InsforgeHttpException,
    InsforgeNetworkException,
    NotConnectedError,
    RealtimeConnectionError,
    RealtimeException,
)

__all__ = [
    "ChannelJoinError",
    "ChannelStateError",
    "InsforgeClient",
    "InsforgeException",
    "InsforgeHttpException",
    "InsforgeNetworkException",
    "NotConnectedError",
    "RealtimeConnectionError",
    "RealtimeException",
    "__version__",
]
