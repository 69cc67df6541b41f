"""SDK entry point.

``InsforgeClient`` owns the shared HTTP client and the session token, and
creates the realtime module on first use.

Example:
    async with InsforgeClient("https://myapp.insforge.app", anon_key="anon") as client:
        client.set_access_token(session.access_token)

        channel = client.realtime.channel("room-1")
        await channel.subscribe(block_until_subscribed=True)
        await channel.broadcast("chat", {"text": "hi"})
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from insforge.core.settings import ClientSettings, RealtimeSettings, get_client_settings
from insforge.infra.http import InsforgeHttpClient
from insforge.realtime.manager import Realtime, SocketFactory

logger = logging.getLogger(__name__)


class InsforgeClient:
    """Backend client bundling the REST transport and realtime.

    Arguments left as None fall back to ``ClientSettings`` (``INSFORGE_*``
    environment variables).
    """

    def __init__(
        self,
        base_url: str | None = None,
        anon_key: str | None = None,
        access_token: str | None = None,
        *,
        access_token_provider: Callable[[], str | None] | None = None,
        settings: ClientSettings | None = None,
        realtime_settings: RealtimeSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        self.settings = settings or get_client_settings()
        self.base_url = (base_url or self.settings.base_url).rstrip("/")
        self.anon_key = anon_key if anon_key is not None else self.settings.anon_key.get_secret_value()
        self._access_token = access_token
        self._access_token_provider = access_token_provider

        self.http = InsforgeHttpClient(
            base_url=self.base_url,
            anon_key=self.anon_key,
            token_provider=self.get_current_access_token,
            timeout=self.settings.request_timeout,
            max_retries=self.settings.max_retries,
            headers=self.settings.headers,
            transport=transport,
        )

        self._realtime_settings = realtime_settings
        self._socket_factory = socket_factory
        self._realtime: Realtime | None = None

    @property
    def realtime(self) -> Realtime:
        """Realtime module, created on first access."""
        if self._realtime is None:
            self._realtime = Realtime(
                self.http,
                self._realtime_settings,
                socket_factory=self._socket_factory,
            )
        return self._realtime

    def set_access_token(self, token: str | None) -> None:
        """Set the session token; the socket reads it on its next connect."""
        self._access_token = token

    def get_current_access_token(self) -> str | None:
        """Session token if set, else the configured provider's token."""
        if self._access_token:
            return self._access_token
        if self._access_token_provider is not None:
            return self._access_token_provider()
        return None

    async def close(self) -> None:
        """Close realtime (if created) and the HTTP client."""
        if self._realtime is not None:
            await self._realtime.close()
        await self.http.close()
        logger.debug("Client closed", extra={"base_url": self.base_url})

    async def __aenter__(self) -> InsforgeClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
