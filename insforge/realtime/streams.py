"""Cold, callback-backed async streams.

A ``CallbackStream`` does nothing until a consumer attaches. Each attachment
(``subscribe()`` or ``async for``) registers its own callback and gets its
own queue; closing the attachment removes the callback before ``close()``
returns, so no item is delivered to it afterwards.

Usage:
    async with channel.broadcast_flow("chat").subscribe() as messages:
        async for payload in messages:
            ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Register = Callable[[Callable[[Any], None]], str]
Unregister = Callable[[str], None]

_CLOSED = object()


class StreamSubscription(Generic[T]):
    """One consumer's attachment to a ``CallbackStream``."""

    def __init__(
        self,
        register: Register,
        unregister: Unregister,
        transform: Callable[[Any], T] | None = None,
        on_close: Callable[[StreamSubscription[T]], None] | None = None,
    ) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._unregister = unregister
        self._transform = transform
        self._on_close = on_close
        self._closed = False
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._registration_id = register(self._push)

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: Any) -> None:
        if self._closed:
            return

        if self._transform is not None:
            try:
                item = self._transform(item)
            except Exception:
                logger.exception("Dropping stream item that failed to decode")
                return

        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._queue.put_nowait, item)
                return
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Detach: remove the backing callback and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._unregister(self._registration_id)
        if self._on_close is not None:
            self._on_close(self)
        self._queue.put_nowait(_CLOSED)

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> StreamSubscription[T]:
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> StreamSubscription[T]:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class CallbackStream(Generic[T]):
    """Lazy sequence whose every consumer gets a fresh callback registration."""

    def __init__(
        self,
        register: Register,
        unregister: Unregister,
        transform: Callable[[Any], T] | None = None,
        on_subscribe: Callable[[StreamSubscription[T]], None] | None = None,
        on_close: Callable[[StreamSubscription[T]], None] | None = None,
    ) -> None:
        self._register = register
        self._unregister = unregister
        self._transform = transform
        self._on_subscribe = on_subscribe
        self._on_close = on_close

    def subscribe(self) -> StreamSubscription[T]:
        """Attach a new consumer; its callback is registered immediately."""
        subscription: StreamSubscription[T] = StreamSubscription(
            self._register,
            self._unregister,
            transform=self._transform,
            on_close=self._on_close,
        )
        if self._on_subscribe is not None:
            self._on_subscribe(subscription)
        return subscription

    def __aiter__(self) -> StreamSubscription[T]:
        return self.subscribe()
