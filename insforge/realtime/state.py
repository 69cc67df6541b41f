"""Connection state and a small observable value container."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from uuid import uuid4

from insforge.realtime.dispatcher import run_handler
from insforge.realtime.streams import CallbackStream

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Disconnected:
    """No socket is open."""


@dataclass(frozen=True)
class Connecting:
    """A socket open is in progress."""


@dataclass(frozen=True)
class Connected:
    """The socket is open and the read loop is running."""


@dataclass(frozen=True)
class ConnectionFailed:
    """Opening the socket failed, or the open socket hit an I/O error."""

    message: str


ConnectionState = Disconnected | Connecting | Connected | ConnectionFailed


class ObservableValue(Generic[T]):
    """Thread-safe holder that notifies watchers and wakes waiters on change.

    Example:
        state = ObservableValue(Disconnected())
        state.watch(lambda value: print("now", value))
        await state.wait_for(lambda value: isinstance(value, Connected))
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._lock = threading.Lock()
        self._watchers: dict[str, Callable[[T], Any]] = {}
        self._waiters: list[tuple[Callable[[T], bool], asyncio.Future[T]]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        """Replace the value; equal values do not notify."""
        with self._lock:
            if value == self._value:
                return
            self._value = value
            watchers = list(self._watchers.values())
            ready = [(pred, fut) for pred, fut in self._waiters if pred(value)]
            for waiter in ready:
                self._waiters.remove(waiter)

        for _, future in ready:
            loop = future.get_loop()
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, future, value)

        for watcher in watchers:
            run_handler(watcher, value, label="state_change")

    def watch(self, callback: Callable[[T], Any]) -> str:
        """Call ``callback`` with every new value. Returns a watch id."""
        watch_id = str(uuid4())
        with self._lock:
            self._watchers[watch_id] = callback
        return watch_id

    def unwatch(self, watch_id: str) -> None:
        with self._lock:
            self._watchers.pop(watch_id, None)

    async def wait_for(self, predicate: Callable[[T], bool]) -> T:
        """Suspend until the value satisfies ``predicate``.

        There is no timeout; wrap the call in ``asyncio.wait_for`` when one
        is needed.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if predicate(self._value):
                return self._value
            future: asyncio.Future[T] = loop.create_future()
            waiter = (predicate, future)
            self._waiters.append(waiter)

        try:
            return await future
        finally:
            with self._lock:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

    def stream(self) -> CallbackStream[T]:
        """Lazy sequence of subsequent values."""
        return CallbackStream(self.watch, self.unwatch)


def _resolve(future: asyncio.Future[Any], value: Any) -> None:
    if not future.done():
        future.set_result(value)
