"""Keyed listener registry with error-isolated delivery.

Listeners are plain callables taking one payload argument. A listener that
returns an awaitable (``async def``) is scheduled on the running event loop
instead of being awaited, so emitting never blocks on slow listeners. When
emitting from a delivery thread, awaitables go to the loop in ``handler_loop``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]

# Keeps scheduled listener coroutines alive until they finish
_background_tasks: set[asyncio.Task] = set()

# Event loop that owns handlers invoked from delivery threads
handler_loop: ContextVar[asyncio.AbstractEventLoop | None] = ContextVar("handler_loop", default=None)


def run_handler(handler: Handler, payload: Any, *, label: str) -> None:
    """Invoke one handler, logging instead of raising its failures.

    Args:
        handler: Callable to invoke with ``payload``.
        payload: Value passed to the handler.
        label: Name used in log records (event name, callback kind).
    """
    try:
        result = handler(payload)
    except Exception:
        logger.exception(
            "Realtime handler failed",
            extra={"handler_label": label, "handler": _handler_name(handler)},
        )
        return

    if not inspect.isawaitable(result):
        return

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        loop = handler_loop.get()
        if loop is None or loop.is_closed():
            logger.error(
                "Async handler invoked without a running event loop",
                extra={"handler_label": label, "handler": _handler_name(handler)},
            )
            if inspect.iscoroutine(result):
                result.close()
            return
        loop.call_soon_threadsafe(_schedule, result, label)
        return

    _schedule(result, label)


def _schedule(awaitable: Awaitable[Any], label: str) -> None:
    task = asyncio.ensure_future(awaitable)
    _background_tasks.add(task)
    task.add_done_callback(lambda t: _finish_task(t, label))


def _finish_task(task: asyncio.Task, label: str) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Async realtime handler failed",
            extra={"handler_label": label, "error": str(exc)},
            exc_info=exc,
        )


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventDispatcher:
    """Registry of listeners keyed by exact event name.

    Registration order is delivery order. Emitting snapshots the listener
    table under the lock and invokes listeners outside it, so a listener may
    add or remove listeners (itself included) while being invoked.

    Example:
        dispatcher = EventDispatcher()
        listener_id = dispatcher.on("order_updated", lambda msg: print(msg))
        dispatcher.emit("order_updated", {"id": 1})
        dispatcher.off("order_updated", listener_id)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # event -> {registration id -> handler}; dicts keep insertion order
        self._listeners: dict[str, dict[str, Handler]] = {}

    def on(self, event: str, handler: Handler) -> str:
        """Register ``handler`` for ``event``.

        Returns:
            Registration id accepted by ``off``.
        """
        registration_id = str(uuid4())
        with self._lock:
            self._listeners.setdefault(event, {})[registration_id] = handler
        return registration_id

    def off(self, event: str, handler_or_id: Handler | str) -> None:
        """Remove a listener by registration id or by the handler itself.

        Removing an unknown listener is a no-op.
        """
        with self._lock:
            listeners = self._listeners.get(event)
            if not listeners:
                return

            if isinstance(handler_or_id, str):
                listeners.pop(handler_or_id, None)
            else:
                for registration_id, handler in list(listeners.items()):
                    if handler is handler_or_id or getattr(handler, "__wrapped__", None) is handler_or_id:
                        del listeners[registration_id]

            if not listeners:
                del self._listeners[event]

    def once(self, event: str, handler: Handler) -> str:
        """Register ``handler`` to run for the next ``event`` only."""
        registration_id = ""

        def wrapper(payload: Any) -> Any:
            self.off(event, registration_id)
            return handler(payload)

        wrapper.__wrapped__ = handler  # type: ignore[attr-defined]
        registration_id = self.on(event, wrapper)
        return registration_id

    def emit(self, event: str, payload: Any = None) -> int:
        """Invoke every listener registered for ``event``.

        Returns:
            Number of listeners invoked.
        """
        with self._lock:
            handlers = list(self._listeners.get(event, {}).values())

        for handler in handlers:
            run_handler(handler, payload, label=event)
        return len(handlers)

    def listener_count(self, event: str | None = None) -> int:
        """Number of listeners for ``event``, or for all events."""
        with self._lock:
            if event is not None:
                return len(self._listeners.get(event, {}))
            return sum(len(listeners) for listeners in self._listeners.values())

    def clear(self) -> None:
        """Remove every listener."""
        with self._lock:
            self._listeners.clear()
