"""Serial off-loop delivery of inbound items.

The socket read loop must never run application callbacks itself. Each
channel (and each topic seen by the connection-level dispatcher) owns a
``DeliveryWorker``: the read loop enqueues items and returns immediately, and
the worker hands them to the target in arrival order on a worker thread.
Awaiting each call keeps per-topic ordering; running it off the event loop
keeps a blocking handler from stalling the socket or other topics.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from insforge.realtime.dispatcher import handler_loop

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """FIFO queue drained by one background task.

    The task starts lazily on the first ``submit`` made from inside a running
    event loop.
    """

    def __init__(self, target: Callable[[Any], None], name: str) -> None:
        self._target = target
        self._name = name
        self._queue: asyncio.Queue[Any] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, item: Any) -> None:
        """Queue ``item`` for delivery."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=f"delivery:{self._name}")
        self._queue.put_nowait(item)

    async def _run(self) -> None:
        queue = self._queue
        assert queue is not None
        # Copied into every worker thread so async handlers land on this loop
        handler_loop.set(asyncio.get_running_loop())
        while True:
            item = await queue.get()
            try:
                await asyncio.to_thread(self._target, item)
            except Exception:
                logger.exception(
                    "Delivery target failed",
                    extra={"worker": self._name},
                )
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued item has been delivered."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker; undelivered items are discarded."""
        task, self._task = self._task, None
        self._queue = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
