"""Per-channel callback tables.

Three independent tables keyed by registration id: broadcast callbacks
(selected by event name or ``*``), change-event callbacks (selected by a
``PostgresChangeConfig``) and presence callbacks (unselected). Triggering
snapshots matching entries under the lock and invokes them outside it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from insforge.realtime.actions import PostgresAction
from insforge.realtime.dispatcher import run_handler
from insforge.realtime.filters import WILDCARD, PostgresChangeConfig, dedupe_configs, matches_config
from insforge.realtime.presence import PresenceAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Entry:
    selector: Any
    callback: Callable[[Any], Any]


class CallbackManager:
    """Registration tables for one channel."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._broadcast: dict[str, _Entry] = {}
        self._postgres: dict[str, _Entry] = {}
        self._presence: dict[str, _Entry] = {}

    # ──────────────────────────────────────────────────────────────
    # Registration
    # ──────────────────────────────────────────────────────────────

    def _add(self, table: dict[str, _Entry], selector: Any, callback: Callable[[Any], Any]) -> str:
        callback_id = str(uuid4())
        with self._lock:
            table[callback_id] = _Entry(selector, callback)
        return callback_id

    def add_broadcast_callback(self, event: str, callback: Callable[[dict[str, Any]], Any]) -> str:
        """Register for broadcasts named ``event`` (``*`` for all)."""
        return self._add(self._broadcast, event, callback)

    def add_postgres_callback(self, config: PostgresChangeConfig, callback: Callable[[PostgresAction], Any]) -> str:
        return self._add(self._postgres, config, callback)

    def add_presence_callback(self, callback: Callable[[PresenceAction], Any]) -> str:
        return self._add(self._presence, None, callback)

    def remove_callback_by_id(self, callback_id: str) -> None:
        """Remove a registration from whichever table holds it."""
        with self._lock:
            for table in (self._broadcast, self._postgres, self._presence):
                if table.pop(callback_id, None) is not None:
                    return

    def clear(self) -> None:
        with self._lock:
            self._broadcast.clear()
            self._postgres.clear()
            self._presence.clear()

    # ──────────────────────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────────────────────

    def trigger_broadcast(self, event: str, payload: dict[str, Any]) -> int:
        with self._lock:
            callbacks = [
                entry.callback
                for entry in self._broadcast.values()
                if entry.selector == WILDCARD or entry.selector == event
            ]
        for callback in callbacks:
            run_handler(callback, payload, label=f"broadcast:{event}")
        return len(callbacks)

    def trigger_postgres_change(self, action: PostgresAction, strict: bool = False) -> int:
        with self._lock:
            entries = list(self._postgres.values())
        callbacks = [entry.callback for entry in entries if matches_config(action, entry.selector, strict=strict)]
        for callback in callbacks:
            run_handler(callback, action, label=f"postgres_changes:{action.event}")
        return len(callbacks)

    def trigger_presence(self, action: PresenceAction) -> int:
        with self._lock:
            callbacks = [entry.callback for entry in self._presence.values()]
        for callback in callbacks:
            run_handler(callback, action, label="presence")
        return len(callbacks)

    # ──────────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────────

    def get_postgres_configs(self) -> list[PostgresChangeConfig]:
        """Registered change-event configs, de-duplicated by composite key."""
        with self._lock:
            configs = [entry.selector for entry in self._postgres.values()]
        return dedupe_configs(configs)

    def has_broadcast_callbacks(self) -> bool:
        with self._lock:
            return bool(self._broadcast)

    def has_postgres_callbacks(self) -> bool:
        with self._lock:
            return bool(self._postgres)

    def has_presence_callbacks(self) -> bool:
        with self._lock:
            return bool(self._presence)

    def count(self) -> int:
        with self._lock:
            return len(self._broadcast) + len(self._postgres) + len(self._presence)
