"""Presence payloads and the per-channel presence cache."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import TypeAdapter

M = TypeVar("M")


@dataclass(frozen=True)
class PresenceState:
    """One client's presence entry: its ``phx_ref`` and first meta object."""

    presence_ref: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class PresenceAction:
    """Clients that joined or left, keyed by presence key."""

    joins: dict[str, PresenceState] = field(default_factory=dict)
    leaves: dict[str, PresenceState] = field(default_factory=dict)

    def decode_joins(self, model: type[M]) -> list[M]:
        adapter = TypeAdapter(model)
        return [adapter.validate_python(state.payload) for state in self.joins.values()]

    def decode_leaves(self, model: type[M]) -> list[M]:
        adapter = TypeAdapter(model)
        return [adapter.validate_python(state.payload) for state in self.leaves.values()]


def _metas(entry: Any) -> list[dict[str, Any]]:
    if not isinstance(entry, dict):
        return []
    metas = entry.get("metas")
    if not isinstance(metas, list):
        return []
    return [meta for meta in metas if isinstance(meta, dict)]


def parse_presence_map(data: Any) -> dict[str, PresenceState]:
    """Parse ``{key: {"metas": [...]}}``; keys without metas are skipped."""
    if not isinstance(data, dict):
        return {}

    states: dict[str, PresenceState] = {}
    for key, entry in data.items():
        metas = _metas(entry)
        if not metas:
            continue
        first = metas[0]
        states[key] = PresenceState(presence_ref=str(first.get("phx_ref") or ""), payload=first)
    return states


class PresenceCache:
    """Local view of who is present, built from state and diff frames."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, list[dict[str, Any]]] = {}

    def sync(self, payload: dict[str, Any]) -> PresenceAction:
        """Replace the cache from a full ``presence_state`` payload."""
        with self._lock:
            self._entries = {key: _metas(entry) for key, entry in payload.items() if _metas(entry)}
        return PresenceAction(joins=parse_presence_map(payload))

    def apply_diff(self, payload: dict[str, Any]) -> PresenceAction:
        """Apply a ``presence_diff`` payload's joins and leaves."""
        raw_joins = payload.get("joins")
        raw_leaves = payload.get("leaves")
        with self._lock:
            if isinstance(raw_joins, dict):
                for key, entry in raw_joins.items():
                    metas = _metas(entry)
                    if metas:
                        self._entries[key] = metas
            if isinstance(raw_leaves, dict):
                for key in raw_leaves:
                    self._entries.pop(key, None)
        return PresenceAction(joins=parse_presence_map(raw_joins), leaves=parse_presence_map(raw_leaves))

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        with self._lock:
            return {key: list(metas) for key, metas in self._entries.items()}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
