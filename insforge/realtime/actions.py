"""Typed change events decoded from ``postgres_changes`` frames."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, TypeVar

from pydantic import TypeAdapter

logger = logging.getLogger(__name__)

M = TypeVar("M")


class PostgresChangeEvent(StrEnum):
    """Event kinds a change-event subscription can ask for."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


def _decode(record: dict[str, Any], model: type[M]) -> M:
    return TypeAdapter(model).validate_python(record)


@dataclass(frozen=True)
class Insert:
    """A row was inserted."""

    event: ClassVar[str] = PostgresChangeEvent.INSERT.value

    schema: str
    table: str
    record: dict[str, Any]
    commit_timestamp: str | None = None

    @property
    def filter_record(self) -> dict[str, Any]:
        return self.record

    def decode_record(self, model: type[M]) -> M:
        return _decode(self.record, model)


@dataclass(frozen=True)
class Update:
    """A row was updated; ``old_record`` may be empty without replica identity."""

    event: ClassVar[str] = PostgresChangeEvent.UPDATE.value

    schema: str
    table: str
    record: dict[str, Any]
    old_record: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: str | None = None

    @property
    def filter_record(self) -> dict[str, Any]:
        return self.record

    def decode_record(self, model: type[M]) -> M:
        return _decode(self.record, model)

    def decode_old_record(self, model: type[M]) -> M:
        return _decode(self.old_record, model)


@dataclass(frozen=True)
class Delete:
    """A row was deleted."""

    event: ClassVar[str] = PostgresChangeEvent.DELETE.value

    schema: str
    table: str
    old_record: dict[str, Any]
    commit_timestamp: str | None = None

    @property
    def filter_record(self) -> dict[str, Any]:
        return self.old_record

    def decode_old_record(self, model: type[M]) -> M:
        return _decode(self.old_record, model)


PostgresAction = Insert | Update | Delete

ACTION_TYPES: dict[PostgresChangeEvent, tuple[type, ...]] = {
    PostgresChangeEvent.INSERT: (Insert,),
    PostgresChangeEvent.UPDATE: (Update,),
    PostgresChangeEvent.DELETE: (Delete,),
    PostgresChangeEvent.ALL: (Insert, Update, Delete),
}


def _record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def decode_postgres_action(payload: dict[str, Any]) -> PostgresAction | None:
    """Build the action carried by a ``postgres_changes`` payload.

    The change may be nested under ``data`` or sit at the top level.

    Returns:
        The action, or None when a required field is missing or mistyped.
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        data = payload

    schema = data.get("schema")
    table = data.get("table")
    kind = data.get("type") or data.get("eventType")
    if not isinstance(schema, str) or not isinstance(table, str) or not isinstance(kind, str):
        logger.debug("Dropping change event without schema/table/type", extra={"payload": payload})
        return None

    timestamp = data.get("commit_timestamp")
    commit_timestamp = str(timestamp) if timestamp is not None else None
    record = _record(data.get("record"))
    old_record = _record(data.get("old_record"))

    match kind.upper():
        case PostgresChangeEvent.INSERT if record is not None:
            return Insert(schema=schema, table=table, record=record, commit_timestamp=commit_timestamp)
        case PostgresChangeEvent.UPDATE if record is not None:
            return Update(
                schema=schema,
                table=table,
                record=record,
                old_record=old_record or {},
                commit_timestamp=commit_timestamp,
            )
        case PostgresChangeEvent.DELETE if old_record is not None:
            return Delete(schema=schema, table=table, old_record=old_record, commit_timestamp=commit_timestamp)
        case _:
            logger.debug(
                "Dropping change event with missing record",
                extra={"type": kind, "schema": schema, "table": table},
            )
            return None
