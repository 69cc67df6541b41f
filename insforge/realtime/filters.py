"""Change-event filter configuration and evaluation.

A filter string has the form ``column=operator.value``::

    status=eq.pending
    price=gt.100
    status=in.(active,pending)

Evaluation compares the column's string rendering for ``eq``/``neq``/``in``
and parses both sides as floats for ``gt``/``gte``/``lt``/``lte``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from insforge.realtime.actions import PostgresAction

logger = logging.getLogger(__name__)

WILDCARD = "*"


class FilterOperator(StrEnum):
    """Operators accepted in a filter string."""

    EQ = "eq"
    NEQ = "neq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"


_OPERATORS = frozenset(FilterOperator)


@dataclass(frozen=True)
class PostgresChangeConfig:
    """One change-event subscription announced in a channel join.

    ``event`` is ``INSERT``, ``UPDATE``, ``DELETE`` or ``*``.
    """

    event: str
    schema: str = "public"
    table: str | None = None
    filter: str | None = None

    def to_key(self) -> str:
        """Composite key used to de-duplicate announced configs."""
        return (
            f"postgres_changes:{self.schema}:{self.table or WILDCARD}:"
            f"{self.event}:{self.filter or WILDCARD}"
        )

    def to_payload(self) -> dict[str, str]:
        payload = {"event": self.event, "schema": self.schema}
        if self.table is not None:
            payload["table"] = self.table
        if self.filter is not None:
            payload["filter"] = self.filter
        return payload


class PostgresChangeFilter:
    """Builder passed to ``Channel.postgres_change_flow(configure=...)``.

    Example:
        def only_pending(f: PostgresChangeFilter) -> None:
            f.table = "orders"
            f.where("status", FilterOperator.EQ, "pending")
    """

    def __init__(self, event: str, schema: str) -> None:
        self.event = event
        self.schema = schema
        self.table: str | None = None
        self.filter: str | None = None

    def where(self, column: str, operator: FilterOperator | str, value: Any) -> PostgresChangeFilter:
        """Set the filter to ``column=operator.value``."""
        op = FilterOperator(operator)
        if op is FilterOperator.IN:
            return self.where_in(column, value)
        self.filter = f"{column}={op.value}.{render_value(value)}"
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> PostgresChangeFilter:
        """Set the filter to ``column=in.(v1,v2,...)``."""
        rendered = ",".join(render_value(value) for value in values)
        self.filter = f"{column}=in.({rendered})"
        return self

    def build(self) -> PostgresChangeConfig:
        return PostgresChangeConfig(
            event=self.event,
            schema=self.schema,
            table=self.table,
            filter=self.filter,
        )


@dataclass(frozen=True)
class ParsedFilter:
    column: str
    operator: str
    value: str


def parse_filter(expression: str) -> ParsedFilter | None:
    """Split ``column=operator.value``; None when the string is malformed."""
    column, sep, rest = expression.partition("=")
    if not sep or not column:
        return None
    operator, dot, value = rest.partition(".")
    if not dot or not operator:
        return None
    return ParsedFilter(column=column, operator=operator, value=value)


def render_value(value: Any) -> str:
    """String form of a record value as compared by filters.

    Strings are used as-is; everything else uses its JSON rendering, so
    ``True`` compares as ``true`` and ``None`` as ``null``.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), default=str)


def _to_float(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def matches_filter(record: Mapping[str, Any], expression: str, strict: bool = False) -> bool:
    """Evaluate a filter string against a record.

    A malformed expression or unknown operator matches unless ``strict``.
    A missing column never matches, and neither does a non-numeric side of
    an ordering comparison.
    """
    parsed = parse_filter(expression)
    if parsed is None:
        if strict:
            logger.warning("Rejecting change event for malformed filter", extra={"filter": expression})
        return not strict

    if parsed.operator not in _OPERATORS:
        if strict:
            logger.warning(
                "Rejecting change event for unknown filter operator",
                extra={"filter": expression, "operator": parsed.operator},
            )
        return not strict

    if parsed.column not in record:
        return False

    actual = render_value(record[parsed.column])
    expected = parsed.value

    match parsed.operator:
        case FilterOperator.EQ:
            return actual == expected
        case FilterOperator.NEQ:
            return actual != expected
        case FilterOperator.GT | FilterOperator.GTE | FilterOperator.LT | FilterOperator.LTE:
            left, right = _to_float(actual), _to_float(expected)
            if left is None or right is None:
                return False
            match parsed.operator:
                case FilterOperator.GT:
                    return left > right
                case FilterOperator.GTE:
                    return left >= right
                case FilterOperator.LT:
                    return left < right
                case _:
                    return left <= right
        case _:  # in
            options = expected.removeprefix("(").removesuffix(")").split(",")
            return actual in (option.strip() for option in options)


def matches_config(action: PostgresAction, config: PostgresChangeConfig, strict: bool = False) -> bool:
    """Whether ``action`` should be delivered to a subscription with ``config``."""
    if action.schema != config.schema:
        return False
    if config.table is not None and config.table != action.table:
        return False
    if config.event != WILDCARD and config.event != action.event:
        return False
    if config.filter:
        return matches_filter(action.filter_record, config.filter, strict=strict)
    return True


def dedupe_configs(configs: Iterable[PostgresChangeConfig]) -> list[PostgresChangeConfig]:
    """Drop configs sharing a composite key, keeping first occurrences."""
    unique: dict[str, PostgresChangeConfig] = {}
    for config in configs:
        unique.setdefault(config.to_key(), config)
    return list(unique.values())
