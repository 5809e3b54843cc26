"""Coerce filter values to field types and bind parameter placeholders."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from reportquery.catalog.types import (
    PRESENCE_OPERATORS,
    RELATIVE_DATE_OPERATORS,
    FieldCatalog,
    FieldDescriptor,
    Operator,
    SemanticType,
)
from reportquery.query.model import FilterClause, QueryDefinition
from reportquery.query.parameters import placeholders_in, substitute

_TRUE_TEXT = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_TEXT = frozenset({"false", "0", "no", "n", "off"})


@dataclass(frozen=True)
class BoundFilter:
    """
    Filter clause resolved against a catalog with a typed value.

    For ``older_than``/``newer_than`` the value is the number of days and
    ``cutoff`` holds the resolved instant.
    """

    descriptor: FieldDescriptor
    operator: Operator
    value: Any = None
    cutoff: datetime | None = None


def start_of_day(moment: datetime) -> datetime:
    """
    Truncate an instant to midnight UTC of the same day.

    Returns
    -------
    datetime
        Aware UTC datetime at 00:00.
    """
    utc = moment.astimezone(UTC) if moment.tzinfo else moment.replace(tzinfo=UTC)
    return datetime.combine(utc.date(), time.min, tzinfo=UTC)


def parse_datetime(value: Any) -> datetime:
    """
    Parse ISO 8601 text, dates or datetimes into an aware UTC datetime.

    Returns
    -------
    datetime
        Aware datetime in UTC.

    Raises
    ------
    ValueError
        If the value is not a recognizable date/time.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        message = f"Expected a date/time, got {value!r}"
        raise ValueError(message)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_TEXT:
        return True
    if text in _FALSE_TEXT:
        return False
    message = f"Expected a boolean, got {value!r}"
    raise ValueError(message)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        message = f"Expected an integer, got {value!r}"
        raise ValueError(message)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError as exc:
        message = f"Expected an integer, got {value!r}"
        raise ValueError(message) from exc


def _to_text(value: Any) -> str:
    if value is None or isinstance(value, (list, tuple, dict)):
        message = f"Expected a text value, got {value!r}"
        raise ValueError(message)
    return str(value)


def _scalar(semantic_type: SemanticType, value: Any) -> Any:
    if semantic_type is SemanticType.BOOLEAN:
        return _to_bool(value)
    if semantic_type is SemanticType.INTEGER:
        return _to_int(value)
    if semantic_type is SemanticType.DATETIME:
        return parse_datetime(value)
    return _to_text(value)


def coerce_filter_value(descriptor: FieldDescriptor, operator: Operator, value: Any) -> Any:
    """
    Coerce a filter value to what ``operator`` expects on ``descriptor``.

    Parameters
    ----------
    descriptor:
        Field being filtered.
    operator:
        Operator already known to be allowed for the field.
    value:
        Raw value from the request (placeholders already substituted).

    Returns
    -------
    Any
        ``None`` for presence operators, a day count for relative date
        operators, a tuple for ``in``, otherwise a typed scalar.

    Raises
    ------
    ValueError
        If the value cannot be coerced.
    """
    if operator in PRESENCE_OPERATORS:
        return None
    if operator in RELATIVE_DATE_OPERATORS:
        days = _to_int(value)
        if days < 0:
            message = f"Day count must be non-negative, got {days}"
            raise ValueError(message)
        return days
    if operator is Operator.IN:
        items = value.split(",") if isinstance(value, str) else value
        if not isinstance(items, (list, tuple)) or not items:
            message = "Operator 'in' expects a non-empty list"
            raise ValueError(message)
        return tuple(_scalar(descriptor.semantic_type, _strip(item)) for item in items)
    if descriptor.semantic_type is SemanticType.ARRAY:
        return _to_text(value)
    return _scalar(descriptor.semantic_type, value)


def _strip(item: Any) -> Any:
    return item.strip() if isinstance(item, str) else item


def is_placeholder_value(value: Any) -> bool:
    """
    Return whether a raw value references a parameter placeholder.

    Returns
    -------
    bool
        True when any ``{{name}}`` placeholder appears in the value.
    """
    return bool(placeholders_in(value))


def bind_clause(
    clause: FilterClause,
    descriptor: FieldDescriptor,
    parameters: Mapping[str, Any],
    definition: QueryDefinition,
    *,
    now: datetime,
) -> BoundFilter:
    """
    Substitute placeholders in one clause and coerce its value.

    Returns
    -------
    BoundFilter
        Bound filter; relative date operators carry the computed cutoff.

    Raises
    ------
    ValueError
        If a placeholder has no value or the value fails coercion.
    """
    try:
        raw = substitute(
            clause.value, parameters, definition.parameter_definitions, now=now
        )
    except KeyError as exc:
        message = f"Parameter {exc.args[0]} has no value"
        raise ValueError(message) from exc
    value = coerce_filter_value(descriptor, clause.operator, raw)
    cutoff = None
    if clause.operator in RELATIVE_DATE_OPERATORS:
        cutoff = now - timedelta(days=int(value))
    return BoundFilter(descriptor=descriptor, operator=clause.operator, value=value, cutoff=cutoff)


def bind_filters(
    definition: QueryDefinition, catalog: FieldCatalog, *, now: datetime
) -> tuple[BoundFilter, ...]:
    """
    Bind every filter of a validated definition against a catalog.

    Returns
    -------
    tuple[BoundFilter, ...]
        Bound filters in definition order.

    Raises
    ------
    LookupError
        If a filter references a field the catalog does not contain.
    ValueError
        If a value fails to bind.
    """
    bound: list[BoundFilter] = []
    for clause in definition.filters:
        descriptor = catalog.get(clause.field)
        if descriptor is None:
            message = f"Unknown field {clause.field!r} in catalog v{catalog.version}"
            raise LookupError(message)
        bound.append(bind_clause(clause, descriptor, definition.parameters, definition, now=now))
    return tuple(bound)
