"""In-memory representation of a validated report query."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import StrEnum
from typing import Any

from reportquery.catalog.types import Operator
from reportquery.query.parameters import ParameterDefinition
from reportquery.sources import SourceKind


class SortDirection(StrEnum):
    """Ordering direction."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class FilterClause:
    """Single ``field operator value`` predicate; clauses are AND-ed together."""

    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class OrderBy:
    """Sort key for the result set."""

    field: str
    direction: SortDirection = SortDirection.ASC

    @property
    def descending(self) -> bool:
        """True for descending order."""
        return self.direction is SortDirection.DESC


@dataclass(frozen=True)
class Pagination:
    """One-based page window over the result set."""

    page: int = 1
    page_size: int = 100

    @property
    def offset(self) -> int:
        """Rows skipped before the requested page."""
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        """Rows needed to satisfy the requested page (``page * page_size``)."""
        return self.page * self.page_size


@dataclass(frozen=True)
class QueryDefinition:
    """
    Validated, source-agnostic query.

    Field names are canonical catalog names. Filter values are coerced to
    the field's semantic type, except values that reference a parameter
    placeholder (``{{name}}``), which are bound at compile time.
    """

    source: SourceKind
    selected_fields: tuple[str, ...]
    filters: tuple[FilterClause, ...] = ()
    group_by: str | None = None
    order_by: OrderBy | None = None
    pagination: Pagination = field(default_factory=Pagination)
    parameters: Mapping[str, Any] = field(default_factory=dict)
    parameter_definitions: Mapping[str, ParameterDefinition] = field(default_factory=dict)

    def referenced_fields(self) -> tuple[str, ...]:
        """
        Return every field the query touches, without duplicates.

        Returns
        -------
        tuple[str, ...]
            Selected, filtered, grouped and ordered fields in that order.
        """
        names: list[str] = list(self.selected_fields)
        names.extend(clause.field for clause in self.filters)
        if self.group_by:
            names.append(self.group_by)
        if self.order_by:
            names.append(self.order_by.field)
        return tuple(dict.fromkeys(names))

    def with_parameters(self, overrides: Mapping[str, Any]) -> QueryDefinition:
        """
        Return a copy whose parameters are merged with ``overrides``.

        Returns
        -------
        QueryDefinition
            New definition; overrides win over stored values.
        """
        merged = dict(self.parameters)
        merged.update(overrides)
        return replace(self, parameters=merged)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item) for item in value]
    return value


def serialize(definition: QueryDefinition) -> dict[str, Any]:
    """
    Convert a definition back into the raw request shape accepted by the validator.

    Parameters
    ----------
    definition:
        Validated query.

    Returns
    -------
    dict[str, Any]
        JSON-friendly request payload.
    """
    payload: dict[str, Any] = {
        "source": definition.source.value,
        "fields": list(definition.selected_fields),
        "filters": [
            {
                "field": clause.field,
                "operator": clause.operator.value,
                "value": _serialize_value(clause.value),
            }
            for clause in definition.filters
        ],
        "pagination": {
            "page": definition.pagination.page,
            "pageSize": definition.pagination.page_size,
        },
    }
    if definition.group_by is not None:
        payload["groupBy"] = definition.group_by
    if definition.order_by is not None:
        payload["orderBy"] = {
            "field": definition.order_by.field,
            "direction": definition.order_by.direction.value,
        }
    if definition.parameters:
        payload["parameters"] = {
            name: _serialize_value(value) for name, value in definition.parameters.items()
        }
    if definition.parameter_definitions:
        payload["parameterDefinitions"] = {
            name: spec.to_dict() for name, spec in definition.parameter_definitions.items()
        }
    return payload
