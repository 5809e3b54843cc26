"""In-memory filtering, ordering, grouping and paging over normalized rows."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from reportquery.catalog.types import Operator, SemanticType
from reportquery.engine.results import GroupSummary, Row, RowWarning
from reportquery.query.binding import BoundFilter
from reportquery.query.model import OrderBy, Pagination

# A missing value only satisfies the negative operators.
_NULL_MATCHES = frozenset(
    {Operator.NOT_EQUALS, Operator.NOT_CONTAINS, Operator.NOT_EXISTS, Operator.IS_EMPTY}
)


def _fold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and not value)


def _array_matches(op: Operator, values: Sequence[Any], wanted: Any) -> bool:
    folded = [_fold(str(item)) for item in values]
    target = _fold(str(wanted))
    if op is Operator.EQUALS:
        return target in folded
    if op is Operator.NOT_EQUALS:
        return target not in folded
    if op is Operator.CONTAINS:
        return any(target in item for item in folded)
    if op is Operator.NOT_CONTAINS:
        return not any(target in item for item in folded)
    return False


def matches(row: Row, bound: BoundFilter) -> bool:  # noqa: C901, PLR0911, PLR0912
    """
    Evaluate one bound filter against a normalized row.

    String comparisons are case-insensitive. A ``None`` value matches only
    ``not_equals``, ``not_contains``, ``not_exists`` and ``is_empty``.

    Returns
    -------
    bool
        True when the row satisfies the filter.
    """
    op = bound.operator
    value = row.get(bound.descriptor.name)
    if op is Operator.EXISTS:
        return value is not None
    if op is Operator.NOT_EXISTS:
        return value is None
    if op is Operator.IS_EMPTY:
        return _is_empty(value)
    if op is Operator.IS_NOT_EMPTY:
        return not _is_empty(value)
    if value is None:
        return op in _NULL_MATCHES
    if bound.descriptor.semantic_type is SemanticType.ARRAY and isinstance(value, (list, tuple)):
        return _array_matches(op, value, bound.value)
    if op is Operator.OLDER_THAN:
        return isinstance(value, datetime) and bound.cutoff is not None and value <= bound.cutoff
    if op is Operator.NEWER_THAN:
        return isinstance(value, datetime) and bound.cutoff is not None and value >= bound.cutoff

    left = _fold(value)
    if op is Operator.IN:
        return left in {_fold(item) for item in bound.value}
    right = _fold(bound.value)
    if op is Operator.EQUALS:
        return left == right
    if op is Operator.NOT_EQUALS:
        return left != right
    if op in (Operator.CONTAINS, Operator.NOT_CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH):
        text, needle = str(left), str(right)
        if op is Operator.CONTAINS:
            return needle in text
        if op is Operator.NOT_CONTAINS:
            return needle not in text
        if op is Operator.STARTS_WITH:
            return text.startswith(needle)
        return text.endswith(needle)
    try:
        if op is Operator.GREATER_THAN:
            return left > right
        if op is Operator.LESS_THAN:
            return left < right
        if op is Operator.GREATER_OR_EQUAL:
            return left >= right
        if op is Operator.LESS_OR_EQUAL:
            return left <= right
    except TypeError:
        return False
    return False


def apply_filters(rows: Iterable[Row], filters: Sequence[BoundFilter]) -> list[Row]:
    """
    Keep rows satisfying every filter (logical AND).

    Returns
    -------
    list[Row]
        Matching rows in their original order.
    """
    if not filters:
        return list(rows)
    return [row for row in rows if all(matches(row, bound) for bound in filters)]


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (1, 0)
    if isinstance(value, (list, tuple)):
        return (0, ",".join(str(item).casefold() for item in value))
    return (0, _fold(value))


def sort_rows(rows: Sequence[Row], field: str, *, descending: bool = False) -> list[Row]:
    """
    Stable sort on one field with nulls last in either direction.

    Returns
    -------
    list[Row]
        Sorted copy of ``rows``.
    """
    present = [row for row in rows if row.get(field) is not None]
    missing = [row for row in rows if row.get(field) is None]
    try:
        ordered = sorted(present, key=lambda row: _sort_key(row.get(field)), reverse=descending)
    except TypeError:
        ordered = sorted(
            present, key=lambda row: str(_sort_key(row.get(field))[1]), reverse=descending
        )
    return ordered + missing


def apply_order(rows: Sequence[Row], order_by: OrderBy | None) -> list[Row]:
    """
    Apply an optional ``orderBy``.

    Returns
    -------
    list[Row]
        Ordered rows.
    """
    if order_by is None:
        return list(rows)
    return sort_rows(rows, order_by.field, descending=order_by.descending)


def group_rows(rows: Sequence[Row], field: str) -> tuple[list[Row], list[GroupSummary]]:
    """
    Cluster rows by a field, keeping the incoming order within each group.

    Groups are ordered by key ascending with the null group last.

    Returns
    -------
    tuple[list[Row], list[GroupSummary]]
        Rows arranged group by group, and per-group counts.
    """
    buckets: dict[Any, list[Row]] = {}
    labels: dict[Any, Any] = {}
    for row in rows:
        value = row.get(field)
        key = _sort_key(value)
        key = (key[0], str(key[1])) if isinstance(key[1], (datetime, bool)) else key
        buckets.setdefault(key, []).append(row)
        labels.setdefault(key, value)
    try:
        ordered_keys = sorted(buckets)
    except TypeError:
        ordered_keys = sorted(buckets, key=lambda k: (k[0], str(k[1])))
    grouped: list[Row] = []
    summaries: list[GroupSummary] = []
    for key in ordered_keys:
        grouped.extend(buckets[key])
        summaries.append(GroupSummary(value=labels[key], count=len(buckets[key])))
    return grouped, summaries


def paginate(rows: Sequence[Row], pagination: Pagination) -> list[Row]:
    """
    Slice the requested page.

    Returns
    -------
    list[Row]
        Rows of the page; empty when the page is past the end.
    """
    return list(rows[pagination.offset : pagination.offset + pagination.page_size])


def project(rows: Iterable[Row], fields: Sequence[str]) -> list[Row]:
    """
    Restrict rows to the selected fields, in selection order.

    Returns
    -------
    list[Row]
        New row mappings.
    """
    return [{name: row.get(name) for name in fields} for row in rows]


def relocate_row_warnings(
    fetched: Sequence[Row], returned: Sequence[Row], warnings: Iterable[RowWarning]
) -> list[RowWarning]:
    """
    Point row warnings at the rows actually returned.

    Filtering, ordering, grouping and paging move row objects without copying
    them, so rows are matched by identity. A warning's ``row`` becomes the
    position in ``returned``; warnings for rows outside it are dropped.

    Returns
    -------
    list[RowWarning]
        Warnings in result order.
    """
    positions = {id(row): index for index, row in enumerate(returned)}
    relocated: list[tuple[int, RowWarning]] = []
    for warning in warnings:
        if warning.row is None or not 0 <= warning.row < len(fetched):
            continue
        position = positions.get(id(fetched[warning.row]))
        if position is not None:
            relocated.append((position, replace(warning, row=position)))
    relocated.sort(key=lambda item: item[0])
    return [warning for _, warning in relocated]
