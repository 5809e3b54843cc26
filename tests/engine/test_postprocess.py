"""In-memory filtering, ordering, grouping and paging."""

from __future__ import annotations

from typing import Any

from reportquery.catalog.types import FieldCatalog, Operator
from reportquery.engine.postprocess import (
    apply_filters,
    apply_order,
    group_rows,
    matches,
    paginate,
    project,
    relocate_row_warnings,
    sort_rows,
)
from reportquery.engine.results import GroupSummary, RowWarning
from reportquery.query.binding import BoundFilter
from reportquery.query.model import OrderBy, Pagination, SortDirection
from tests._helpers.expect import expect_equal, expect_true

ROWS: list[dict[str, Any]] = [
    {"displayName": "carol", "department": "Sales", "badPasswordCount": 2, "memberOf": ["CN=A"]},
    {"displayName": "Alice", "department": None, "badPasswordCount": 0, "memberOf": []},
    {"displayName": "bob", "department": "IT", "badPasswordCount": None, "memberOf": ["CN=B"]},
    {"displayName": "dave", "department": "sales", "badPasswordCount": 5, "memberOf": None},
]


def _bound(catalog: FieldCatalog, name: str, operator: Operator, value: Any = None) -> BoundFilter:
    descriptor = catalog.get(name)
    if descriptor is None:
        message = f"unknown field {name}"
        raise AssertionError(message)
    return BoundFilter(descriptor=descriptor, operator=operator, value=value)


def _names(rows: list[dict[str, Any]]) -> list[str]:
    return [row["displayName"] for row in rows]


def test_string_matching_is_case_insensitive(directory_catalog: FieldCatalog) -> None:
    """equals and starts_with ignore case."""
    equals = _bound(directory_catalog, "department", Operator.EQUALS, "SALES")
    expect_equal(_names(apply_filters(ROWS, [equals])), ["carol", "dave"])
    starts = _bound(directory_catalog, "displayName", Operator.STARTS_WITH, "a")
    expect_equal(_names(apply_filters(ROWS, [starts])), ["Alice"])


def test_nulls_only_match_negative_operators(directory_catalog: FieldCatalog) -> None:
    """A missing department satisfies not_equals but not equals or greater_than."""
    alice = ROWS[1]
    expect_true(
        matches(alice, _bound(directory_catalog, "department", Operator.NOT_EQUALS, "IT")),
        message="null matches not_equals",
    )
    expect_true(
        not matches(alice, _bound(directory_catalog, "department", Operator.CONTAINS, "a")),
        message="null never matches contains",
    )
    expect_true(
        matches(alice, _bound(directory_catalog, "department", Operator.NOT_EXISTS)),
        message="null matches not_exists",
    )
    expect_true(
        not matches(ROWS[2], _bound(directory_catalog, "badPasswordCount", Operator.GREATER_THAN, 1)),
        message="null integer never compares",
    )


def test_filters_are_anded(directory_catalog: FieldCatalog) -> None:
    """Every filter must hold."""
    filters = [
        _bound(directory_catalog, "department", Operator.EQUALS, "sales"),
        _bound(directory_catalog, "badPasswordCount", Operator.GREATER_THAN, 3),
    ]
    expect_equal(_names(apply_filters(ROWS, filters)), ["dave"])


def test_array_membership(directory_catalog: FieldCatalog) -> None:
    """Array equals tests membership and is_empty covers empty lists."""
    member = _bound(directory_catalog, "memberOf", Operator.EQUALS, "cn=a")
    expect_equal(_names(apply_filters(ROWS, [member])), ["carol"])
    empty = _bound(directory_catalog, "memberOf", Operator.IS_EMPTY)
    expect_equal(_names(apply_filters(ROWS, [empty])), ["Alice", "dave"])


def test_sorting_puts_nulls_last_in_both_directions() -> None:
    """Nulls sort after values whether ascending or descending."""
    ascending = sort_rows(ROWS, "badPasswordCount")
    expect_equal(_names(ascending), ["Alice", "carol", "dave", "bob"])
    descending = apply_order(ROWS, OrderBy("badPasswordCount", SortDirection.DESC))
    expect_equal(_names(descending), ["dave", "carol", "Alice", "bob"])
    expect_equal(_names(sort_rows(ROWS, "displayName")), ["Alice", "bob", "carol", "dave"])


def test_grouping_orders_keys_and_counts() -> None:
    """Groups are keyed case-insensitively in ascending order with nulls last."""
    grouped, summaries = group_rows(ROWS, "department")
    expect_equal(_names(grouped), ["bob", "carol", "dave", "Alice"])
    expect_equal(
        summaries,
        [GroupSummary("IT", 1), GroupSummary("Sales", 2), GroupSummary(None, 1)],
    )


def test_paging_and_projection() -> None:
    """Pages past the end are empty and projection keeps selection order."""
    expect_equal(_names(paginate(ROWS, Pagination(page=2, page_size=3))), ["dave"])
    expect_equal(paginate(ROWS, Pagination(page=3, page_size=3)), [])
    expect_equal(
        project(ROWS[:1], ["department", "displayName", "missing"]),
        [{"department": "Sales", "displayName": "carol", "missing": None}],
    )


def test_row_warnings_follow_rows_into_the_page() -> None:
    """Warnings are renumbered to result positions; rows left out lose theirs."""
    fetched = [dict(row) for row in ROWS]
    warnings = [
        RowWarning(code="attribute_unreadable", message="dept", row=1, field="department"),
        RowWarning(code="value_invalid", message="count", row=2, field="badPasswordCount"),
    ]
    ordered = sort_rows(fetched, "displayName", descending=True)
    page = paginate(ordered, Pagination(page=1, page_size=2))

    expect_equal(_names(page), ["dave", "carol"])
    expect_equal(relocate_row_warnings(fetched, page, warnings), [])

    ordered = sort_rows(fetched, "displayName")
    page = paginate(ordered, Pagination(page=1, page_size=2))
    relocated = relocate_row_warnings(fetched, page, warnings)

    expect_equal(_names(page), ["Alice", "bob"])
    expect_equal(
        [(warning.row, warning.field) for warning in relocated],
        [(0, "department"), (1, "badPasswordCount")],
    )
