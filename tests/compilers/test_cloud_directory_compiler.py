"""OData rendering for the cloud directory users endpoint."""

from __future__ import annotations

from typing import Any

import pytest

from reportquery.catalog.types import FieldCatalog
from reportquery.compilers.base import NativeQuery
from reportquery.compilers.cloud_directory import (
    CONSISTENCY_HEADER,
    GRAPH_MAX_PAGE_SIZE,
    CloudDirectoryCompiler,
    odata_literal,
    render_request_path,
)
from reportquery.query.validator import QueryValidator
from tests._helpers.expect import expect_equal, expect_in, expect_length, expect_true
from tests._helpers.fakes import FakeClock


def _request(**overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "source": "cloud_directory",
        "fields": ["displayName", "mail"],
        "filters": [{"field": "accountEnabled", "operator": "equals", "value": True}],
    }
    raw.update(overrides)
    return raw


def _compile(raw: dict[str, Any], catalog: FieldCatalog) -> NativeQuery:
    clock = FakeClock()
    definition = QueryValidator(clock=clock).validate(raw, catalog)
    return CloudDirectoryCompiler(clock=clock).compile(definition, catalog)


def test_simple_query_is_fully_native(cloud_directory_catalog: FieldCatalog) -> None:
    """Equality filters and paging go to the server."""
    native = _compile(_request(), cloud_directory_catalog)
    expect_equal(
        native.payload["params"],
        {"$select": "id,displayName,mail", "$filter": "accountEnabled eq true", "$top": "100"},
    )
    expect_equal(native.payload["headers"], {})
    expect_equal(native.payload["resource"], "users")
    expect_true(native.native_pagination, message="no post-fetch work")
    expect_equal(
        render_request_path(native),
        "users?$select=id,displayName,mail&$filter=accountEnabled%20eq%20true&$top=100",
    )


@pytest.mark.parametrize(
    ("clause", "expected"),
    [
        ({"field": "displayName", "operator": "starts_with", "value": "O'Brien"},
         "startswith(displayName,'O''Brien')"),
        ({"field": "department", "operator": "in", "value": ["Sales", "IT"]},
         "department in ('Sales','IT')"),
        ({"field": "proxyAddresses", "operator": "equals", "value": "smtp:a@example.test"},
         "proxyAddresses/any(x:x eq 'smtp:a@example.test')"),
        ({"field": "jobTitle", "operator": "exists"}, "jobTitle ne null"),
        ({"field": "createdDateTime", "operator": "newer_than", "value": 7},
         "createdDateTime ge 2024-03-08T00:00:00Z"),
    ],
)
def test_filter_expressions(
    cloud_directory_catalog: FieldCatalog, clause: dict[str, Any], expected: str
) -> None:
    """Each supported operator renders a $filter expression."""
    native = _compile(_request(filters=[clause]), cloud_directory_catalog)
    expect_equal(native.payload["params"]["$filter"], expected)
    expect_equal(native.warnings, ())


def test_advanced_operators_request_eventual_consistency(
    cloud_directory_catalog: FieldCatalog,
) -> None:
    """Nested paths and advanced operators add $count and the consistency header."""
    native = _compile(
        _request(
            fields=["displayName", "lastSignInDateTime"],
            filters=[{"field": "lastSignInDateTime", "operator": "older_than", "value": 30}],
        ),
        cloud_directory_catalog,
    )
    params = native.payload["params"]
    expect_equal(
        params["$filter"], "signInActivity/lastSignInDateTime le 2024-02-14T00:00:00Z"
    )
    expect_equal(params["$select"], "id,displayName,signInActivity")
    expect_equal(params["$count"], "true")
    expect_equal(native.payload["headers"], {CONSISTENCY_HEADER: "eventual"})


def test_unsupported_operator_falls_back_after_fetch(
    cloud_directory_catalog: FieldCatalog,
) -> None:
    """contains is evaluated in memory, with a warning, and paging leaves the server."""
    native = _compile(
        _request(
            filters=[
                {"field": "accountEnabled", "operator": "equals", "value": True},
                {"field": "department", "operator": "contains", "value": "eng"},
            ],
            orderBy={"field": "displayName"},
        ),
        cloud_directory_catalog,
    )
    params = native.payload["params"]
    expect_equal(params["$filter"], "accountEnabled eq true")
    expect_equal(params["$top"], str(GRAPH_MAX_PAGE_SIZE))
    expect_true("$orderby" not in params, message="order moves after fetch with fallbacks")
    expect_true(not native.native_pagination, message="fallback disables native paging")
    expect_length(native.post_fetch.filters, 1)
    expect_equal(native.post_fetch.order_by.field, "displayName")
    expect_length(native.warnings, 1)
    expect_equal(native.warnings[0].code, "filter_fallback")
    expect_in("department", params["$select"].split(","))


def test_native_order_with_filter_is_advanced(cloud_directory_catalog: FieldCatalog) -> None:
    """$orderby on a sortable property combined with $filter needs $count."""
    native = _compile(
        _request(orderBy={"field": "displayName", "direction": "desc"}), cloud_directory_catalog
    )
    params = native.payload["params"]
    expect_equal(params["$orderby"], "displayName desc")
    expect_equal(params["$count"], "true")
    expect_equal(native.post_fetch.order_by, None)
    expect_true(native.native_pagination, message="server handles ordering")


def test_unsortable_property_orders_after_fetch(cloud_directory_catalog: FieldCatalog) -> None:
    """Properties Graph cannot sort on are ordered in memory."""
    native = _compile(
        _request(filters=[], orderBy={"field": "lastSignInDateTime"}), cloud_directory_catalog
    )
    expect_true("$orderby" not in native.payload["params"], message="not natively sortable")
    expect_equal(native.post_fetch.order_by.field, "lastSignInDateTime")
    expect_in("signInActivity", native.payload["params"]["$select"].split(","))


def test_references_are_expanded_not_selected(cloud_directory_catalog: FieldCatalog) -> None:
    """Reference fields are resolved per user instead of through $select."""
    native = _compile(_request(fields=["displayName", "manager"]), cloud_directory_catalog)
    expect_equal(native.payload["params"]["$select"], "id,displayName")
    expect_equal(native.payload["expand_references"], ["manager"])


def test_odata_literals() -> None:
    """Literals follow OData quoting rules."""
    expect_equal(odata_literal("it's"), "'it''s'")
    expect_equal(odata_literal(False), "false")
    expect_equal(odata_literal(42), "42")
    expect_equal(odata_literal(None), "null")
