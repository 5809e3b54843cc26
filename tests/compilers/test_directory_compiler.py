"""LDAP filter rendering for the on-premises directory."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from reportquery.catalog.types import FieldCatalog
from reportquery.compilers.base import NativeQuery
from reportquery.compilers.directory import (
    FILETIME_EPOCH_OFFSET,
    DirectoryCompiler,
    build_complex_filter,
    datetime_to_filetime,
    datetime_to_generalized_time,
    escape_filter_value,
)
from reportquery.query.validator import QueryValidator
from reportquery.services.errors import CompileError
from reportquery.sources import SourceKind
from tests._helpers.builders import catalog_for, directory_query
from tests._helpers.expect import expect_equal, expect_true
from tests._helpers.fakes import FakeClock

BASE = "(objectClass=user)(objectCategory=person)"
TODAY = datetime(2024, 3, 15, tzinfo=UTC)


def _compile(raw: dict[str, Any], catalog: FieldCatalog) -> NativeQuery:
    clock = FakeClock()
    definition = QueryValidator(clock=clock).validate(raw, catalog)
    return DirectoryCompiler(clock=clock).compile(definition, catalog)


def _filter_for(catalog: FieldCatalog, *filters: dict[str, Any]) -> str:
    native = _compile(directory_query(filters=list(filters)), catalog)
    return native.payload["filter"]


def test_enabled_accounts_compile_to_bitwise_rule(directory_catalog: FieldCatalog) -> None:
    """enabled = true becomes a negated ACCOUNTDISABLE matching rule."""
    native = _compile(directory_query(), directory_catalog)
    expect_equal(
        native.payload["filter"],
        f"(&{BASE}(!(userAccountControl:1.2.840.113556.1.4.803:=2)))",
    )
    expect_equal(native.payload["attributes"], ["displayName", "sAMAccountName"])
    expect_equal(native.payload["scope"], "subtree")
    expect_true(native.native_pagination, message="no post-fetch work, paging is native")
    expect_equal(native.catalog_version, 1)


@pytest.mark.parametrize(
    ("clause", "expected"),
    [
        ({"field": "enabled", "operator": "equals", "value": False},
         "(userAccountControl:1.2.840.113556.1.4.803:=2)"),
        ({"field": "passwordNeverExpires", "operator": "equals", "value": True},
         "(userAccountControl:1.2.840.113556.1.4.803:=65536)"),
        ({"field": "badPasswordCount", "operator": "greater_than", "value": 3},
         "(&(badPwdCount>=3)(!(badPwdCount=3)))"),
        ({"field": "badPasswordCount", "operator": "less_or_equal", "value": 3},
         "(badPwdCount<=3)"),
        ({"field": "department", "operator": "contains", "value": "R&D (EU)*"},
         r"(department=*R&D \28EU\29\2a*)"),
        ({"field": "department", "operator": "equals", "value": ""}, "(!(department=*))"),
        ({"field": "department", "operator": "in", "value": ["Sales", "IT"]},
         "(|(department=Sales)(department=IT))"),
        ({"field": "email", "operator": "ends_with", "value": "@example.test"},
         "(mail=*@example.test)"),
        ({"field": "manager", "operator": "not_exists"}, "(!(manager=*))"),
        ({"field": "whenCreated", "operator": "newer_than", "value": 7},
         "(whenCreated>=20240308000000.0Z)"),
    ],
)
def test_filter_components(
    directory_catalog: FieldCatalog, clause: dict[str, Any], expected: str
) -> None:
    """Each operator renders the documented LDAP component."""
    expect_equal(_filter_for(directory_catalog, clause), f"(&{BASE}{expected})")


def test_relative_dates_bind_to_start_of_day_filetime(directory_catalog: FieldCatalog) -> None:
    """older_than on a FileTime attribute compares against midnight minus N days."""
    rendered = _filter_for(
        directory_catalog, {"field": "lastLogon", "operator": "older_than", "value": 90}
    )
    cutoff = datetime_to_filetime(TODAY - timedelta(days=90))
    expect_equal(rendered, f"(&{BASE}(lastLogonTimestamp<={cutoff}))")


def test_ordering_and_grouping_move_after_fetch(directory_catalog: FieldCatalog) -> None:
    """orderBy fields are fetched and paging is no longer native."""
    native = _compile(
        directory_query(orderBy={"field": "whenCreated", "direction": "desc"}, groupBy="department"),
        directory_catalog,
    )
    expect_true(not native.native_pagination, message="post-fetch work disables native paging")
    expect_equal(native.post_fetch.order_by.field, "whenCreated")
    expect_equal(native.post_fetch.group_by, "department")
    expect_equal(
        native.payload["attributes"],
        ["department", "displayName", "sAMAccountName", "whenCreated"],
    )
    expect_equal(native.selected_fields, ("accountName", "displayName"))


def test_compilation_is_deterministic(directory_catalog: FieldCatalog) -> None:
    """The same definition compiles to the same canonical form."""
    raw = directory_query(filters=[{"field": "lastLogon", "operator": "older_than", "value": 30}])
    expect_equal(
        _compile(raw, directory_catalog).canonical(), _compile(raw, directory_catalog).canonical()
    )


def test_other_source_definitions_are_rejected(directory_catalog: FieldCatalog) -> None:
    """The directory compiler refuses cloud definitions."""
    catalog = catalog_for(SourceKind.CLOUD_DIRECTORY)
    definition = QueryValidator().validate(
        {"source": "cloud_directory", "fields": ["displayName"]}, catalog
    )
    with pytest.raises(CompileError):
        DirectoryCompiler().compile(definition, directory_catalog)


def test_encoding_helpers() -> None:
    """FileTime, GeneralizedTime and escaping helpers follow the LDAP formats."""
    expect_equal(datetime_to_filetime(datetime(1970, 1, 1, tzinfo=UTC)), FILETIME_EPOCH_OFFSET)
    expect_equal(
        datetime_to_generalized_time(datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)), "20240102030405.0Z"
    )
    expect_equal(escape_filter_value("a\\b"), r"a\5cb")
    expect_equal(build_complex_filter([]), "(&(objectClass=user)(objectCategory=person))")
