"""Typed normalization of raw backend rows."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from reportquery.catalog.types import FieldCatalog, FieldDescriptor
from reportquery.compilers.directory import datetime_to_filetime
from reportquery.connectors.base import RawRow
from reportquery.engine.normalize import (
    ValueCoercionError,
    filetime_to_datetime,
    normalize_datetime,
    normalize_rows,
    parse_generalized_time,
)
from tests._helpers.expect import expect_equal, expect_length, expect_none

LOGON = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)


def _fields(catalog: FieldCatalog, *names: str) -> list[FieldDescriptor]:
    fields = [catalog.get(name) for name in names]
    if any(field is None for field in fields):
        message = f"missing fields in {names}"
        raise AssertionError(message)
    return [field for field in fields if field is not None]


def test_directory_values_are_typed(directory_catalog: FieldCatalog) -> None:
    """Flags, FileTime, GeneralizedTime, integers and arrays normalize to Python types."""
    raw = RawRow(
        attributes={
            "SAMACCOUNTNAME": ["jdoe"],
            "userAccountControl": ["514"],
            "lastLogonTimestamp": [str(datetime_to_filetime(LOGON))],
            "whenCreated": ["20240131120000.0Z"],
            "badPwdCount": ["3"],
            "memberOf": ["CN=Admins", "CN=Staff"],
        }
    )
    fields = _fields(
        directory_catalog,
        "accountName", "enabled", "lastLogon", "whenCreated", "badPasswordCount", "memberOf",
        "department",
    )
    rows, warnings = normalize_rows([raw], fields)
    expect_equal(warnings, [])
    expect_equal(
        rows[0],
        {
            "accountName": "jdoe",
            "enabled": False,
            "lastLogon": LOGON,
            "whenCreated": datetime(2024, 1, 31, 12, 0, tzinfo=UTC),
            "badPasswordCount": 3,
            "memberOf": ["CN=Admins", "CN=Staff"],
            "department": None,
        },
    )


def test_unreadable_attribute_keeps_row_and_warns(directory_catalog: FieldCatalog) -> None:
    """A per-row read error becomes a null value and one warning."""
    rows_in = [
        RawRow(attributes={"sAMAccountName": ["a"], "department": ["IT"]}),
        RawRow(attributes={"sAMAccountName": ["b"]}, errors={"Department": "insufficient access"}),
    ]
    rows, warnings = normalize_rows(rows_in, _fields(directory_catalog, "accountName", "department"))
    expect_equal([row["department"] for row in rows], ["IT", None])
    expect_length(warnings, 1)
    warning = warnings[0]
    expect_equal((warning.code, warning.row, warning.field), ("attribute_unreadable", 1, "department"))
    expect_equal(
        warning.message, "Attribute department could not be read (insufficient access)"
    )


def test_uncoercible_value_warns(directory_catalog: FieldCatalog) -> None:
    """Values of the wrong type become null with a value_invalid warning."""
    rows, warnings = normalize_rows(
        [RawRow(attributes={"badPwdCount": ["many"]})],
        _fields(directory_catalog, "badPasswordCount"),
    )
    expect_none(rows[0]["badPasswordCount"])
    expect_equal(warnings[0].code, "value_invalid")


def test_cloud_nested_paths_and_references(cloud_directory_catalog: FieldCatalog) -> None:
    """Slash paths read nested objects and references render their display name."""
    raw = RawRow(
        attributes={
            "signInActivity": {"lastSignInDateTime": "2024-03-01T08:00:00Z"},
            "manager": {"id": "42", "displayName": "Pat Boss"},
            "accountEnabled": True,
        }
    )
    rows, _ = normalize_rows(
        [raw], _fields(cloud_directory_catalog, "lastSignInDateTime", "manager", "accountEnabled")
    )
    expect_equal(
        rows[0], {"lastSignInDateTime": LOGON, "manager": "Pat Boss", "accountEnabled": True}
    )


def test_datetime_helpers() -> None:
    """Never sentinels map to None; unknown text raises."""
    expect_none(filetime_to_datetime(0))
    expect_none(filetime_to_datetime(0x7FFFFFFFFFFFFFFF))
    expect_equal(filetime_to_datetime(datetime_to_filetime(LOGON)), LOGON)
    expect_equal(
        parse_generalized_time("20240131120000.0+0100"), datetime(2024, 1, 31, 11, 0, tzinfo=UTC)
    )
    expect_none(parse_generalized_time("yesterday"))
    expect_equal(normalize_datetime(0), None)
    with pytest.raises(ValueCoercionError):
        normalize_datetime("not a date")
