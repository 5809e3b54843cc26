"""Usage report CSV parsing and the DuckDB-backed report connector."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from reportquery.catalog.standard_fields import (
    ACTIVE_USERS_REPORT,
    EMAIL_ACTIVITY_REPORT,
    MAILBOX_REPORT,
)
from reportquery.catalog.types import FieldCatalog
from reportquery.compilers import build_compilers
from reportquery.compilers.base import NativeQuery
from reportquery.compilers.cloud_suite import REPORT_TABLE
from reportquery.connectors.base import ConnectorQueryError, RawPage
from reportquery.connectors.reports import (
    UsageReportConnector,
    load_report_table,
    parse_report_csv,
    usage_report_factory,
)
from reportquery.query.validator import QueryValidator
from reportquery.sources import SourceKind
from tests._helpers.expect import expect_equal, expect_in, expect_length
from tests._helpers.fakes import FakeClock, GraphRoutes, make_credential

MAILBOX_CSV = (
    "\ufeffReport Refresh Date,User Principal Name,Display Name,Storage Used (Byte)\n"
    "2024-03-14,ann@example.test,Ann,5000\n"
    "2024-03-14,bo@example.test,Bo,200\n"
    "\n"
    "2024-03-14,cy@example.test,Cy,9000\n"
    "2024-03-14,dee@example.test,Dee,\n"
)
ACTIVE_CSV = (
    "Report Refresh Date,User Principal Name,Display Name,Assigned Products\n"
    "2024-03-14,ann@example.test,Ann,OFFICE 365 E3+POWER BI PRO\n"
    "2024-03-14,bo@example.test,Bo,\n"
)
MAILBOX_PATH = f"reports/{MAILBOX_REPORT}(period='D30')"
ACTIVE_PATH = f"reports/{ACTIVE_USERS_REPORT}(period='D30')"
THRESHOLD = 1000


def _csv(text: str) -> httpx.Response:
    return httpx.Response(200, text=text, headers={"Content-Type": "text/csv"})


def _compile(raw: dict[str, Any], catalog: FieldCatalog) -> NativeQuery:
    clock = FakeClock()
    definition = QueryValidator(clock=clock).validate({"source": "cloud_suite", **raw}, catalog)
    return build_compilers(clock=clock)[SourceKind.CLOUD_SUITE].compile(definition, catalog)


def _connector(routes: GraphRoutes) -> UsageReportConnector:
    return usage_report_factory(transport=routes.transport())(
        make_credential(SourceKind.CLOUD_SUITE)
    )


def _rows(pages: list[RawPage]) -> list[dict[str, object]]:
    return [row.attributes for page in pages for row in page.rows]


def test_parse_strips_bom_pads_rows_and_skips_blank_lines() -> None:
    """The header loses its BOM; short rows are padded and blank lines dropped."""
    header, rows = parse_report_csv("\ufeffA,B,C\n1,2\n\n4,5,6\n")
    expect_equal(header, ["A", "B", "C"])
    expect_equal(rows, [["1", "2", ""], ["4", "5", "6"]])
    expect_equal(parse_report_csv(""), ([], []))


def test_parse_applies_owner_header_aliases() -> None:
    """Owner columns are renamed unless the user column is already present."""
    header, _ = parse_report_csv("Owner Principal Name,Owner Display Name\nx,y\n")
    expect_equal(header, ["User Principal Name", "Display Name"])
    header, _ = parse_report_csv("User Principal Name,Owner Principal Name\nx,y\n")
    expect_equal(header, ["User Principal Name", "Owner Principal Name"])


def test_load_report_table_stores_empty_cells_as_null() -> None:
    """Empty strings become SQL NULL."""
    con = load_report_table(["Name", "Size"], [["a", "1"], ["b", ""]])
    try:
        nulls = con.execute(
            f'SELECT count(*) FROM {REPORT_TABLE} WHERE "Size" IS NULL'  # noqa: S608
        ).fetchone()
    finally:
        con.close()
    expect_equal(nulls, (1,))


def test_fetch_runs_compiled_sql_over_the_report(cloud_suite_catalog: FieldCatalog) -> None:
    """Typed comparisons and ordering run in DuckDB and the result is paged."""
    routes = GraphRoutes({MAILBOX_PATH: _csv(MAILBOX_CSV)})
    native = _compile(
        {
            "fields": ["userPrincipalName", "storageUsedInBytes"],
            "filters": [
                {"field": "storageUsedInBytes", "operator": "greater_than", "value": THRESHOLD},
            ],
            "orderBy": {"field": "storageUsedInBytes", "direction": "desc"},
        },
        cloud_suite_catalog,
    )
    pages = list(_connector(routes).fetch_pages(native, page_size=1))

    expect_equal([page.has_more for page in pages], [True, False])
    expect_equal(
        [row["User Principal Name"] for row in _rows(pages)],
        ["cy@example.test", "ann@example.test"],
    )
    expect_equal(routes.token_requests, 1)


def test_fetch_splits_array_columns(cloud_suite_catalog: FieldCatalog) -> None:
    """Plus-separated product lists become arrays; empty cells stay null."""
    routes = GraphRoutes({ACTIVE_PATH: _csv(ACTIVE_CSV)})
    native = _compile(
        {"fields": ["userPrincipalName", "assignedProducts"]}, cloud_suite_catalog
    )
    rows = _rows(list(_connector(routes).fetch_pages(native, page_size=100)))
    expect_equal(rows[0]["Assigned Products"], ["OFFICE 365 E3", "POWER BI PRO"])
    expect_equal(rows[1]["Assigned Products"], None)


def test_missing_report_column_is_a_query_error(cloud_suite_catalog: FieldCatalog) -> None:
    """A report lacking a compiled column fails the query."""
    routes = GraphRoutes({MAILBOX_PATH: _csv("User Principal Name\nann@example.test\n")})
    native = _compile(
        {"fields": ["userPrincipalName", "storageUsedInBytes"]}, cloud_suite_catalog
    )
    with pytest.raises(ConnectorQueryError, match="Storage Used"):
        list(_connector(routes).fetch_pages(native, page_size=100))


def test_schema_probe_reports_denied_reports() -> None:
    """Readable reports become groups with samples; denied ones are failed groups."""
    routes = GraphRoutes(
        {
            f"reports/{MAILBOX_REPORT}(period='D7')": _csv(MAILBOX_CSV),
            f"reports/{ACTIVE_USERS_REPORT}(period='D7')": _csv(ACTIVE_CSV),
            f"reports/{EMAIL_ACTIVITY_REPORT}(period='D7')": httpx.Response(
                403, json={"error": {"message": "Reports.Read.All required"}}
            ),
        }
    )
    probe = _connector(routes).describe_schema()

    expect_in(EMAIL_ACTIVITY_REPORT, probe.failed_groups)
    mailbox = {info.name: info for info in probe.groups[MAILBOX_REPORT]}
    expect_equal(mailbox["Display Name"].samples, ("Ann", "Bo", "Cy"))
    expect_length(probe.groups[ACTIVE_USERS_REPORT], 4)
