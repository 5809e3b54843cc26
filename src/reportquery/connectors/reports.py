"""Cloud suite connector: Graph usage report CSVs queried through DuckDB."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import duckdb
import httpx

from reportquery.catalog.standard_fields import report_datasets
from reportquery.catalog.types import SemanticType
from reportquery.compilers.base import NativeQuery
from reportquery.compilers.cloud_suite import ARRAY_SEPARATOR, REPORT_TABLE, quote_identifier
from reportquery.config.models import GRAPH_AUTHORITY, GRAPH_BASE_URL
from reportquery.connectors.base import (
    AttributeInfo,
    ConnectorAuthError,
    ConnectorError,
    ConnectorQueryError,
    RawPage,
    RawRow,
    SchemaProbe,
)
from reportquery.connectors.graph import GraphSession
from reportquery.services.credentials import Credential
from reportquery.sources import SourceKind

LOG = logging.getLogger("reportquery.connectors.reports")

# Reports keyed by owner rather than user expose these headers instead.
HEADER_ALIASES = {
    "Owner Principal Name": "User Principal Name",
    "Owner Display Name": "Display Name",
}
SAMPLE_ROWS = 3


def parse_report_csv(text: str) -> tuple[list[str], list[list[str]]]:
    """
    Parse a usage report CSV, applying header aliases.

    Returns
    -------
    tuple[list[str], list[list[str]]]
        Column headers and data rows padded to the header width.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    try:
        raw_header = next(reader)
    except StopIteration:
        return [], []
    header = [column.strip() for column in raw_header]
    present = set(header)
    header = [
        HEADER_ALIASES[column]
        if column in HEADER_ALIASES and HEADER_ALIASES[column] not in present
        else column
        for column in header
    ]
    width = len(header)
    rows = [(row + [""] * width)[:width] for row in reader if any(cell.strip() for cell in row)]
    return header, rows


def load_report_table(
    header: Sequence[str], rows: Sequence[Sequence[str]]
) -> duckdb.DuckDBPyConnection:
    """
    Load report rows into an in-memory DuckDB table of VARCHAR columns.

    Empty cells are stored as NULL.

    Returns
    -------
    duckdb.DuckDBPyConnection
        Connection holding the report table.
    """
    con = duckdb.connect(database=":memory:")
    columns = ", ".join(f"{quote_identifier(name)} VARCHAR" for name in header)
    con.execute(f"CREATE TABLE {REPORT_TABLE} ({columns})")
    if rows:
        placeholders = ", ".join("?" for _ in header)
        con.executemany(
            f"INSERT INTO {REPORT_TABLE} VALUES ({placeholders})",  # noqa: S608 - fixed table
            [[cell if cell != "" else None for cell in row] for row in rows],
        )
    return con


class UsageReportConnector:
    """Download one usage report per query and run the compiled SQL over it."""

    source = SourceKind.CLOUD_SUITE

    def __init__(self, session: GraphSession) -> None:
        self._session = session

    def fetch_pages(self, native: NativeQuery, *, page_size: int) -> Iterator[RawPage]:
        """
        Download the report, filter and order it in DuckDB, and page the rows.

        Yields
        ------
        RawPage
            Chunks of ``page_size`` rows.
        """
        payload = native.payload
        header, rows = self._download(str(payload["endpoint"]))
        arrays = {d.native_name for d in native.fields if d.semantic_type is SemanticType.ARRAY}
        missing = [d.native_name for d in native.fields if d.native_name not in header]
        if missing:
            message = f"Report {payload['report']} has no column(s): {', '.join(missing)}"
            raise ConnectorQueryError(message)
        con = load_report_table(header, rows)
        try:
            cursor = con.execute(str(payload["sql"]), list(payload.get("params", [])))
            names = [column[0] for column in cursor.description]
            records = cursor.fetchall()
        except duckdb.Error as exc:
            message = f"Report query failed: {exc}"
            raise ConnectorQueryError(message) from exc
        finally:
            con.close()
        size = max(page_size, 1)
        chunks = [records[start : start + size] for start in range(0, len(records), size)] or [[]]
        for index, chunk in enumerate(chunks):
            yield RawPage(
                index=index,
                rows=[RawRow(attributes=_row_attributes(names, record, arrays)) for record in chunk],
                has_more=index < len(chunks) - 1,
            )

    def describe_schema(self) -> SchemaProbe:
        """
        Read each report's header and a few sample rows.

        Returns
        -------
        SchemaProbe
            One group per readable report; denied reports become failed groups.
        """
        groups: dict[str, tuple[AttributeInfo, ...]] = {}
        failed: dict[str, str] = {}
        for report in report_datasets():
            try:
                header, rows = self._download(f"reports/{report}(period='D7')")
            except (ConnectorAuthError, ConnectorQueryError) as exc:
                failed[report] = str(exc)
                continue
            samples = rows[:SAMPLE_ROWS]
            groups[report] = tuple(
                AttributeInfo(
                    name=column,
                    samples=tuple(row[position] for row in samples if row[position]),
                )
                for position, column in enumerate(header)
            )
        return SchemaProbe(groups=groups, failed_groups=failed)

    def ping(self) -> None:
        """Read the organization resource."""
        self._session.get_json("organization", params={"$select": "id"})

    def abort(self) -> None:
        """Abort the download in flight."""
        self._session.abort()

    def close(self) -> None:
        """Close the session."""
        self._session.close()

    def _download(self, endpoint: str) -> tuple[list[str], list[list[str]]]:
        response = self._session.get(endpoint)
        text = response.text
        if not text.strip():
            message = f"Report {endpoint} returned no content"
            raise ConnectorError(message)
        LOG.debug("Downloaded %d bytes from %s", len(response.content), endpoint)
        return parse_report_csv(text)


def _row_attributes(
    names: Sequence[str], record: Sequence[Any], arrays: set[str]
) -> dict[str, object]:
    attributes: dict[str, object] = {}
    for name, value in zip(names, record, strict=True):
        if name in arrays and isinstance(value, str):
            parts = value.split(ARRAY_SEPARATOR)
            attributes[name] = [part.strip() for part in parts if part.strip()]
        else:
            attributes[name] = value
    return attributes


def usage_report_factory(
    *,
    base_url: str = GRAPH_BASE_URL,
    authority: str = GRAPH_AUTHORITY,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> Callable[[Credential], UsageReportConnector]:
    """
    Return a ConnectorFactory for cloud suite credentials.

    Returns
    -------
    Callable[[Credential], UsageReportConnector]
        Factory used by the pool registry.
    """

    def _factory(credential: Credential) -> UsageReportConnector:
        session = GraphSession(
            credential, base_url=base_url, authority=authority, timeout=timeout, transport=transport
        )
        return UsageReportConnector(session)

    return _factory
