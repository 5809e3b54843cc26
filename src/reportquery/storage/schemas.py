"""
DuckDB table definitions for execution history and saved reports.

Timestamps are stored as naive UTC ``TIMESTAMP`` values; JSON documents
(query definitions, warnings, parameters) are stored as ``VARCHAR``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from duckdb import DuckDBPyConnection

log = logging.getLogger("reportquery.storage.schemas")


@dataclass(frozen=True)
class Column:
    """Single column definition."""

    name: str
    type: str
    nullable: bool = True


@dataclass(frozen=True)
class TableSchema:
    """Table definition with an optional primary key."""

    name: str
    columns: tuple[Column, ...]
    primary_key: tuple[str, ...] = ()

    def column_names(self) -> list[str]:
        """
        Return column names in declaration order.

        Returns
        -------
        list[str]
            Column names.
        """
        return [col.name for col in self.columns]


EXECUTIONS = TableSchema(
    name="executions",
    columns=(
        Column("id", "VARCHAR", nullable=False),
        Column("owner_id", "VARCHAR", nullable=False),
        Column("query_fingerprint", "VARCHAR"),
        Column("source", "VARCHAR", nullable=False),
        Column("credential_id", "VARCHAR", nullable=False),
        Column("status", "VARCHAR", nullable=False),
        Column("submitted_at", "TIMESTAMP", nullable=False),
        Column("started_at", "TIMESTAMP"),
        Column("completed_at", "TIMESTAMP"),
        Column("row_count", "INTEGER", nullable=False),
        Column("error_kind", "VARCHAR"),
        Column("error_message", "VARCHAR"),
        Column("warnings", "VARCHAR", nullable=False),
        Column("cache_hit", "BOOLEAN", nullable=False),
        Column("partial", "BOOLEAN", nullable=False),
        Column("custom_report_id", "VARCHAR"),
        Column("result_key", "VARCHAR"),
        Column("query_definition", "VARCHAR"),
        Column("parameters", "VARCHAR"),
    ),
    primary_key=("id",),
)

CUSTOM_REPORTS = TableSchema(
    name="custom_reports",
    columns=(
        Column("id", "VARCHAR", nullable=False),
        Column("owner_id", "VARCHAR", nullable=False),
        Column("name", "VARCHAR", nullable=False),
        Column("description", "VARCHAR"),
        Column("source", "VARCHAR", nullable=False),
        Column("query_definition", "VARCHAR", nullable=False),
        Column("is_favorite", "BOOLEAN", nullable=False),
        Column("is_active", "BOOLEAN", nullable=False),
        Column("execution_count", "INTEGER", nullable=False),
        Column("last_executed_at", "TIMESTAMP"),
        Column("created_at", "TIMESTAMP", nullable=False),
        Column("updated_at", "TIMESTAMP", nullable=False),
    ),
    primary_key=("id",),
)

TABLE_SCHEMAS: dict[str, TableSchema] = {
    EXECUTIONS.name: EXECUTIONS,
    CUSTOM_REPORTS.name: CUSTOM_REPORTS,
}

def _quote(identifier: str) -> str:
    """
    Quote an identifier for DuckDB.

    Returns
    -------
    str
        Identifier wrapped in double quotes with internal quotes escaped.
    """
    escaped = identifier.replace('"', '""')
    return f'"{escaped}"'


def build_table_ddl(table: TableSchema) -> str:
    """
    Generate idempotent CREATE TABLE DDL from a TableSchema.

    Returns
    -------
    str
        CREATE TABLE IF NOT EXISTS statement.
    """
    col_lines: list[str] = []
    for col in table.columns:
        nullable_sql = "" if col.nullable else " NOT NULL"
        col_lines.append(f"    {_quote(col.name)} {col.type}{nullable_sql}")
    if table.primary_key:
        pk_cols = ", ".join(_quote(col) for col in table.primary_key)
        col_lines.append(f"    PRIMARY KEY ({pk_cols})")
    cols_sql = ",\n".join(col_lines)
    return f"CREATE TABLE IF NOT EXISTS {_quote(table.name)} (\n{cols_sql}\n);"


def apply_all_schemas(con: DuckDBPyConnection) -> None:
    """Create every known table if missing."""
    for table in TABLE_SCHEMAS.values():
        con.execute(build_table_ddl(table))
    log.debug("Applied %d table schemas", len(TABLE_SCHEMAS))
