"""Execution record persistence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from reportquery.engine.results import RowWarning
from reportquery.ledger.models import ExecutionRecord, HistoryFilters, Page
from reportquery.ledger.states import ExecutionStatus
from reportquery.sources import SourceKind
from reportquery.storage.repositories.base import (
    BaseRepository,
    RowDict,
    dump_json,
    fetch_all_dicts,
    fetch_one_dict,
    from_db_timestamp,
    load_json,
    to_db_timestamp,
)
from reportquery.storage.schemas import EXECUTIONS

_COLUMNS = EXECUTIONS.column_names()
_INSERT_SQL = (
    f"INSERT INTO executions ({', '.join(_COLUMNS)}) "  # noqa: S608 - fixed column list
    f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
)
# Columns a lifecycle transition may change; identity columns are written once.
_MUTABLE_COLUMNS = (
    "status",
    "query_fingerprint",
    "started_at",
    "completed_at",
    "row_count",
    "error_kind",
    "error_message",
    "warnings",
    "cache_hit",
    "partial",
    "result_key",
)
_UPDATE_SQL = (
    "UPDATE executions SET "  # noqa: S608 - fixed column list
    + ", ".join(f"{col} = ?" for col in _MUTABLE_COLUMNS)
    + " WHERE id = ?"
)


def _to_row(record: ExecutionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "query_fingerprint": record.query_fingerprint,
        "source": record.source.value,
        "credential_id": record.credential_id,
        "status": record.status.value,
        "submitted_at": to_db_timestamp(record.submitted_at),
        "started_at": to_db_timestamp(record.started_at),
        "completed_at": to_db_timestamp(record.completed_at),
        "row_count": record.row_count,
        "error_kind": record.error_kind,
        "error_message": record.error_message,
        "warnings": dump_json([w.to_dict() for w in record.warnings]),
        "cache_hit": record.cache_hit,
        "partial": record.partial,
        "custom_report_id": record.custom_report_id,
        "result_key": record.result_key,
        "query_definition": (
            dump_json(record.query_definition) if record.query_definition is not None else None
        ),
        "parameters": dump_json(record.parameters),
    }


def _from_row(row: RowDict) -> ExecutionRecord:
    warnings = tuple(
        RowWarning(
            code=item["code"],
            message=item["message"],
            row=item.get("row"),
            field=item.get("field"),
        )
        for item in load_json(row["warnings"], [])
    )
    return ExecutionRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        query_fingerprint=row["query_fingerprint"],
        source=SourceKind(row["source"]),
        credential_id=row["credential_id"],
        status=ExecutionStatus(row["status"]),
        submitted_at=from_db_timestamp(row["submitted_at"]),
        started_at=from_db_timestamp(row["started_at"]),
        completed_at=from_db_timestamp(row["completed_at"]),
        row_count=int(row["row_count"]),
        error_kind=row["error_kind"],
        error_message=row["error_message"],
        warnings=warnings,
        cache_hit=bool(row["cache_hit"]),
        partial=bool(row["partial"]),
        custom_report_id=row["custom_report_id"],
        result_key=row["result_key"],
        query_definition=load_json(row["query_definition"]),
        parameters=load_json(row["parameters"], {}),
    )


def _where(filters: HistoryFilters) -> tuple[str, list[object]]:
    clauses: list[str] = []
    params: list[object] = []
    if filters.owner_id is not None:
        clauses.append("owner_id = ?")
        params.append(filters.owner_id)
    if filters.status is not None:
        clauses.append("status = ?")
        params.append(filters.status.value)
    if filters.source is not None:
        clauses.append("source = ?")
        params.append(filters.source.value)
    if filters.custom_report_id is not None:
        clauses.append("custom_report_id = ?")
        params.append(filters.custom_report_id)
    if filters.submitted_after is not None:
        clauses.append("submitted_at >= ?")
        params.append(to_db_timestamp(filters.submitted_after))
    if filters.submitted_before is not None:
        clauses.append("submitted_at < ?")
        params.append(to_db_timestamp(filters.submitted_before))
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


@dataclass(frozen=True)
class ExecutionRepository(BaseRepository):
    """Read and write rows of the ``executions`` table."""

    def insert(self, record: ExecutionRecord) -> None:
        """Insert a new record."""
        row = _to_row(record)
        with self.gateway.connection() as con:
            con.execute(_INSERT_SQL, [row[col] for col in _COLUMNS])

    def update(self, record: ExecutionRecord) -> None:
        """Write the lifecycle columns of an existing record."""
        row = _to_row(record)
        params = [row[col] for col in _MUTABLE_COLUMNS]
        params.append(record.id)
        with self.gateway.connection() as con:
            con.execute(_UPDATE_SQL, params)

    def get(self, execution_id: str) -> ExecutionRecord | None:
        """
        Load one record.

        Returns
        -------
        ExecutionRecord | None
            Record, or ``None`` when absent.
        """
        with self.gateway.connection() as con:
            row = fetch_one_dict(con, "SELECT * FROM executions WHERE id = ?", [execution_id])
        return _from_row(row) if row is not None else None

    def query(self, filters: HistoryFilters, page: Page) -> list[ExecutionRecord]:
        """
        List records newest first.

        Returns
        -------
        list[ExecutionRecord]
            Records in the requested window.
        """
        where, params = _where(filters)
        sql = (
            f"SELECT * FROM executions{where} "  # noqa: S608 - clauses are fixed fragments
            "ORDER BY submitted_at DESC, id DESC LIMIT ? OFFSET ?"
        )
        with self.gateway.connection() as con:
            rows = fetch_all_dicts(con, sql, [*params, page.limit, page.offset])
        return [_from_row(row) for row in rows]

    def count(self, filters: HistoryFilters) -> int:
        """
        Count records matching ``filters``.

        Returns
        -------
        int
            Matching record count.
        """
        where, params = _where(filters)
        with self.gateway.connection() as con:
            row = fetch_one_dict(
                con, f"SELECT COUNT(*) AS n FROM executions{where}", params  # noqa: S608
            )
        return int(row["n"]) if row is not None else 0

    def has_active(self, custom_report_id: str) -> bool:
        """
        Return whether a report has pending or running executions.

        Returns
        -------
        bool
            True when at least one non-terminal execution references the report.
        """
        with self.gateway.connection() as con:
            row = fetch_one_dict(
                con,
                "SELECT COUNT(*) AS n FROM executions WHERE custom_report_id = ? "
                "AND status IN (?, ?)",
                [custom_report_id, ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value],
            )
        return bool(row and row["n"])
