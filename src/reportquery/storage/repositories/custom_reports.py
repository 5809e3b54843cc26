"""Custom report persistence."""

from __future__ import annotations

from dataclasses import dataclass

from reportquery.reports.models import CustomReport
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
from reportquery.storage.schemas import CUSTOM_REPORTS

_COLUMNS = CUSTOM_REPORTS.column_names()
_INSERT_SQL = (
    f"INSERT INTO custom_reports ({', '.join(_COLUMNS)}) "  # noqa: S608 - fixed column list
    f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
)
_UPDATABLE = (
    "name",
    "description",
    "source",
    "query_definition",
    "is_favorite",
    "is_active",
    "execution_count",
    "last_executed_at",
    "updated_at",
)
_UPDATE_SQL = (
    "UPDATE custom_reports SET "  # noqa: S608 - fixed column list
    + ", ".join(f"{col} = ?" for col in _UPDATABLE)
    + " WHERE id = ?"
)


def _to_row(report: CustomReport) -> RowDict:
    return {
        "id": report.id,
        "owner_id": report.owner_id,
        "name": report.name,
        "description": report.description,
        "source": report.source.value,
        "query_definition": dump_json(report.query_definition),
        "is_favorite": report.is_favorite,
        "is_active": report.is_active,
        "execution_count": report.execution_count,
        "last_executed_at": to_db_timestamp(report.last_executed_at),
        "created_at": to_db_timestamp(report.created_at),
        "updated_at": to_db_timestamp(report.updated_at),
    }


def _from_row(row: RowDict) -> CustomReport:
    return CustomReport(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        description=row["description"] or "",
        source=SourceKind(row["source"]),
        query_definition=load_json(row["query_definition"], {}),
        is_favorite=bool(row["is_favorite"]),
        is_active=bool(row["is_active"]),
        execution_count=int(row["execution_count"]),
        last_executed_at=from_db_timestamp(row["last_executed_at"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


@dataclass(frozen=True)
class CustomReportRepository(BaseRepository):
    """Read and write rows of the ``custom_reports`` table."""

    def insert(self, report: CustomReport) -> None:
        """Insert a new report."""
        row = _to_row(report)
        with self.gateway.connection() as con:
            con.execute(_INSERT_SQL, [row[col] for col in _COLUMNS])

    def update(self, report: CustomReport) -> None:
        """Write the mutable columns of an existing report."""
        row = _to_row(report)
        with self.gateway.connection() as con:
            con.execute(_UPDATE_SQL, [*(row[col] for col in _UPDATABLE), report.id])

    def get(self, report_id: str) -> CustomReport | None:
        """
        Load a report regardless of owner or active flag.

        Returns
        -------
        CustomReport | None
            Report, or ``None`` when absent.
        """
        with self.gateway.connection() as con:
            row = fetch_one_dict(con, "SELECT * FROM custom_reports WHERE id = ?", [report_id])
        return _from_row(row) if row is not None else None

    def list_for_owner(
        self,
        owner_id: str,
        *,
        favorites_only: bool = False,
        source: SourceKind | None = None,
    ) -> list[CustomReport]:
        """
        List an owner's active reports, favorites first then by name.

        Returns
        -------
        list[CustomReport]
            Matching reports.
        """
        sql = "SELECT * FROM custom_reports WHERE owner_id = ? AND is_active = true"
        params: list[object] = [owner_id]
        if favorites_only:
            sql += " AND is_favorite = true"
        if source is not None:
            sql += " AND source = ?"
            params.append(source.value)
        sql += " ORDER BY is_favorite DESC, lower(name), id"
        with self.gateway.connection() as con:
            rows = fetch_all_dicts(con, sql, params)
        return [_from_row(row) for row in rows]

    def name_taken(self, owner_id: str, name: str, *, exclude_id: str | None = None) -> bool:
        """
        Return whether an owner already has an active report with this name.

        Returns
        -------
        bool
            True when the name is in use (case-insensitive).
        """
        sql = (
            "SELECT COUNT(*) AS n FROM custom_reports "
            "WHERE owner_id = ? AND lower(name) = lower(?) AND is_active = true"
        )
        params: list[object] = [owner_id, name]
        if exclude_id is not None:
            sql += " AND id <> ?"
            params.append(exclude_id)
        with self.gateway.connection() as con:
            row = fetch_one_dict(con, sql, params)
        return bool(row and row["n"])
