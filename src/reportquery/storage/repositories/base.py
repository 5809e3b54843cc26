"""Shared repository helpers for DuckDB-backed storage."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from reportquery.storage.gateway import DuckDBConnection, StorageGateway

RowDict = dict[str, Any]


def fetch_one_dict(con: DuckDBConnection, sql: str, params: Sequence[object]) -> RowDict | None:
    """
    Execute a query and return the first row as a mapping.

    Returns
    -------
    RowDict | None
        Mapping of column to value when a row exists; otherwise ``None``.
    """
    result = con.execute(sql, list(params))
    row = result.fetchone()
    if row is None:
        return None
    cols = [desc[0] for desc in result.description]
    return {col: row[idx] for idx, col in enumerate(cols)}


def fetch_all_dicts(con: DuckDBConnection, sql: str, params: Sequence[object]) -> list[RowDict]:
    """
    Execute a query and return all rows as mappings.

    Returns
    -------
    list[RowDict]
        List of rows represented as dictionaries keyed by column name.
    """
    result = con.execute(sql, list(params))
    rows = result.fetchall()
    cols = [desc[0] for desc in result.description]
    return [{col: row[idx] for idx, col in enumerate(cols)} for row in rows]


def to_db_timestamp(value: datetime | None) -> datetime | None:
    """
    Convert an aware datetime to the naive UTC form stored in TIMESTAMP columns.

    Returns
    -------
    datetime | None
        Naive UTC datetime.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def from_db_timestamp(value: datetime | None) -> datetime | None:
    """
    Attach UTC to a naive TIMESTAMP value read back from DuckDB.

    Returns
    -------
    datetime | None
        Aware UTC datetime.
    """
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def dump_json(value: object) -> str:
    """
    Serialize a document column.

    Returns
    -------
    str
        Compact JSON text.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def load_json(value: str | None, default: object = None) -> Any:
    """
    Parse a document column.

    Returns
    -------
    Any
        Decoded value, or ``default`` for NULL.
    """
    if value is None:
        return default
    return json.loads(value)


@dataclass(frozen=True)
class BaseRepository:
    """Base class for repositories bound to a gateway."""

    gateway: StorageGateway
