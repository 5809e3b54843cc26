"""Typed execution results shared by the engine, cache and service layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

Row = dict[str, Any]


@dataclass(frozen=True)
class RowWarning:
    """
    Row- or execution-level warning.

    ``row`` is the zero-based position in the returned rows of the row the
    warning refers to, or ``None`` for execution-wide notes (fallbacks,
    truncation).
    """

    code: str
    message: str
    row: int | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize the warning.

        Returns
        -------
        dict[str, Any]
            Plain mapping.
        """
        return {"code": self.code, "message": self.message, "row": self.row, "field": self.field}


@dataclass(frozen=True)
class GroupSummary:
    """Row count for one ``groupBy`` value."""

    value: Any
    count: int


@dataclass(frozen=True)
class ExecutionResult:
    """
    Normalized outcome of one execution.

    ``rows`` is the requested page, projected to the selected fields.
    A result with warnings is still a success (partial failure); a result
    flagged ``partial`` stopped early (timeout with partial results allowed)
    and is never cached.
    """

    rows: tuple[Row, ...]
    warnings: tuple[RowWarning, ...] = ()
    groups: tuple[GroupSummary, ...] = ()
    fetched: int = 0
    total_matched: int = 0
    pages_fetched: int = 0
    attempts: int = 1
    truncated: bool = False
    partial: bool = False

    @property
    def row_count(self) -> int:
        """Number of rows in the result page."""
        return len(self.rows)

    @property
    def has_warnings(self) -> bool:
        """True for partial-failure results."""
        return bool(self.warnings)

    @property
    def cacheable(self) -> bool:
        """Only complete results may be shared through the cache."""
        return not self.partial
