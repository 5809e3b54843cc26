"""Execution record and history query types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from reportquery.engine.results import RowWarning
from reportquery.ledger.states import ExecutionStatus
from reportquery.sources import SourceKind


@dataclass(frozen=True)
class ExecutionRecord:
    """
    Durable record of one submitted query.

    ``result_key`` is the cache fingerprint holding the rows; results outlive
    neither cache TTL nor invalidation, but the record is retained.
    """

    id: str
    owner_id: str
    source: SourceKind
    credential_id: str
    status: ExecutionStatus
    submitted_at: datetime
    query_fingerprint: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    row_count: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    warnings: tuple[RowWarning, ...] = ()
    cache_hit: bool = False
    partial: bool = False
    custom_report_id: str | None = None
    result_key: str | None = None
    query_definition: dict[str, Any] | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        """True once the record is immutable."""
        return self.status.terminal

    @property
    def duration_seconds(self) -> float | None:
        """Wall time between start and completion, when both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for API and CLI output.

        Returns
        -------
        dict[str, Any]
            camelCase mapping with ISO timestamps.
        """

        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "queryFingerprint": self.query_fingerprint,
            "source": self.source.value,
            "credentialId": self.credential_id,
            "status": self.status.value,
            "submittedAt": _iso(self.submitted_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "rowCount": self.row_count,
            "errorKind": self.error_kind,
            "errorMessage": self.error_message,
            "warnings": [w.to_dict() for w in self.warnings],
            "cacheHit": self.cache_hit,
            "partial": self.partial,
            "customReportId": self.custom_report_id,
            "resultKey": self.result_key,
        }


@dataclass(frozen=True)
class HistoryFilters:
    """Criteria for listing execution history; ``None`` means unfiltered."""

    owner_id: str | None = None
    status: ExecutionStatus | None = None
    source: SourceKind | None = None
    custom_report_id: str | None = None
    submitted_after: datetime | None = None
    submitted_before: datetime | None = None


@dataclass(frozen=True)
class Page:
    """Offset/limit window over a listing."""

    offset: int = 0
    limit: int = 50
