"""Execution ledger: the only writer of execution records."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from reportquery.ledger.models import ExecutionRecord, HistoryFilters, Page
from reportquery.ledger.states import ExecutionStatus, can_transition
from reportquery.services.errors import InvalidTransitionError, NotFoundError
from reportquery.storage.repositories.executions import ExecutionRepository

LOG = logging.getLogger("reportquery.ledger")

_MUTABLE_FIELDS = frozenset(
    {
        "query_fingerprint",
        "row_count",
        "error_kind",
        "error_message",
        "warnings",
        "cache_hit",
        "partial",
        "result_key",
    }
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionLedger:
    """
    Persist execution records and enforce their lifecycle.

    Records are created Pending and move ``Pending -> Running -> {Completed,
    Failed, Cancelled}`` or ``Pending -> {Cancelled, Failed}``. Terminal
    records are immutable; attempting to leave a terminal state raises
    InvalidTransitionError.
    """

    def __init__(
        self, repository: ExecutionRepository, *, clock: Callable[[], datetime] = _utcnow
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._lock = threading.Lock()

    def record(self, record: ExecutionRecord) -> ExecutionRecord:
        """
        Persist a newly submitted record.

        Returns
        -------
        ExecutionRecord
            The stored record.

        Raises
        ------
        ValueError
            If the record is not Pending.
        """
        if record.status is not ExecutionStatus.PENDING:
            message = f"New execution {record.id} must be pending, got {record.status}"
            raise ValueError(message)
        with self._lock:
            self._repository.insert(record)
        LOG.debug("Recorded execution %s for owner %s", record.id, record.owner_id)
        return record

    def transition(
        self, execution_id: str, status: ExecutionStatus, **changes: Any
    ) -> ExecutionRecord:
        """
        Move a record to ``status`` and apply field changes atomically.

        Parameters
        ----------
        execution_id:
            Record to update.
        status:
            Target status.
        **changes:
            Values for row_count, warnings, error_kind, error_message,
            cache_hit, partial, result_key or query_fingerprint.

        Returns
        -------
        ExecutionRecord
            Updated record.

        Raises
        ------
        NotFoundError
            If the record does not exist.
        InvalidTransitionError
            If the edge is not allowed.
        ValueError
            If an immutable field is named in ``changes``.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            message = f"Fields cannot be changed by a transition: {sorted(unknown)}"
            raise ValueError(message)
        with self._lock:
            current = self._require(execution_id)
            if not can_transition(current.status, status):
                raise InvalidTransitionError(execution_id, current.status.value, status.value)
            now = self._clock()
            if status is ExecutionStatus.RUNNING:
                changes["started_at"] = now
            if status.terminal:
                changes["completed_at"] = now
            if "warnings" in changes:
                changes["warnings"] = tuple(changes["warnings"])
            updated = replace(current, status=status, **changes)
            self._repository.update(updated)
        LOG.debug("Execution %s: %s -> %s", execution_id, current.status, status)
        return updated

    def get(self, execution_id: str, *, owner_id: str | None = None) -> ExecutionRecord:
        """
        Load a record, optionally scoped to an owner.

        Returns
        -------
        ExecutionRecord
            The record.

        Raises
        ------
        NotFoundError
            If absent or owned by someone else.
        """
        record = self._repository.get(execution_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise NotFoundError("execution", execution_id)
        return record

    def query(self, filters: HistoryFilters, page: Page) -> list[ExecutionRecord]:
        """
        List records newest first.

        Returns
        -------
        list[ExecutionRecord]
            Matching records.
        """
        return self._repository.query(filters, page)

    def count(self, filters: HistoryFilters) -> int:
        """
        Count matching records.

        Returns
        -------
        int
            Number of records.
        """
        return self._repository.count(filters)

    def has_active(self, custom_report_id: str) -> bool:
        """
        Return whether a report has non-terminal executions.

        Returns
        -------
        bool
            True when pending or running executions reference the report.
        """
        return self._repository.has_active(custom_report_id)

    def _require(self, execution_id: str) -> ExecutionRecord:
        record = self._repository.get(execution_id)
        if record is None:
            raise NotFoundError("execution", execution_id)
        return record
