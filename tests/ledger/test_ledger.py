"""Execution ledger lifecycle and history queries."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from reportquery.engine.results import RowWarning
from reportquery.ledger.ledger import ExecutionLedger
from reportquery.ledger.models import ExecutionRecord, HistoryFilters, Page
from reportquery.ledger.states import ExecutionStatus, can_transition
from reportquery.services.errors import InvalidTransitionError, NotFoundError
from reportquery.sources import SourceKind
from reportquery.storage.gateway import StorageGateway
from reportquery.storage.repositories.executions import ExecutionRepository
from tests._helpers.expect import expect_equal, expect_length, expect_none, expect_true
from tests._helpers.fakes import FakeClock

STEP_SECONDS = 5.0


def _ledger(gateway: StorageGateway, clock: FakeClock) -> ExecutionLedger:
    return ExecutionLedger(ExecutionRepository(gateway), clock=clock)


def _pending(
    clock: FakeClock,
    execution_id: str,
    *,
    owner_id: str = "alice",
    source: SourceKind = SourceKind.DIRECTORY,
    report_id: str | None = None,
) -> ExecutionRecord:
    return ExecutionRecord(
        id=execution_id,
        owner_id=owner_id,
        source=source,
        credential_id=f"cred-{source.value}",
        status=ExecutionStatus.PENDING,
        submitted_at=clock(),
        custom_report_id=report_id,
        query_definition={"source": source.value, "fields": ["displayName"]},
        parameters={"days": 30},
    )


def test_happy_path_records_timestamps_and_outcome(
    gateway: StorageGateway, clock: FakeClock
) -> None:
    """Pending -> Running -> Completed stamps start and completion times."""
    ledger = _ledger(gateway, clock)
    ledger.record(_pending(clock, "exec-1"))
    clock.advance(STEP_SECONDS)
    running = ledger.transition("exec-1", ExecutionStatus.RUNNING, query_fingerprint="fp")
    expect_equal(running.started_at, clock())
    clock.advance(STEP_SECONDS)
    warning = RowWarning(code="attribute_unreadable", message="Row 3: ...", row=3, field="dept")
    ledger.transition(
        "exec-1", ExecutionStatus.COMPLETED, row_count=2, warnings=[warning], result_key="fp"
    )

    stored = ledger.get("exec-1")
    expect_equal(stored.status, ExecutionStatus.COMPLETED)
    expect_equal(stored.row_count, 2)
    expect_equal(stored.warnings, (warning,))
    expect_equal(stored.duration_seconds, STEP_SECONDS)
    expect_equal(stored.query_fingerprint, "fp")
    expect_equal(stored.parameters, {"days": 30})
    expect_equal(stored.query_definition, {"source": "directory", "fields": ["displayName"]})
    expect_true(stored.terminal, message="completed is terminal")


def test_terminal_records_are_immutable(gateway: StorageGateway, clock: FakeClock) -> None:
    """Leaving a terminal state is rejected and the record is unchanged."""
    ledger = _ledger(gateway, clock)
    ledger.record(_pending(clock, "exec-1"))
    ledger.transition("exec-1", ExecutionStatus.CANCELLED)
    with pytest.raises(InvalidTransitionError) as caught:
        ledger.transition("exec-1", ExecutionStatus.COMPLETED, row_count=5)
    expect_equal((caught.value.current, caught.value.target), ("cancelled", "completed"))
    expect_equal(ledger.get("exec-1").row_count, 0)


def test_transition_edges() -> None:
    """Only the documented lifecycle edges are allowed."""
    expect_true(can_transition(ExecutionStatus.PENDING, ExecutionStatus.FAILED), message="p->f")
    expect_true(
        not can_transition(ExecutionStatus.PENDING, ExecutionStatus.COMPLETED), message="p->c"
    )
    expect_true(
        not can_transition(ExecutionStatus.RUNNING, ExecutionStatus.PENDING), message="r->p"
    )


def test_new_records_must_be_pending(gateway: StorageGateway, clock: FakeClock) -> None:
    """Records enter the ledger only as pending."""
    ledger = _ledger(gateway, clock)
    record = _pending(clock, "exec-1")
    with pytest.raises(ValueError, match="must be pending"):
        ledger.record(replace(record, status=ExecutionStatus.RUNNING))


def test_identity_fields_cannot_change(gateway: StorageGateway, clock: FakeClock) -> None:
    """Transitions may not rewrite ownership."""
    ledger = _ledger(gateway, clock)
    ledger.record(_pending(clock, "exec-1"))
    with pytest.raises(ValueError, match="cannot be changed"):
        ledger.transition("exec-1", ExecutionStatus.RUNNING, owner_id="mallory")


def test_owner_scoping(gateway: StorageGateway, clock: FakeClock) -> None:
    """Other owners' records look absent."""
    ledger = _ledger(gateway, clock)
    ledger.record(_pending(clock, "exec-1"))
    expect_equal(ledger.get("exec-1", owner_id="alice").id, "exec-1")
    with pytest.raises(NotFoundError):
        ledger.get("exec-1", owner_id="bob")
    with pytest.raises(NotFoundError):
        ledger.transition("missing", ExecutionStatus.RUNNING)


def test_history_filters_and_paging(gateway: StorageGateway, clock: FakeClock) -> None:
    """History is newest first and filterable by owner, status, source, report and time."""
    ledger = _ledger(gateway, clock)
    start = clock()
    for index in range(4):
        ledger.record(_pending(clock, f"exec-{index}", report_id="rep-1" if index < 2 else None))
        clock.advance(STEP_SECONDS)
    ledger.record(_pending(clock, "exec-bob", owner_id="bob", source=SourceKind.CLOUD_SUITE))
    ledger.transition("exec-3", ExecutionStatus.FAILED, error_kind="timeout")

    mine = HistoryFilters(owner_id="alice")
    expect_equal(
        [record.id for record in ledger.query(mine, Page(limit=2))], ["exec-3", "exec-2"]
    )
    expect_equal([record.id for record in ledger.query(mine, Page(offset=3))], ["exec-0"])
    expect_equal(ledger.count(mine), 4)
    expect_equal(ledger.count(HistoryFilters(status=ExecutionStatus.FAILED)), 1)
    expect_equal(ledger.count(HistoryFilters(source=SourceKind.CLOUD_SUITE)), 1)
    expect_equal(ledger.count(HistoryFilters(custom_report_id="rep-1")), 2)
    window = HistoryFilters(
        submitted_after=start + timedelta(seconds=STEP_SECONDS),
        submitted_before=start + timedelta(seconds=3 * STEP_SECONDS),
    )
    expect_equal(sorted(r.id for r in ledger.query(window, Page())), ["exec-1", "exec-2"])


def test_active_report_executions(gateway: StorageGateway, clock: FakeClock) -> None:
    """Only pending or running executions count as active."""
    ledger = _ledger(gateway, clock)
    ledger.record(_pending(clock, "exec-1", report_id="rep-1"))
    expect_true(ledger.has_active("rep-1"), message="pending is active")
    ledger.transition("exec-1", ExecutionStatus.RUNNING)
    expect_true(ledger.has_active("rep-1"), message="running is active")
    ledger.transition("exec-1", ExecutionStatus.COMPLETED)
    expect_true(not ledger.has_active("rep-1"), message="completed is not active")
    expect_length(ledger.query(HistoryFilters(custom_report_id="rep-1"), Page()), 1)
    expect_none(ledger.get("exec-1").error_kind)
