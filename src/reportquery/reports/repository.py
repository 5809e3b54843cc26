"""Owner-scoped CRUD and execution of saved report definitions."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol

from reportquery.ledger.models import ExecutionRecord
from reportquery.reports.models import CustomReport
from reportquery.services.errors import (
    ConflictError,
    InUseError,
    NotFoundError,
    QueryValidationError,
    Violation,
)
from reportquery.sources import SourceKind, parse_source
from reportquery.storage.repositories.custom_reports import CustomReportRepository

LOG = logging.getLogger("reportquery.reports")

MAX_NAME_LENGTH = 200


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ScheduleLookup(Protocol):
    """Scheduler collaborator consulted before a report is deleted."""

    def has_active_schedule(self, report_id: str) -> bool:
        """Return True when an active scheduled job runs the report."""
        ...


class NoSchedules:
    """ScheduleLookup for deployments without a scheduler."""

    def has_active_schedule(self, report_id: str) -> bool:  # noqa: ARG002
        """
        Report that no schedules exist.

        Returns
        -------
        bool
            Always False.
        """
        return False


class ReportRunner(Protocol):
    """Pipeline entry point used to execute a stored definition."""

    def __call__(
        self,
        raw_query: Mapping[str, Any],
        *,
        owner_id: str,
        credential_id: str,
        custom_report_id: str,
    ) -> ExecutionRecord:
        """Submit the definition and return its execution record."""
        ...


def _structure_violations(name: str, definition: Mapping[str, Any]) -> list[Violation]:
    violations: list[Violation] = []
    if not name.strip():
        violations.append(Violation("name_required", "name", "Report name is required"))
    elif len(name) > MAX_NAME_LENGTH:
        violations.append(
            Violation("name_too_long", "name", f"Report name exceeds {MAX_NAME_LENGTH} characters")
        )
    if not isinstance(definition, Mapping):
        violations.append(
            Violation("definition_invalid", "queryDefinition", "Query definition must be an object")
        )
    elif parse_source(definition.get("source")) is None:
        violations.append(
            Violation("source_unknown", "queryDefinition.source", "Unknown or missing source")
        )
    return violations


class CustomReportService:
    """
    Saved report definitions, visible only to their owner.

    Deleting a report is a soft delete and is refused while a scheduled job
    still runs it or one of its executions is pending or running.
    """

    def __init__(
        self,
        repository: CustomReportRepository,
        *,
        schedules: ScheduleLookup | None = None,
        active_runs: Callable[[str], bool] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._schedules = schedules or NoSchedules()
        self._active_runs = active_runs
        self._clock = clock
        self._lock = threading.Lock()

    def create(
        self,
        owner_id: str,
        name: str,
        definition: Mapping[str, Any],
        *,
        description: str = "",
        is_favorite: bool = False,
    ) -> CustomReport:
        """
        Save a new report.

        Returns
        -------
        CustomReport
            Stored report.

        Raises
        ------
        QueryValidationError
            If the name or definition is structurally invalid.
        ConflictError
            If the owner already has an active report with this name.
        """
        violations = _structure_violations(name, definition)
        if violations:
            raise QueryValidationError(violations)
        now = self._clock()
        report = CustomReport(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            name=name.strip(),
            description=description,
            source=SourceKind(parse_source(definition["source"])),
            query_definition=copy.deepcopy(dict(definition)),
            is_favorite=is_favorite,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if self._repository.name_taken(owner_id, report.name):
                message = f"A report named {report.name!r} already exists"
                raise ConflictError("custom_report", message)
            self._repository.insert(report)
        LOG.info("Created custom report %s (%s) for %s", report.id, report.name, owner_id)
        return report

    def get(self, report_id: str, owner_id: str) -> CustomReport:
        """
        Load an active report owned by ``owner_id``.

        Returns
        -------
        CustomReport
            The report.

        Raises
        ------
        NotFoundError
            If absent, deleted or owned by someone else.
        """
        report = self._repository.get(report_id)
        if report is None or not report.is_active or report.owner_id != owner_id:
            raise NotFoundError("custom_report", report_id)
        return report

    def list(
        self,
        owner_id: str,
        *,
        favorites_only: bool = False,
        source: SourceKind | None = None,
    ) -> list[CustomReport]:
        """
        List the owner's active reports.

        Returns
        -------
        list[CustomReport]
            Favorites first, then by name.
        """
        return self._repository.list_for_owner(
            owner_id, favorites_only=favorites_only, source=source
        )

    def update(  # noqa: PLR0913
        self,
        report_id: str,
        owner_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        definition: Mapping[str, Any] | None = None,
        is_favorite: bool | None = None,
    ) -> CustomReport:
        """
        Change fields of an owned report; ``None`` leaves a field unchanged.

        Returns
        -------
        CustomReport
            Updated report.

        Raises
        ------
        NotFoundError
            If the report is not visible to the owner.
        QueryValidationError
            If the new name or definition is structurally invalid.
        ConflictError
            If the new name is already used by another of the owner's reports.
        """
        with self._lock:
            current = self.get(report_id, owner_id)
            new_name = current.name if name is None else name.strip()
            new_definition = (
                current.query_definition if definition is None else copy.deepcopy(dict(definition))
            )
            violations = _structure_violations(new_name, new_definition)
            if violations:
                raise QueryValidationError(violations)
            if new_name.lower() != current.name.lower() and self._repository.name_taken(
                owner_id, new_name, exclude_id=report_id
            ):
                message = f"A report named {new_name!r} already exists"
                raise ConflictError("custom_report", message)
            updated = replace(
                current,
                name=new_name,
                description=current.description if description is None else description,
                source=SourceKind(parse_source(new_definition["source"])),
                query_definition=new_definition,
                is_favorite=current.is_favorite if is_favorite is None else is_favorite,
                updated_at=self._clock(),
            )
            self._repository.update(updated)
        return updated

    def set_favorite(self, report_id: str, owner_id: str, *, favorite: bool) -> CustomReport:
        """
        Mark or unmark a report as favorite.

        Returns
        -------
        CustomReport
            Updated report.
        """
        return self.update(report_id, owner_id, is_favorite=favorite)

    def delete(self, report_id: str, owner_id: str) -> None:
        """
        Soft-delete an owned report.

        Raises
        ------
        NotFoundError
            If the report is not visible to the owner.
        InUseError
            If a scheduled job still runs the report, or an execution of it
            has not finished.
        """
        with self._lock:
            current = self.get(report_id, owner_id)
            if self._schedules.has_active_schedule(report_id):
                message = f"Report {report_id} is used by an active schedule"
                raise InUseError("custom_report", report_id, message)
            if self._active_runs is not None and self._active_runs(report_id):
                message = f"Report {report_id} has executions in progress"
                raise InUseError("custom_report", report_id, message)
            self._repository.update(replace(current, is_active=False, updated_at=self._clock()))
        LOG.info("Deleted custom report %s for %s", report_id, owner_id)

    def execute(
        self,
        report_id: str,
        owner_id: str,
        runner: ReportRunner,
        *,
        credential_id: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> ExecutionRecord:
        """
        Run a saved definition with parameter overrides.

        Parameters
        ----------
        report_id:
            Report to run.
        owner_id:
            Requesting owner.
        runner:
            Validate-compile-execute pipeline entry point.
        credential_id:
            Credential for the report's source.
        parameters:
            Values overriding the stored parameters.

        Returns
        -------
        ExecutionRecord
            Record of the submitted execution.
        """
        report = self.get(report_id, owner_id)
        raw = copy.deepcopy(report.query_definition)
        merged = dict(raw.get("parameters") or {})
        merged.update(parameters or {})
        raw["parameters"] = merged
        record = runner(
            raw, owner_id=owner_id, credential_id=credential_id, custom_report_id=report_id
        )
        with self._lock:
            latest = self._repository.get(report_id) or report
            self._repository.update(
                replace(
                    latest,
                    execution_count=latest.execution_count + 1,
                    last_executed_at=self._clock(),
                )
            )
        return record
