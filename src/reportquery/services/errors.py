"""Shared error taxonomy and Problem Details helpers."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4


def generate_correlation_id() -> str:
    """
    Return a new correlation identifier for tracing errors.

    Returns
    -------
    str
        UUID4 correlation identifier.
    """
    return str(uuid4())


@dataclass(frozen=True)
class ProblemDetail:
    """
    RFC 9457 Problem Details payload.

    Fields mirror the standard shape with optional extras for diagnostics.
    """

    type: str
    title: str
    detail: str
    status: int | None = None
    instance: str = field(default_factory=generate_correlation_id)
    code: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize to a JSON-friendly dict.

        Returns
        -------
        dict[str, Any]
            Problem detail payload as a plain dictionary.
        """
        payload: dict[str, Any] = {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "instance": self.instance,
        }
        if self.status is not None:
            payload["status"] = self.status
        if self.code is not None:
            payload["code"] = self.code
        if self.extras:
            payload["extras"] = self.extras
        return payload


def problem(  # noqa: PLR0913
    code: str,
    title: str,
    detail: str,
    *,
    status: int | None = None,
    instance: str | None = None,
    type_uri: str | None = None,
    extras: dict[str, Any] | None = None,
) -> ProblemDetail:
    """
    Create a ProblemDetail with defaults for type/instance.

    Parameters
    ----------
    code
        Stable problem code (e.g., 'query.invalid').
    title
        Human-readable error summary.
    detail
        Detailed description of the error.
    status
        Optional HTTP-style status code.
    instance
        Correlation/trace identifier; defaults to a UUID4.
    type_uri
        URI identifying the problem type; defaults to a reportquery namespace.
    extras
        Optional structured context for diagnostics.

    Returns
    -------
    ProblemDetail
        Structured problem payload.
    """
    resolved_instance = instance or generate_correlation_id()
    resolved_type = type_uri or f"https://problems.reportquery.dev/{code}"
    return ProblemDetail(
        type=resolved_type,
        title=title,
        detail=detail,
        status=status,
        instance=resolved_instance,
        code=code,
        extras=extras or {},
    )


def log_problem(logger: logging.Logger | logging.LoggerAdapter, detail: ProblemDetail) -> None:
    """Emit a Problem Detail as a structured error log."""
    logger.error(json.dumps(detail.to_dict(), default=str))


class ProblemError(Exception):
    """Base exception carrying a ProblemDetail payload."""

    def __init__(self, detail: ProblemDetail) -> None:
        super().__init__(detail.detail)
        self.problem_detail = detail


@dataclass(frozen=True)
class Violation:
    """One problem found while validating a query request."""

    code: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        """
        Serialize the violation for Problem Details extras.

        Returns
        -------
        dict[str, str]
            Plain mapping with code, path and message.
        """
        return {"code": self.code, "path": self.path, "message": self.message}


class QueryValidationError(ProblemError):
    """Query request failed validation; carries every violation found."""

    def __init__(self, violations: Sequence[Violation]) -> None:
        self.violations = tuple(violations)
        summary = "; ".join(v.message for v in self.violations) or "invalid query"
        super().__init__(
            problem(
                code="query.invalid",
                title="Query validation failed",
                detail=summary,
                status=400,
                extras={"violations": [v.to_dict() for v in self.violations]},
            )
        )


class CompileError(ProblemError):
    """A validated query could not be translated for its backend."""

    def __init__(self, detail: str, *, source: str, field_name: str | None = None) -> None:
        extras: dict[str, Any] = {"source": source}
        if field_name is not None:
            extras["field"] = field_name
        super().__init__(
            problem(
                code="query.compile_failed",
                title="Query compilation failed",
                detail=detail,
                status=422,
                extras=extras,
            )
        )
        self.source = source
        self.field_name = field_name


class CatalogErrorKind(StrEnum):
    """Failure modes of field catalog discovery."""

    UNREACHABLE = "unreachable"
    PERMISSION_DENIED = "permission_denied"
    PARTIAL_SCHEMA = "partial_schema"


class CatalogError(ProblemError):
    """Field catalog discovery failed for a source/credential scope."""

    def __init__(self, kind: CatalogErrorKind, detail: str, *, source: str) -> None:
        status = 403 if kind is CatalogErrorKind.PERMISSION_DENIED else 503
        super().__init__(
            problem(
                code=f"catalog.{kind.value}",
                title="Field discovery failed",
                detail=detail,
                status=status,
                extras={"source": source},
            )
        )
        self.kind = kind
        self.source = source


class ExecutionErrorKind(StrEnum):
    """Machine-readable failure kinds recorded on execution records."""

    CONNECTION_FAILED = "connection_failed"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    QUERY_REJECTED = "query_rejected"
    INTERNAL = "internal"


_EXECUTION_STATUS: dict[ExecutionErrorKind, int] = {
    ExecutionErrorKind.CONNECTION_FAILED: 502,
    ExecutionErrorKind.AUTH_FAILED: 401,
    ExecutionErrorKind.TIMEOUT: 504,
    ExecutionErrorKind.CANCELLED: 499,
    ExecutionErrorKind.QUERY_REJECTED: 422,
    ExecutionErrorKind.INTERNAL: 500,
}


class ExecutionError(ProblemError):
    """Backend execution terminated without a usable result."""

    def __init__(self, kind: ExecutionErrorKind, detail: str, *, source: str | None = None) -> None:
        extras: dict[str, Any] = {}
        if source is not None:
            extras["source"] = source
        super().__init__(
            problem(
                code=f"execution.{kind.value}",
                title="Query execution failed",
                detail=detail,
                status=_EXECUTION_STATUS[kind],
                extras=extras,
            )
        )
        self.kind = kind
        self.source = source


class CredentialError(ProblemError):
    """Credential could not be resolved by the credential store."""

    def __init__(self, credential_id: str, detail: str) -> None:
        super().__init__(
            problem(
                code="credential.unavailable",
                title="Credential unavailable",
                detail=detail,
                status=401,
                extras={"credential_id": credential_id},
            )
        )
        self.credential_id = credential_id


class NotFoundError(ProblemError):
    """Requested entity does not exist or is not visible to the caller."""

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(
            problem(
                code=f"{entity}.not_found",
                title="Not found",
                detail=f"{entity} not found: {identifier}",
                status=404,
                extras={"id": identifier},
            )
        )
        self.entity = entity
        self.identifier = identifier


class ResultsNotReadyError(ProblemError):
    """Results were requested for an execution that has not completed."""

    def __init__(self, execution_id: str, status: str) -> None:
        super().__init__(
            problem(
                code="execution.results_not_ready",
                title="Results not available",
                detail=f"Execution {execution_id} is {status}; results exist only once completed",
                status=409,
                extras={"id": execution_id, "status": status},
            )
        )
        self.execution_id = execution_id
        self.status = status


class ResultsExpiredError(ProblemError):
    """Results for a completed execution are no longer cached."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            problem(
                code="execution.results_expired",
                title="Results expired",
                detail=f"Results for execution {execution_id} have expired; run the query again",
                status=410,
                extras={"id": execution_id},
            )
        )
        self.execution_id = execution_id


class InUseError(ProblemError):
    """Entity cannot be removed while referenced by an active collaborator."""

    def __init__(self, entity: str, identifier: str, detail: str) -> None:
        super().__init__(
            problem(
                code=f"{entity}.in_use",
                title="Resource in use",
                detail=detail,
                status=409,
                extras={"id": identifier},
            )
        )
        self.identifier = identifier


class ConflictError(ProblemError):
    """Write rejected because it would duplicate an existing entity."""

    def __init__(self, entity: str, detail: str) -> None:
        super().__init__(
            problem(
                code=f"{entity}.conflict",
                title="Conflict",
                detail=detail,
                status=409,
            )
        )


class InvalidTransitionError(RuntimeError):
    """Programming error: an execution record was moved along a forbidden edge."""

    def __init__(self, execution_id: str, current: str, target: str) -> None:
        message = f"Execution {execution_id} cannot move from {current} to {target}"
        super().__init__(message)
        self.execution_id = execution_id
        self.current = current
        self.target = target
