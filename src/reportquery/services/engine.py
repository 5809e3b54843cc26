"""
Engine facade: validation, compilation, cached asynchronous execution and results.

``ReportQueryService`` is the surface route handlers, schedulers and the CLI
call. Validation and compilation errors are raised synchronously; execution
happens on a worker pool and its outcome is read back through the ledger.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from typing import Any

from reportquery.cache.fingerprint import compute_fingerprint
from reportquery.cache.result_cache import CacheKey, CacheStats, ResultCache
from reportquery.catalog.service import FieldCatalogService
from reportquery.catalog.types import FieldCatalog
from reportquery.compilers.base import NativeQuery, SourceCompiler
from reportquery.config.models import EngineConfig
from reportquery.engine.cancellation import CANCEL_REQUESTED, CancellationToken
from reportquery.engine.executor import ExecutionEngine
from reportquery.engine.results import GroupSummary, Row, RowWarning
from reportquery.ledger.ledger import ExecutionLedger
from reportquery.ledger.models import ExecutionRecord, HistoryFilters, Page
from reportquery.ledger.states import ExecutionStatus
from reportquery.query.model import QueryDefinition, serialize
from reportquery.query.validator import QueryValidator
from reportquery.reports.models import CustomReport
from reportquery.reports.repository import CustomReportService
from reportquery.services.credentials import Credential, CredentialStore
from reportquery.services.errors import (
    CredentialError,
    ExecutionError,
    ExecutionErrorKind,
    ProblemError,
    QueryValidationError,
    ResultsExpiredError,
    ResultsNotReadyError,
    Violation,
    log_problem,
)
from reportquery.services.limits import (
    LimitMessage,
    ResultLimits,
    clamp_limit_value,
    clamp_offset_value,
)
from reportquery.services.observability import ServiceObservability, observe_call
from reportquery.sources import SourceKind, parse_source

LOG = logging.getLogger("reportquery.services.engine")

ResultListener = Callable[[ExecutionRecord, tuple[Row, ...]], None]
DEFAULT_HISTORY_LIMIT = 50
# How long cancel_execution waits for a running execution to wind down.
CANCEL_GRACE_SECONDS = 5.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    return value


@dataclass(frozen=True)
class ResultPage:
    """Window over a completed execution's cached rows."""

    execution_id: str
    rows: tuple[Row, ...]
    offset: int
    limit: int
    total: int
    generated_at: datetime
    expires_at: datetime
    warnings: tuple[RowWarning, ...] = ()
    groups: tuple[GroupSummary, ...] = ()
    partial: bool = False
    messages: tuple[LimitMessage, ...] = ()

    @property
    def has_more(self) -> bool:
        """True when rows remain past this window."""
        return self.offset + len(self.rows) < self.total

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for API and CLI output.

        Returns
        -------
        dict[str, Any]
            JSON-friendly mapping with ISO timestamps.
        """
        return {
            "executionId": self.execution_id,
            "rows": [{k: _json_value(v) for k, v in row.items()} for row in self.rows],
            "offset": self.offset,
            "limit": self.limit,
            "total": self.total,
            "hasMore": self.has_more,
            "generatedAt": self.generated_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "warnings": [w.to_dict() for w in self.warnings],
            "groups": [{"value": _json_value(g.value), "count": g.count} for g in self.groups],
            "partial": self.partial,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class PreparedQuery:
    """Validated and compiled request, ready for execution."""

    credential: Credential
    catalog: FieldCatalog
    definition: QueryDefinition
    native: NativeQuery
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Submission:
    record_id: str
    prepared: PreparedQuery
    key: CacheKey
    deadline: float
    allow_partial: bool
    token: CancellationToken


class ReportQueryService:
    """
    Application service over catalog, validator, compilers, engine, cache and ledger.

    Call :meth:`init` before submitting executions and :meth:`shutdown` to
    cancel outstanding work and release pooled connections.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        config: EngineConfig,
        credentials: CredentialStore,
        catalog: FieldCatalogService,
        validator: QueryValidator,
        compilers: Mapping[SourceKind, SourceCompiler],
        engine: ExecutionEngine,
        cache: ResultCache,
        ledger: ExecutionLedger,
        reports: CustomReportService,
        observability: ServiceObservability | None = None,
        closers: Sequence[Callable[[], None]] = (),
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.reports = reports
        self._credentials = credentials
        self._catalog = catalog
        self._validator = validator
        self._compilers = dict(compilers)
        self._engine = engine
        self._cache = cache
        self._ledger = ledger
        self._observability = observability
        self._closers = list(closers)
        self._clock = clock
        self._monotonic = monotonic
        self._limits = ResultLimits.from_config(config)
        self._state_lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._futures: dict[str, Future[None]] = {}
        self._listeners: list[ResultListener] = []
        self._workers: ThreadPoolExecutor | None = None
        self._catalog.add_listener(self._on_catalog_swap)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> None:
        """Start the worker pool; calling it twice is harmless."""
        with self._state_lock:
            if self._workers is None:
                self._workers = ThreadPoolExecutor(
                    max_workers=self.config.worker_count, thread_name_prefix="reportquery"
                )
                LOG.info("Started %d execution workers", self.config.worker_count)

    def shutdown(self, *, wait_for_workers: bool = True) -> None:
        """
        Cancel outstanding executions, stop workers and release resources.

        Queued executions are marked cancelled here; running ones record their
        own cancellation once the backend call is aborted. Resources are closed
        only after the workers have exited, in the background when
        ``wait_for_workers`` is false.
        """
        with self._state_lock:
            workers, self._workers = self._workers, None
            tokens = dict(self._tokens)
            for execution_id, token in tokens.items():
                token.cancel(CANCEL_REQUESTED)
                if self._ledger.get(execution_id).status is ExecutionStatus.PENDING:
                    self._ledger.transition(
                        execution_id,
                        ExecutionStatus.CANCELLED,
                        error_kind=ExecutionErrorKind.CANCELLED.value,
                        error_message="Cancelled by service shutdown",
                    )
        if tokens:
            LOG.info("Cancelled %d outstanding executions on shutdown", len(tokens))
        if workers is None:
            self._close_resources()
        elif wait_for_workers:
            workers.shutdown(wait=True, cancel_futures=True)
            self._close_resources()
        else:
            workers.shutdown(wait=False, cancel_futures=True)
            threading.Thread(
                target=self._drain_and_close,
                args=(workers,),
                name="reportquery-shutdown",
                daemon=True,
            ).start()

    def _drain_and_close(self, workers: ThreadPoolExecutor) -> None:
        workers.shutdown(wait=True)
        self._close_resources()

    def _close_resources(self) -> None:
        for closer in self._closers:
            try:
                closer()
            except Exception:  # noqa: BLE001 - keep closing the rest
                LOG.warning("Resource close failed during shutdown", exc_info=True)
        LOG.info("Report query service stopped")

    def add_result_listener(self, listener: ResultListener) -> None:
        """Register a callable receiving ``(record, rows)`` after each completion."""
        with self._state_lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def discover_schema(self, source: SourceKind | str, credential_id: str) -> FieldCatalog:
        """
        Return the active field catalog for a source and credential.

        Returns
        -------
        FieldCatalog
            Catalog, discovered on first use or after expiry.

        Raises
        ------
        CatalogError
            If the backend cannot be described.
        CredentialError
            If the credential is unknown or belongs to another source.
        """
        kind = self._source(source)
        return observe_call(
            self._observability,
            name="discover_schema",
            source=kind.value,
            func=lambda: self._catalog.discover(kind, self._credential(credential_id, kind)),
        )

    def refresh_schema(self, source: SourceKind | str, credential_id: str) -> FieldCatalog:
        """
        Rediscover a catalog; cached results of the superseded version are dropped.

        Returns
        -------
        FieldCatalog
            Newly installed catalog.
        """
        kind = self._source(source)
        return observe_call(
            self._observability,
            name="refresh_schema",
            source=kind.value,
            func=lambda: self._catalog.refresh(kind, self._credential(credential_id, kind)),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def validate_and_compile(self, raw_query: Mapping[str, Any], credential_id: str) -> NativeQuery:
        """
        Validate a request and compile it for its backend without executing.

        Returns
        -------
        NativeQuery
            Compiled query (preview form).

        Raises
        ------
        QueryValidationError
            Listing every problem with the request.
        CompileError
            If the backend cannot express the definition.
        """
        prepared = self.prepare(raw_query, credential_id)
        return prepared.native

    def prepare(self, raw_query: Mapping[str, Any], credential_id: str) -> PreparedQuery:
        """
        Resolve the credential and catalog, validate and compile.

        Returns
        -------
        PreparedQuery
            Everything execution needs.
        """
        source = self._request_source(raw_query)
        credential = self._credential(credential_id, source)
        catalog = self._catalog.discover(source, credential)
        report = self._validator.check(raw_query, catalog)
        if report.definition is None or report.violations:
            raise QueryValidationError(report.violations)
        native = self._compilers[source].compile(report.definition, catalog)
        return PreparedQuery(credential, catalog, report.definition, native, report.warnings)

    def execute_query(  # noqa: PLR0913
        self,
        raw_query: Mapping[str, Any],
        *,
        owner_id: str,
        credential_id: str,
        timeout: float | None = None,
        allow_partial: bool = False,
        custom_report_id: str | None = None,
    ) -> ExecutionRecord:
        """
        Submit a query for asynchronous execution.

        Parameters
        ----------
        raw_query:
            Request payload.
        owner_id:
            Submitting user; history and results are scoped to them.
        credential_id:
            Credential for the request's source.
        timeout:
            Seconds from submission before the execution is aborted.
        allow_partial:
            Keep rows fetched before a timeout instead of failing.
        custom_report_id:
            Saved report this execution runs, if any.

        Returns
        -------
        ExecutionRecord
            Pending record; poll :meth:`get_execution` or use
            :meth:`wait_for_execution`.
        """
        prepared = self.prepare(raw_query, credential_id)
        return observe_call(
            self._observability,
            name="execute_query",
            source=prepared.native.source.value,
            func=lambda: self._submit(
                prepared,
                owner_id=owner_id,
                timeout=timeout,
                allow_partial=allow_partial,
                custom_report_id=custom_report_id,
            ),
        )

    def execute_report(  # noqa: PLR0913
        self,
        custom_report_id: str,
        *,
        owner_id: str,
        credential_id: str,
        parameters: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        allow_partial: bool = False,
    ) -> ExecutionRecord:
        """
        Run a saved report with parameter overrides.

        Returns
        -------
        ExecutionRecord
            Pending record linked to the report.
        """

        def _runner(
            raw: Mapping[str, Any], *, owner_id: str, credential_id: str, custom_report_id: str
        ) -> ExecutionRecord:
            return self.execute_query(
                raw,
                owner_id=owner_id,
                credential_id=credential_id,
                timeout=timeout,
                allow_partial=allow_partial,
                custom_report_id=custom_report_id,
            )

        return self.reports.execute(
            custom_report_id,
            owner_id,
            _runner,
            credential_id=credential_id,
            parameters=parameters,
        )

    def create_report(  # noqa: PLR0913
        self,
        *,
        owner_id: str,
        name: str,
        raw_query: Mapping[str, Any],
        credential_id: str,
        description: str = "",
        is_favorite: bool = False,
    ) -> CustomReport:
        """
        Validate a definition against the current catalog and save it.

        Returns
        -------
        CustomReport
            Stored report holding the normalized definition.
        """
        prepared = self.prepare(raw_query, credential_id)
        return self.reports.create(
            owner_id,
            name,
            serialize(prepared.definition),
            description=description,
            is_favorite=is_favorite,
        )

    # ------------------------------------------------------------------
    # Executions and results
    # ------------------------------------------------------------------

    def get_execution(self, execution_id: str, *, owner_id: str | None = None) -> ExecutionRecord:
        """
        Load an execution record.

        Returns
        -------
        ExecutionRecord
            Current record.
        """
        return self._ledger.get(execution_id, owner_id=owner_id)

    def get_results(
        self,
        execution_id: str,
        *,
        owner_id: str | None = None,
        offset: int | None = 0,
        limit: int | None = None,
    ) -> ResultPage:
        """
        Read a window of a completed execution's rows from the cache.

        Returns
        -------
        ResultPage
            Rows plus provenance.

        Raises
        ------
        NotFoundError
            If the execution is unknown to the owner.
        ResultsNotReadyError
            If the execution has not completed.
        ResultsExpiredError
            If the cached rows expired or were invalidated.
        """
        record = self._ledger.get(execution_id, owner_id=owner_id)
        if record.status is not ExecutionStatus.COMPLETED:
            raise ResultsNotReadyError(execution_id, record.status.value)
        entry = self._cache.get(record.result_key) if record.result_key else None
        if entry is None or (
            record.completed_at is not None and entry.generated_at > record.completed_at
        ):
            raise ResultsExpiredError(execution_id)
        offset_clamp = clamp_offset_value(offset)
        limit_clamp = clamp_limit_value(
            limit, default=self._limits.default_limit, max_limit=self._limits.max_limit
        )
        start, size = offset_clamp.applied, limit_clamp.applied
        rows = entry.result.rows
        return ResultPage(
            execution_id=execution_id,
            rows=tuple(rows[start : start + size]),
            offset=start,
            limit=size,
            total=len(rows),
            generated_at=entry.generated_at,
            expires_at=entry.expires_at,
            warnings=entry.result.warnings,
            groups=entry.result.groups,
            partial=entry.result.partial,
            messages=(*offset_clamp.messages, *limit_clamp.messages),
        )

    def list_history(
        self, filters: HistoryFilters | None = None, page: Page | None = None
    ) -> list[ExecutionRecord]:
        """
        List execution records newest first.

        Returns
        -------
        list[ExecutionRecord]
            Records in the requested window.
        """
        window = page or Page(limit=DEFAULT_HISTORY_LIMIT)
        limit = clamp_limit_value(
            window.limit, default=DEFAULT_HISTORY_LIMIT, max_limit=self._limits.max_limit
        ).applied
        offset = clamp_offset_value(window.offset).applied
        return self._ledger.query(filters or HistoryFilters(), Page(offset=offset, limit=limit))

    def cancel_execution(self, execution_id: str, *, owner_id: str | None = None) -> ExecutionRecord:
        """
        Cancel a pending or running execution.

        A pending execution is cancelled immediately. A running one has its
        backend call aborted; the call waits briefly for the worker to record
        the cancellation. Terminal executions are returned unchanged.

        Returns
        -------
        ExecutionRecord
            Record after the cancellation request.
        """
        with self._state_lock:
            record = self._ledger.get(execution_id, owner_id=owner_id)
            if record.terminal:
                return record
            token = self._tokens.get(execution_id)
            future = self._futures.get(execution_id)
            if token is not None:
                token.cancel(CANCEL_REQUESTED)
            if record.status is ExecutionStatus.PENDING:
                LOG.info("Cancelled pending execution %s", execution_id)
                return self._ledger.transition(
                    execution_id,
                    ExecutionStatus.CANCELLED,
                    error_kind=ExecutionErrorKind.CANCELLED.value,
                    error_message="Cancelled before execution started",
                )
        if future is not None:
            wait([future], timeout=CANCEL_GRACE_SECONDS)
        return self._ledger.get(execution_id)

    def wait_for_execution(self, execution_id: str, timeout: float | None = None) -> ExecutionRecord:
        """
        Block until an execution is terminal or ``timeout`` elapses.

        Returns
        -------
        ExecutionRecord
            Latest record (possibly still pending or running).
        """
        with self._state_lock:
            future = self._futures.get(execution_id)
        if future is not None:
            wait([future], timeout=timeout)
        return self._ledger.get(execution_id)

    def clear_cache(self, source: SourceKind | str, credential_id: str) -> int:
        """
        Drop cached results for a source and credential.

        Returns
        -------
        int
            Number of entries removed.
        """
        kind = self._source(source)
        return self._cache.invalidate(kind, credential_id)

    def cache_stats(self) -> CacheStats:
        """
        Snapshot result cache counters.

        Returns
        -------
        CacheStats
            Hits, misses, joins, evictions and entry count.
        """
        return self._cache.stats()

    def test_connection(self, source: SourceKind | str, credential_id: str) -> dict[str, Any]:
        """
        Ping the backend behind a credential.

        Returns
        -------
        dict[str, Any]
            ``ok`` flag, latency in milliseconds, and the failure when not ok.
        """
        kind = self._source(source)
        credential = self._credential(credential_id, kind)
        outcome: dict[str, Any] = {"source": kind.value, "credentialId": credential_id}
        try:
            elapsed = self._engine.test_connection(
                credential, timeout=self.config.http_timeout_seconds
            )
        except ExecutionError as exc:
            outcome.update(ok=False, errorKind=exc.kind.value, error=exc.problem_detail.detail)
            return outcome
        outcome.update(ok=True, latencyMs=round(elapsed * 1000, 2))
        return outcome

    # ------------------------------------------------------------------
    # Execution path
    # ------------------------------------------------------------------

    def _submit(
        self,
        prepared: PreparedQuery,
        *,
        owner_id: str,
        timeout: float | None,
        allow_partial: bool,
        custom_report_id: str | None,
    ) -> ExecutionRecord:
        native = prepared.native
        fingerprint = compute_fingerprint(
            native, prepared.credential, prepared.definition.parameters
        )
        record = ExecutionRecord(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            source=native.source,
            credential_id=prepared.credential.id,
            status=ExecutionStatus.PENDING,
            submitted_at=self._clock(),
            query_fingerprint=fingerprint,
            custom_report_id=custom_report_id,
            query_definition=serialize(prepared.definition),
            parameters=dict(prepared.definition.parameters),
        )
        submission = _Submission(
            record_id=record.id,
            prepared=prepared,
            key=CacheKey(
                fingerprint=fingerprint,
                source=native.source,
                credential_id=prepared.credential.id,
                catalog_version=native.catalog_version,
            ),
            deadline=self._monotonic() + self.config.resolve_timeout(timeout),
            allow_partial=allow_partial,
            token=CancellationToken(),
        )
        with self._state_lock:
            if self._workers is None:
                message = "ReportQueryService.init() has not been called"
                raise RuntimeError(message)
            self._ledger.record(record)
            self._tokens[record.id] = submission.token
            future = self._workers.submit(self._run, submission)
            self._futures[record.id] = future
        future.add_done_callback(lambda _: self._forget(record.id))
        return record

    def _forget(self, execution_id: str) -> None:
        with self._state_lock:
            self._tokens.pop(execution_id, None)
            self._futures.pop(execution_id, None)

    def _run(self, submission: _Submission) -> None:
        execution_id = submission.record_id
        token = submission.token
        with self._state_lock:
            if token.cancelled:
                return
            self._ledger.transition(execution_id, ExecutionStatus.RUNNING)
        try:
            remaining = submission.deadline - self._monotonic()
            if remaining <= 0:
                message = "Execution timed out before a worker picked it up"
                raise ExecutionError(
                    ExecutionErrorKind.TIMEOUT, message, source=submission.key.source.value
                )
            prepared = submission.prepared
            outcome = self._cache.get_or_compute(
                submission.key,
                lambda: self._engine.execute(
                    prepared.native,
                    prepared.credential,
                    timeout=remaining,
                    cancel=token,
                    allow_partial=submission.allow_partial,
                ),
                timeout=remaining,
                cancel=token,
            )
        except ExecutionError as exc:
            self._fail(execution_id, exc.kind, exc.problem_detail.detail, exc)
            return
        except ProblemError as exc:
            self._fail(execution_id, ExecutionErrorKind.INTERNAL, exc.problem_detail.detail, exc)
            return
        except Exception as exc:
            LOG.exception("Execution %s failed unexpectedly", execution_id)
            self._fail(execution_id, ExecutionErrorKind.INTERNAL, str(exc), None)
            return

        result = outcome.entry.result
        result_key = submission.key.fingerprint
        if not outcome.stored:
            # Kept under a key private to this execution; "superseded" marks a complete
            # result whose scope was invalidated while it ran.
            label = "partial" if result.partial else "superseded"
            private = replace(submission.key, fingerprint=f"{result_key}:{label}:{execution_id}")
            self._cache.put(private, result)
            result_key = private.fingerprint
        record = self._ledger.transition(
            execution_id,
            ExecutionStatus.COMPLETED,
            row_count=result.row_count,
            warnings=result.warnings,
            cache_hit=outcome.hit,
            partial=result.partial,
            result_key=result_key,
        )
        LOG.info(
            "Execution %s completed: %d rows, %d warnings, cache_hit=%s",
            execution_id,
            result.row_count,
            len(result.warnings),
            outcome.hit,
        )
        self._notify(record, result.rows)

    def _fail(
        self,
        execution_id: str,
        kind: ExecutionErrorKind,
        message: str,
        error: ProblemError | None,
    ) -> None:
        status = (
            ExecutionStatus.CANCELLED if kind is ExecutionErrorKind.CANCELLED else ExecutionStatus.FAILED
        )
        if error is not None and status is ExecutionStatus.FAILED:
            log_problem(LOG, error.problem_detail)
        self._ledger.transition(execution_id, status, error_kind=kind.value, error_message=message)

    def _notify(self, record: ExecutionRecord, rows: tuple[Row, ...]) -> None:
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record, rows)
            except Exception:  # noqa: BLE001 - listeners must not fail the execution
                LOG.warning("Result listener failed for %s", record.id, exc_info=True)

    def _on_catalog_swap(self, new: FieldCatalog, previous: FieldCatalog | None) -> None:
        if previous is not None and previous.version != new.version:
            self._cache.invalidate(new.source, new.credential_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _source(self, value: SourceKind | str) -> SourceKind:
        kind = parse_source(value)
        if kind is None:
            raise QueryValidationError(
                [Violation("source_unknown", "source", f"Unknown source: {value!r}")]
            )
        return kind

    def _request_source(self, raw_query: Mapping[str, Any]) -> SourceKind:
        if not isinstance(raw_query, Mapping):
            raise QueryValidationError(
                [Violation("request_invalid", "", "Query request must be an object")]
            )
        source = parse_source(raw_query.get("source"))
        if source is None:
            raise QueryValidationError(
                [
                    Violation(
                        "source_unknown",
                        "source",
                        f"Unknown source: {raw_query.get('source')!r}",
                    )
                ]
            )
        if not self.config.is_enabled(source):
            raise QueryValidationError(
                [Violation("source_disabled", "source", f"Source {source.value} is disabled")]
            )
        return source

    def _credential(self, credential_id: str, source: SourceKind) -> Credential:
        credential = self._credentials.get_credential(credential_id)
        if credential.source is not source:
            message = f"Credential is for {credential.source.value}, not {source.value}"
            raise CredentialError(credential_id, message)
        return credential
