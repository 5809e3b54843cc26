"""Run native queries against pooled backend connections under a deadline."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from reportquery.compilers.base import NativeQuery
from reportquery.connectors.base import (
    ConnectorAuthError,
    ConnectorError,
    ConnectorQueryError,
    RawRow,
)
from reportquery.engine.cancellation import DEADLINE_EXCEEDED, CancellationToken
from reportquery.engine.normalize import normalize_rows
from reportquery.engine.pool import PoolRegistry
from reportquery.engine.postprocess import (
    apply_filters,
    apply_order,
    group_rows,
    paginate,
    project,
    relocate_row_warnings,
)
from reportquery.engine.results import ExecutionResult, GroupSummary, RowWarning
from reportquery.engine.retry import RetryPolicy, run_with_retry
from reportquery.services.credentials import Credential
from reportquery.services.errors import ExecutionError, ExecutionErrorKind

LOG = logging.getLogger("reportquery.engine.executor")


@dataclass(frozen=True)
class ExecutionLimits:
    """Hard limits applied to a single execution."""

    result_ceiling: int = 50_000
    fetch_page_size: int = 500


@dataclass
class _Progress:
    rows: list[RawRow] = field(default_factory=list)
    pages: int = 0
    attempts: int = 0
    truncated: bool = False

    def reset(self, attempt: int) -> None:
        self.rows = []
        self.pages = 0
        self.attempts = attempt
        self.truncated = False


class ExecutionEngine:
    """
    Execute compiled queries with pooling, retry, deadlines and cancellation.

    The deadline is a timer that cancels the execution's token with reason
    ``timeout``; cancelling the token aborts the connector call in flight,
    and the aborted connection is discarded rather than returned to the pool.
    """

    def __init__(
        self,
        pools: PoolRegistry,
        *,
        retry: RetryPolicy | None = None,
        limits: ExecutionLimits | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pools = pools
        self._retry = retry or RetryPolicy()
        self._limits = limits or ExecutionLimits()
        self._monotonic = monotonic

    def execute(
        self,
        native: NativeQuery,
        credential: Credential,
        *,
        timeout: float,
        cancel: CancellationToken | None = None,
        allow_partial: bool = False,
    ) -> ExecutionResult:
        """
        Fetch, normalize and post-process the rows of a native query.

        Parameters
        ----------
        native:
            Compiled query.
        credential:
            Credential resolved for the query's source.
        timeout:
            Seconds before the execution is aborted.
        cancel:
            Caller's token; cancelling it aborts the execution.
        allow_partial:
            Return rows fetched before the deadline instead of failing.

        Returns
        -------
        ExecutionResult
            Result page, warnings and provenance counters.

        Raises
        ------
        ExecutionError
            On connection, authentication, query, timeout or cancellation failures.
        """
        token = CancellationToken()
        detach = token.link(cancel) if cancel is not None else (lambda: None)
        timer = threading.Timer(timeout, token.cancel, args=(DEADLINE_EXCEEDED,))
        timer.daemon = True
        deadline = self._monotonic() + timeout
        progress = _Progress()
        timer.start()
        try:
            run_with_retry(
                lambda attempt: self._fetch(native, credential, token, deadline, progress, attempt),
                self._retry,
                deadline=deadline,
                cancel=token,
                monotonic=self._monotonic,
            )
        except Exception as exc:
            if token.cancelled and token.reason == DEADLINE_EXCEEDED and allow_partial:
                LOG.info(
                    "Deadline reached after %d rows; returning partial result", len(progress.rows)
                )
                return self._finish(native, progress, partial=True)
            raise self._map_error(exc, token, native) from exc
        finally:
            timer.cancel()
            detach()
        return self._finish(native, progress, partial=False)

    def test_connection(self, credential: Credential, *, timeout: float) -> float:
        """
        Ping the backend behind ``credential``.

        Returns
        -------
        float
            Round-trip time in seconds.

        Raises
        ------
        ExecutionError
            When the backend cannot be reached or rejects the credential.
        """
        started = self._monotonic()
        try:
            with self._pools.lease(credential, timeout=timeout) as connector:
                connector.ping()
        except ExecutionError:
            raise
        except ConnectorAuthError as exc:
            raise ExecutionError(
                ExecutionErrorKind.AUTH_FAILED, str(exc), source=credential.source.value
            ) from exc
        except ConnectorError as exc:
            raise ExecutionError(
                ExecutionErrorKind.CONNECTION_FAILED, str(exc), source=credential.source.value
            ) from exc
        return self._monotonic() - started

    def _fetch(  # noqa: PLR0913
        self,
        native: NativeQuery,
        credential: Credential,
        token: CancellationToken,
        deadline: float,
        progress: _Progress,
        attempt: int,
    ) -> None:
        progress.reset(attempt)
        wait = max(deadline - self._monotonic(), 0.0)
        page_size = (
            native.pagination.page_size if native.native_pagination else self._limits.fetch_page_size
        )
        needed = native.pagination.limit if native.native_pagination else None
        ceiling = self._limits.result_ceiling
        with self._pools.lease(credential, timeout=wait) as connector:
            unregister = token.on_cancel(connector.abort)
            pages = connector.fetch_pages(native, page_size=page_size)
            try:
                for page in pages:
                    if token.cancelled:
                        message = f"execution aborted: {token.reason}"
                        raise ConnectorError(message)
                    progress.rows.extend(page.rows)
                    progress.pages += 1
                    if needed is not None and len(progress.rows) >= needed:
                        break
                    if len(progress.rows) > ceiling:
                        del progress.rows[ceiling:]
                        progress.truncated = True
                        break
            finally:
                close = getattr(pages, "close", None)
                if close is not None:
                    close()
                unregister()
        LOG.debug(
            "Fetched %d rows in %d pages (attempt %d)", len(progress.rows), progress.pages, attempt
        )

    def _finish(self, native: NativeQuery, progress: _Progress, *, partial: bool) -> ExecutionResult:
        normalized, row_warnings = normalize_rows(progress.rows, native.fields)
        plan = native.post_fetch
        rows = apply_filters(normalized, plan.filters)
        total_matched = len(rows)
        rows = apply_order(rows, plan.order_by)
        groups: list[GroupSummary] = []
        if plan.group_by is not None:
            rows, groups = group_rows(rows, plan.group_by)
        returned = paginate(rows, native.pagination)
        page = project(returned, native.selected_fields)

        warnings = [RowWarning(code=w.code, message=w.message, field=w.field) for w in native.warnings]
        warnings.extend(relocate_row_warnings(normalized, returned, row_warnings))
        if progress.truncated:
            warnings.append(
                RowWarning(
                    code="result_truncated",
                    message=(
                        f"Result exceeded the ceiling of {self._limits.result_ceiling} rows; "
                        "remaining rows were not fetched"
                    ),
                )
            )
        if partial:
            warnings.append(
                RowWarning(
                    code="partial_result",
                    message=f"Timed out after fetching {len(progress.rows)} rows",
                )
            )
        return ExecutionResult(
            rows=tuple(page),
            warnings=tuple(warnings),
            groups=tuple(groups),
            fetched=len(progress.rows),
            total_matched=total_matched,
            pages_fetched=progress.pages,
            attempts=max(progress.attempts, 1),
            truncated=progress.truncated,
            partial=partial,
        )

    @staticmethod
    def _map_error(
        exc: Exception, token: CancellationToken, native: NativeQuery
    ) -> ExecutionError:
        source = native.source.value
        if token.cancelled:
            if token.reason == DEADLINE_EXCEEDED:
                return ExecutionError(
                    ExecutionErrorKind.TIMEOUT, "Execution exceeded its timeout", source=source
                )
            return ExecutionError(
                ExecutionErrorKind.CANCELLED, "Execution was cancelled", source=source
            )
        if isinstance(exc, ExecutionError):
            return exc
        if isinstance(exc, ConnectorAuthError):
            return ExecutionError(ExecutionErrorKind.AUTH_FAILED, str(exc), source=source)
        if isinstance(exc, ConnectorQueryError):
            return ExecutionError(ExecutionErrorKind.QUERY_REJECTED, str(exc), source=source)
        if isinstance(exc, ConnectorError):
            return ExecutionError(ExecutionErrorKind.CONNECTION_FAILED, str(exc), source=source)
        LOG.exception("Unexpected failure executing %s query", source)
        return ExecutionError(ExecutionErrorKind.INTERNAL, str(exc), source=source)
