"""Structured service-call logging for the engine facade."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

LOG = logging.getLogger("reportquery.services")

T = TypeVar("T")


@dataclass
class ServiceCallMetrics:
    """Structured metrics describing a service invocation."""

    name: str
    duration_ms: float
    source: str | None = None
    rows: int | None = None
    execution_id: str | None = None
    error: str | None = None


@dataclass
class ServiceObservability:
    """Configuration for service-level observability."""

    enabled: bool = False
    logger: logging.Logger = field(default_factory=lambda: LOG)

    def record(self, metrics: ServiceCallMetrics) -> None:
        """
        Emit a structured log line for a service call.

        Parameters
        ----------
        metrics:
            Call metrics describing the invocation outcome.
        """
        if not self.enabled or not self.logger.isEnabledFor(logging.INFO):
            return
        payload: dict[str, object] = {
            "name": metrics.name,
            "duration_ms": round(metrics.duration_ms, 2),
        }
        if metrics.source is not None:
            payload["source"] = metrics.source
        if metrics.rows is not None:
            payload["rows"] = metrics.rows
        if metrics.execution_id is not None:
            payload["execution_id"] = metrics.execution_id
        if metrics.error is not None:
            payload["error"] = metrics.error
        self.logger.info("service_call %s", payload)


def _extract_rows(result: object) -> int | None:
    rows = getattr(result, "rows", None)
    if isinstance(rows, (list, tuple)):
        return len(rows)
    row_count = getattr(result, "row_count", None)
    return row_count if isinstance(row_count, int) else None


def observe_call(
    observability: ServiceObservability | None,
    *,
    name: str,
    source: str | None,
    func: Callable[[], T],
) -> T:
    """
    Execute a callable while capturing observability signals.

    Returns
    -------
    T
        Result returned by the wrapped callable.
    """
    start = time.perf_counter()
    try:
        result = func()
    except Exception as exc:
        if observability is not None:
            observability.record(
                ServiceCallMetrics(
                    name=name,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    source=source,
                    error=exc.__class__.__name__,
                )
            )
        raise
    if observability is not None:
        observability.record(
            ServiceCallMetrics(
                name=name,
                duration_ms=(time.perf_counter() - start) * 1000,
                source=source,
                rows=_extract_rows(result),
                execution_id=getattr(result, "id", None) if hasattr(result, "status") else None,
            )
        )
    return result
