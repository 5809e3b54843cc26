"""Bounded exponential backoff for transient backend failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from reportquery.connectors.base import ConnectorAbortedError
from reportquery.engine.cancellation import CancellationToken

LOG = logging.getLogger("reportquery.engine.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule: attempts are capped, delays grow geometrically up to a cap."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: object) -> RetryPolicy:
        """
        Build a policy from an object exposing retry settings.

        Returns
        -------
        RetryPolicy
            Policy mirroring ``max_attempts``/``initial_delay_seconds``/
            ``max_delay_seconds``/``multiplier``.
        """
        return cls(
            max_attempts=int(getattr(settings, "max_attempts", cls.max_attempts)),
            initial_delay=float(getattr(settings, "initial_delay_seconds", cls.initial_delay)),
            max_delay=float(getattr(settings, "max_delay_seconds", cls.max_delay)),
            multiplier=float(getattr(settings, "multiplier", cls.multiplier)),
        )

    def delay_for(self, attempt: int) -> float:
        """
        Return the delay before retry number ``attempt`` (1-based).

        Returns
        -------
        float
            Delay in seconds.
        """
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


def is_retryable(exc: BaseException) -> bool:
    """
    Return whether an exception marks a transient failure.

    Returns
    -------
    bool
        True for exceptions whose ``retryable`` attribute is set.
    """
    return bool(getattr(exc, "retryable", False))


def run_with_retry(  # noqa: PLR0913
    operation: Callable[[int], T],
    policy: RetryPolicy,
    *,
    deadline: float,
    cancel: CancellationToken,
    monotonic: Callable[[], float] = time.monotonic,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails permanently or runs out of budget.

    Parameters
    ----------
    operation:
        Callable receiving the 1-based attempt number.
    policy:
        Backoff schedule.
    deadline:
        ``monotonic()`` instant after which no further attempt starts.
    cancel:
        Token checked before every attempt; backoff sleeps wake on cancel.
    monotonic:
        Clock used against ``deadline``.
    on_retry:
        Optional hook called with ``(attempt, error, delay)`` before sleeping.

    Returns
    -------
    T
        Value returned by the successful attempt.

    Raises
    ------
    ConnectorAbortedError
        When cancellation is requested between attempts.
    Exception
        The last error when it is not retryable, attempts are exhausted, or
        the next delay would overrun the deadline.
    """
    attempt = 1
    while True:
        if cancel.cancelled:
            message = f"aborted before attempt {attempt}: {cancel.reason}"
            raise ConnectorAbortedError(message)
        try:
            return operation(attempt)
        except Exception as exc:
            if cancel.cancelled or not is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if monotonic() + delay >= deadline:
                LOG.info("Not retrying after attempt %d: deadline too close", attempt)
                raise
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            LOG.warning("Transient failure on attempt %d, retrying in %.2fs: %s", attempt, delay, exc)
            if cancel.wait(delay):
                message = f"aborted during backoff: {cancel.reason}"
                raise ConnectorAbortedError(message) from exc
            attempt += 1
