"""Cooperative cancellation tokens that can also abort in-flight backend calls."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

LOG = logging.getLogger("reportquery.engine.cancellation")

CANCEL_REQUESTED = "cancelled"
DEADLINE_EXCEEDED = "timeout"


class CancellationToken:
    """
    Thread-safe cancellation signal.

    Callbacks registered with :meth:`on_cancel` run exactly once, on the
    thread that requests cancellation; they are how a blocked network call
    gets interrupted rather than merely not continued.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """True once cancellation has been requested."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason passed to the first :meth:`cancel` call."""
        return self._reason

    def cancel(self, reason: str = CANCEL_REQUESTED) -> bool:
        """
        Request cancellation and run registered callbacks.

        Returns
        -------
        bool
            True when this call performed the cancellation, False if already cancelled.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001 - abort hooks must not mask the cancel
                LOG.warning("Cancellation callback failed", exc_info=True)
        return True

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback, invoking it immediately if already cancelled.

        Returns
        -------
        Callable[[], None]
            Function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until cancelled or the timeout elapses.

        Returns
        -------
        bool
            True when cancellation was requested.
        """
        return self._event.wait(timeout)

    def link(self, parent: CancellationToken) -> Callable[[], None]:
        """
        Propagate cancellation from ``parent`` into this token.

        Returns
        -------
        Callable[[], None]
            Function that detaches the link.
        """
        return parent.on_cancel(lambda: self.cancel(parent.reason or CANCEL_REQUESTED))
