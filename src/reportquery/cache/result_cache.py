"""TTL result cache with per-fingerprint single-flight computation."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from reportquery.engine.cancellation import CancellationToken
from reportquery.engine.results import ExecutionResult
from reportquery.services.errors import ExecutionError, ExecutionErrorKind
from reportquery.sources import SourceKind

LOG = logging.getLogger("reportquery.cache")

Scope = tuple[SourceKind, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CacheKey:
    """Fingerprint plus the scope and catalog version it was computed under."""

    fingerprint: str
    source: SourceKind
    credential_id: str
    catalog_version: int

    @property
    def scope(self) -> Scope:
        """(source, credential) pair used for invalidation."""
        return (self.source, self.credential_id)


@dataclass(frozen=True)
class CacheEntry:
    """Stored execution result."""

    fingerprint: str
    result: ExecutionResult
    generated_at: datetime
    expires_at: datetime
    catalog_version: int
    source: SourceKind
    credential_id: str

    def expired(self, now: datetime) -> bool:
        """
        Return whether the entry's TTL has elapsed.

        Returns
        -------
        bool
            True at or after ``expires_at``.
        """
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheOutcome:
    """
    Entry returned by :meth:`ResultCache.get_or_compute`.

    ``hit`` is true when no computation ran for this caller (a stored entry
    or a concurrent leader's result); ``stored`` tells whether the entry is
    now in the cache.
    """

    entry: CacheEntry
    hit: bool
    stored: bool


@dataclass(frozen=True)
class CacheStats:
    """Cache counters."""

    hits: int
    misses: int
    joins: int
    evictions: int
    entries: int
    in_flight: int

    def to_dict(self) -> dict[str, int]:
        """
        Serialize the counters.

        Returns
        -------
        dict[str, int]
            Plain mapping.
        """
        return {
            "hits": self.hits,
            "misses": self.misses,
            "joins": self.joins,
            "evictions": self.evictions,
            "entries": self.entries,
            "in_flight": self.in_flight,
        }


@dataclass
class _Flight:
    entry: CacheEntry | None = None
    error: BaseException | None = None
    done: bool = False
    waiters: list[threading.Event] = field(default_factory=list)


class ResultCache:
    """
    In-memory result cache scoped by (source, credential).

    ``get_or_compute`` runs at most one computation per fingerprint at a
    time; concurrent callers wait for the leader and share its entry. If the
    leader is cancelled or produces an uncacheable result, waiters compute
    for themselves. ``invalidate`` bumps the scope's generation so a
    computation that started before it is not stored.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        *,
        max_entries: int = 1000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._flights: dict[str, _Flight] = {}
        self._generations: dict[Scope, int] = {}
        self._epoch = 0
        self._hits = 0
        self._misses = 0
        self._joins = 0
        self._evictions = 0

    def get(self, fingerprint: str) -> CacheEntry | None:
        """
        Return a live entry; expired entries are evicted on read.

        Returns
        -------
        CacheEntry | None
            Entry, or ``None`` on miss.
        """
        with self._lock:
            return self._live(fingerprint)

    def get_or_compute(
        self,
        key: CacheKey,
        compute: Callable[[], ExecutionResult],
        *,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> CacheOutcome:
        """
        Return the cached entry for ``key`` or compute it exactly once.

        Parameters
        ----------
        key:
            Fingerprint and scope.
        compute:
            Produces the result on a miss; runs on the calling thread.
        timeout:
            Seconds a waiter blocks on another caller's computation.
        cancel:
            Token that interrupts a waiter.

        Returns
        -------
        CacheOutcome
            Entry plus hit/stored flags.

        Raises
        ------
        ExecutionError
            When waiting times out or is cancelled, or the shared
            computation failed.
        """
        while True:
            with self._lock:
                entry = self._live(key.fingerprint)
                if entry is not None:
                    self._hits += 1
                    return CacheOutcome(entry, hit=True, stored=True)
                flight = self._flights.get(key.fingerprint)
                leader = flight is None
                if flight is None:
                    flight = _Flight()
                    self._flights[key.fingerprint] = flight
                    generation = self._generation(key.scope)
                    self._misses += 1
                else:
                    waiter = threading.Event()
                    flight.waiters.append(waiter)
                    self._joins += 1
            if leader:
                return self._lead(key, flight, generation, compute)
            outcome = self._join(key, flight, waiter, timeout, cancel)
            if outcome is not None:
                return outcome
            LOG.debug(
                "Leader for %s did not produce a shareable result; recomputing", key.fingerprint
            )

    def put(self, key: CacheKey, result: ExecutionResult) -> CacheEntry:
        """
        Store a result unconditionally under ``key.fingerprint``.

        Used for per-execution entries (partial or superseded results) that are never
        looked up by other requests.

        Returns
        -------
        CacheEntry
            Stored entry.
        """
        entry = self._entry(key, result)
        with self._lock:
            self._store(entry)
        return entry

    def invalidate(self, source: SourceKind, credential_id: str) -> int:
        """
        Drop a scope's entries and prevent in-flight results from being stored.

        Returns
        -------
        int
            Number of entries removed.
        """
        scope = (source, credential_id)
        with self._lock:
            self._generations[scope] = self._generations.get(scope, 0) + 1
            doomed = [
                fp
                for fp, entry in self._entries.items()
                if (entry.source, entry.credential_id) == scope
            ]
            for fingerprint in doomed:
                del self._entries[fingerprint]
            self._evictions += len(doomed)
        if doomed:
            LOG.info("Invalidated %d cached results for %s/%s", len(doomed), source, credential_id)
        return len(doomed)

    def clear(self) -> int:
        """
        Drop every entry.

        Returns
        -------
        int
            Number of entries removed.
        """
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._epoch += 1
            self._evictions += removed
        return removed

    def stats(self) -> CacheStats:
        """
        Snapshot the counters.

        Returns
        -------
        CacheStats
            Current counters.
        """
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                joins=self._joins,
                evictions=self._evictions,
                entries=len(self._entries),
                in_flight=len(self._flights),
            )

    def _lead(
        self,
        key: CacheKey,
        flight: _Flight,
        generation: tuple[int, int],
        compute: Callable[[], ExecutionResult],
    ) -> CacheOutcome:
        try:
            result = compute()
        except BaseException as exc:
            with self._lock:
                self._flights.pop(key.fingerprint, None)
                flight.error = exc
                self._finish(flight)
            raise
        entry = self._entry(key, result)
        with self._lock:
            self._flights.pop(key.fingerprint, None)
            stored = result.cacheable and generation == self._generation(key.scope)
            if stored:
                self._store(entry)
                flight.entry = entry
            elif result.cacheable:
                LOG.info(
                    "Discarding result for %s: scope invalidated during execution", key.fingerprint
                )
            self._finish(flight)
        return CacheOutcome(entry, hit=False, stored=stored)

    def _join(
        self,
        key: CacheKey,
        flight: _Flight,
        waiter: threading.Event,
        timeout: float | None,
        cancel: CancellationToken | None,
    ) -> CacheOutcome | None:
        unregister = cancel.on_cancel(waiter.set) if cancel is not None else (lambda: None)
        try:
            finished = waiter.wait(timeout)
        finally:
            unregister()
        if cancel is not None and cancel.cancelled:
            message = "Cancelled while waiting for an identical query"
            raise ExecutionError(ExecutionErrorKind.CANCELLED, message, source=key.source.value)
        if not finished:
            message = "Timed out waiting for an identical query"
            raise ExecutionError(ExecutionErrorKind.TIMEOUT, message, source=key.source.value)
        if flight.entry is not None:
            return CacheOutcome(flight.entry, hit=True, stored=True)
        error = flight.error
        if error is None or _leader_cancelled(error):
            return None
        raise error

    def _live(self, fingerprint: str) -> CacheEntry | None:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[fingerprint]
            self._evictions += 1
            return None
        self._entries.move_to_end(fingerprint)
        return entry

    def _store(self, entry: CacheEntry) -> None:
        self._entries[entry.fingerprint] = entry
        self._entries.move_to_end(entry.fingerprint)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def _entry(self, key: CacheKey, result: ExecutionResult) -> CacheEntry:
        now = self._clock()
        return CacheEntry(
            fingerprint=key.fingerprint,
            result=result,
            generated_at=now,
            expires_at=now + self._ttl,
            catalog_version=key.catalog_version,
            source=key.source,
            credential_id=key.credential_id,
        )

    def _generation(self, scope: Scope) -> tuple[int, int]:
        return (self._epoch, self._generations.get(scope, 0))

    @staticmethod
    def _finish(flight: _Flight) -> None:
        flight.done = True
        for waiter in flight.waiters:
            waiter.set()
        flight.waiters.clear()


def _leader_cancelled(error: BaseException) -> bool:
    return isinstance(error, ExecutionError) and error.kind is ExecutionErrorKind.CANCELLED
