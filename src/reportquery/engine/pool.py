"""Bounded, credential-scoped connection pools with idle eviction."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from reportquery.connectors.base import Connector, ConnectorFactory
from reportquery.services.credentials import Credential
from reportquery.services.errors import ExecutionError, ExecutionErrorKind
from reportquery.sources import SourceKind

LOG = logging.getLogger("reportquery.engine.pool")

PoolKey = tuple[SourceKind, str]


@dataclass(frozen=True)
class PoolLimits:
    """Size and lifetime limits applied to every pool."""

    max_size: int = 4
    idle_seconds: float = 300.0


@dataclass
class _IdleConnection:
    connector: Connector
    released_at: float


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time counters for one pool."""

    source: str
    credential_id: str
    credential_version: int
    idle: int
    leased: int
    created: int
    evicted: int


class ConnectionPool:
    """
    Pool of connectors for one (source, credential) pair.

    At most ``max_size`` connectors exist at once. Idle connectors older than
    ``idle_seconds`` are closed on the next acquire or release, or when
    :meth:`evict_idle` is called.
    """

    def __init__(
        self,
        credential: Credential,
        factory: ConnectorFactory,
        limits: PoolLimits,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.credential = credential
        self._factory = factory
        self._limits = limits
        self._clock = clock
        self._slots = threading.BoundedSemaphore(limits.max_size)
        self._lock = threading.Lock()
        self._idle: list[_IdleConnection] = []
        self._leased = 0
        self._created = 0
        self._evicted = 0
        self._closed = False

    def acquire(self, timeout: float | None = None) -> Connector:
        """
        Lease a connector, creating one when no idle connector is available.

        Parameters
        ----------
        timeout:
            Seconds to wait for a free slot; ``None`` waits indefinitely.

        Returns
        -------
        Connector
            Leased connector; return it with :meth:`release`.

        Raises
        ------
        ExecutionError
            When the pool is closed, no slot frees up in time, or the backend
            cannot be connected.
        """
        if self._closed:
            message = f"Connection pool for {self.credential.id} is closed"
            raise ExecutionError(ExecutionErrorKind.CONNECTION_FAILED, message)
        acquired = self._slots.acquire(timeout=timeout) if timeout is not None else (
            self._slots.acquire()
        )
        if not acquired:
            message = (
                f"Timed out waiting for a {self.credential.source.value} connection "
                f"for credential {self.credential.id}"
            )
            raise ExecutionError(ExecutionErrorKind.TIMEOUT, message)
        self.evict_idle()
        with self._lock:
            reusable = self._idle.pop() if self._idle else None
            self._leased += 1
        if reusable is not None:
            return reusable.connector
        try:
            connector = self._factory(self.credential)
        except BaseException:
            with self._lock:
                self._leased -= 1
            self._slots.release()
            raise
        with self._lock:
            self._created += 1
        LOG.debug(
            "Opened %s connection for credential %s", self.credential.source, self.credential.id
        )
        return connector

    def release(self, connector: Connector, *, discard: bool = False) -> None:
        """
        Return a leased connector; discarded or late connectors are closed.

        Parameters
        ----------
        connector:
            Connector previously returned by :meth:`acquire`.
        discard:
            Close instead of keeping it idle (after aborts or hard failures).
        """
        with self._lock:
            self._leased -= 1
            keep = not discard and not self._closed
            if keep:
                self._idle.append(_IdleConnection(connector, self._clock()))
        if not keep:
            _close_quietly(connector)
        self._slots.release()

    @contextmanager
    def lease(self, timeout: float | None = None) -> Iterator[Connector]:
        """
        Context manager around acquire/release that discards on error.

        Yields
        ------
        Connector
            Leased connector.
        """
        connector = self.acquire(timeout)
        discard = False
        try:
            yield connector
        except BaseException:
            discard = True
            raise
        finally:
            self.release(connector, discard=discard)

    def evict_idle(self) -> int:
        """
        Close idle connectors that exceeded the idle timeout.

        Returns
        -------
        int
            Number of connectors closed.
        """
        cutoff = self._clock() - self._limits.idle_seconds
        with self._lock:
            stale = [item for item in self._idle if item.released_at <= cutoff]
            self._idle = [item for item in self._idle if item.released_at > cutoff]
            self._evicted += len(stale)
        for item in stale:
            _close_quietly(item.connector)
        if stale:
            LOG.debug("Evicted %d idle connections for %s", len(stale), self.credential.id)
        return len(stale)

    def close(self) -> None:
        """Close idle connectors; leased connectors are closed when released."""
        with self._lock:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
        for item in idle:
            _close_quietly(item.connector)

    def stats(self) -> PoolStats:
        """
        Snapshot pool counters.

        Returns
        -------
        PoolStats
            Current counters.
        """
        with self._lock:
            return PoolStats(
                source=self.credential.source.value,
                credential_id=self.credential.id,
                credential_version=self.credential.version,
                idle=len(self._idle),
                leased=self._leased,
                created=self._created,
                evicted=self._evicted,
            )


class PoolRegistry:
    """Owns one ConnectionPool per (source, credential id)."""

    def __init__(
        self,
        factories: Mapping[SourceKind, ConnectorFactory],
        limits: PoolLimits | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factories = dict(factories)
        self._limits = limits or PoolLimits()
        self._clock = clock
        self._lock = threading.Lock()
        self._pools: dict[PoolKey, ConnectionPool] = {}

    def pool_for(self, credential: Credential) -> ConnectionPool:
        """
        Return the pool for a credential, rebuilding it after a rotation.

        Returns
        -------
        ConnectionPool
            Pool bound to the credential's current version.

        Raises
        ------
        ExecutionError
            If no connector factory is registered for the credential's source.
        """
        key: PoolKey = (credential.source, credential.id)
        retired: ConnectionPool | None = None
        with self._lock:
            pool = self._pools.get(key)
            if pool is not None and pool.credential.version != credential.version:
                retired, pool = pool, None
            if pool is None:
                factory = self._factories.get(credential.source)
                if factory is None:
                    message = f"No connector registered for source {credential.source.value}"
                    raise ExecutionError(ExecutionErrorKind.CONNECTION_FAILED, message)
                pool = ConnectionPool(credential, factory, self._limits, clock=self._clock)
                self._pools[key] = pool
        if retired is not None:
            LOG.info(
                "Credential %s rotated to version %d; retiring pool",
                credential.id,
                credential.version,
            )
            retired.close()
        return pool

    @contextmanager
    def lease(self, credential: Credential, timeout: float | None = None) -> Iterator[Connector]:
        """
        Lease a connector for a credential.

        Yields
        ------
        Connector
            Leased connector.
        """
        with self.pool_for(credential).lease(timeout) as connector:
            yield connector

    def evict_idle(self) -> int:
        """
        Run idle eviction across all pools.

        Returns
        -------
        int
            Total connectors closed.
        """
        with self._lock:
            pools = list(self._pools.values())
        return sum(pool.evict_idle() for pool in pools)

    def stats(self) -> list[PoolStats]:
        """
        Snapshot counters for every pool.

        Returns
        -------
        list[PoolStats]
            One entry per pool.
        """
        with self._lock:
            pools = list(self._pools.values())
        return [pool.stats() for pool in pools]

    def close_all(self) -> None:
        """Close every pool."""
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.close()


def _close_quietly(connector: Connector) -> None:
    try:
        connector.close()
    except Exception:  # noqa: BLE001 - closing a broken session must not fail the caller
        LOG.debug("Ignoring error while closing connector", exc_info=True)
