"""Credential-scoped connection pools."""

from __future__ import annotations

import pytest

from reportquery.engine.pool import ConnectionPool, PoolLimits, PoolRegistry
from reportquery.services.errors import ExecutionError, ExecutionErrorKind
from reportquery.sources import SourceKind
from tests._helpers.expect import expect_equal, expect_is_instance, expect_true
from tests._helpers.fakes import FakeConnector, FakeConnectorFactory, FakeMonotonic, make_credential

IDLE_SECONDS = 60.0
SLOT_TIMEOUT = 0.05


def _pool(
    factory: FakeConnectorFactory, clock: FakeMonotonic, *, max_size: int = 2
) -> ConnectionPool:
    return ConnectionPool(
        make_credential(SourceKind.DIRECTORY),
        factory,
        PoolLimits(max_size=max_size, idle_seconds=IDLE_SECONDS),
        clock=clock,
    )


def test_released_connectors_are_reused() -> None:
    """A released connector is handed out again instead of opening a new one."""
    factory = FakeConnectorFactory()
    pool = _pool(factory, FakeMonotonic())
    first = pool.acquire()
    pool.release(first)
    second = pool.acquire()
    expect_true(first is second, message="idle connector should be reused")
    expect_equal(len(factory.created), 1)
    stats = pool.stats()
    expect_equal((stats.leased, stats.idle, stats.created), (1, 0, 1))


def test_pool_size_is_bounded() -> None:
    """Acquiring beyond max_size times out with a TIMEOUT error."""
    pool = _pool(FakeConnectorFactory(), FakeMonotonic(), max_size=1)
    pool.acquire()
    with pytest.raises(ExecutionError) as caught:
        pool.acquire(timeout=SLOT_TIMEOUT)
    expect_equal(caught.value.kind, ExecutionErrorKind.TIMEOUT)


def test_lease_discards_connector_on_error() -> None:
    """Errors inside a lease close the connector rather than pooling it."""
    factory = FakeConnectorFactory()
    pool = _pool(factory, FakeMonotonic())
    with pytest.raises(RuntimeError), pool.lease() as connector:
        message = "boom"
        raise RuntimeError(message)
    expect_is_instance(connector, FakeConnector)
    expect_true(connector.closed, message="failed connector should be closed")
    expect_equal(pool.stats().idle, 0)
    expect_equal(pool.stats().leased, 0)


def test_idle_connectors_are_evicted() -> None:
    """Connectors idle past the timeout are closed."""
    clock = FakeMonotonic()
    factory = FakeConnectorFactory()
    pool = _pool(factory, clock)
    with pool.lease():
        pass
    clock.advance(IDLE_SECONDS + 1)
    expect_equal(pool.evict_idle(), 1)
    expect_true(factory.created[0].closed, message="evicted connector closed")
    expect_equal(pool.stats().evicted, 1)


def test_closed_pool_rejects_acquire() -> None:
    """A closed pool refuses new leases and closes idle connectors."""
    factory = FakeConnectorFactory()
    pool = _pool(factory, FakeMonotonic())
    with pool.lease():
        pass
    pool.close()
    expect_true(factory.created[0].closed, message="idle connector closed on shutdown")
    with pytest.raises(ExecutionError) as caught:
        pool.acquire()
    expect_equal(caught.value.kind, ExecutionErrorKind.CONNECTION_FAILED)


def test_registry_rebuilds_pool_after_rotation() -> None:
    """A new credential version retires the old pool."""
    factory = FakeConnectorFactory()
    registry = PoolRegistry({SourceKind.DIRECTORY: factory}, clock=FakeMonotonic())
    with registry.lease(make_credential(SourceKind.DIRECTORY)):
        pass
    old = registry.pool_for(make_credential(SourceKind.DIRECTORY))
    rotated = registry.pool_for(make_credential(SourceKind.DIRECTORY, version=2))
    expect_true(old is not rotated, message="rotation builds a fresh pool")
    expect_true(factory.created[0].closed, message="old pool's idle connector closed")
    [stats] = registry.stats()
    expect_equal(stats.credential_version, 2)


def test_registry_without_factory_fails() -> None:
    """Sources without a registered connector cannot be leased."""
    registry = PoolRegistry({})
    with pytest.raises(ExecutionError) as caught:
        registry.pool_for(make_credential(SourceKind.CLOUD_SUITE))
    expect_equal(caught.value.kind, ExecutionErrorKind.CONNECTION_FAILED)
