"""Pytest configuration for the reportquery test suite."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from reportquery.catalog.types import FieldCatalog
from reportquery.services.credentials import InMemoryCredentialStore
from reportquery.sources import SourceKind
from reportquery.storage.gateway import StorageGateway, open_memory_gateway
from tests._helpers.builders import ServiceHarness, catalog_for, running_service
from tests._helpers.fakes import ConnectorScript, FakeClock, directory_rows, make_credential


@pytest.fixture
def gateway() -> Iterator[StorageGateway]:
    """Provide an in-memory gateway with the ledger and report tables applied.

    Yields
    ------
    StorageGateway
        Gateway closed after the test.
    """
    gw = open_memory_gateway()
    try:
        yield gw
    finally:
        gw.close()


@pytest.fixture
def clock() -> FakeClock:
    """Return a settable wall clock pinned to a fixed instant.

    Returns
    -------
    FakeClock
        Clock starting at 2024-03-15T10:30Z.
    """
    return FakeClock()


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    """Return a store holding one credential per source.

    Returns
    -------
    InMemoryCredentialStore
        Store keyed ``cred-<source>``.
    """
    return InMemoryCredentialStore(
        {f"cred-{source.value}": make_credential(source) for source in SourceKind}
    )


@pytest.fixture
def directory_catalog() -> FieldCatalog:
    """Return the standard directory catalog at version 1.

    Returns
    -------
    FieldCatalog
        Directory catalog.
    """
    return catalog_for(SourceKind.DIRECTORY)


@pytest.fixture
def cloud_directory_catalog() -> FieldCatalog:
    """Return the standard cloud directory catalog at version 1.

    Returns
    -------
    FieldCatalog
        Cloud directory catalog.
    """
    return catalog_for(SourceKind.CLOUD_DIRECTORY)


@pytest.fixture
def cloud_suite_catalog() -> FieldCatalog:
    """Return the standard cloud suite catalog at version 1.

    Returns
    -------
    FieldCatalog
        Cloud suite catalog.
    """
    return catalog_for(SourceKind.CLOUD_SUITE)


@pytest.fixture
def directory_script() -> ConnectorScript:
    """Return a directory connector script serving two enabled users.

    Returns
    -------
    ConnectorScript
        Script shared by every fake directory connector.
    """
    return ConnectorScript(rows=directory_rows(2))


@pytest.fixture
def harness(directory_script: ConnectorScript) -> Iterator[ServiceHarness]:
    """Provide a started service whose directory backend is ``directory_script``.

    Yields
    ------
    ServiceHarness
        Service and fakes; shut down after the test.
    """
    with running_service({SourceKind.DIRECTORY: directory_script}) as ctx:
        yield ctx
