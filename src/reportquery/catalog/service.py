"""Process-wide field catalog with atomic version swaps per (source, credential)."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from reportquery.catalog.discovery import build_catalog_fields
from reportquery.catalog.types import FieldCatalog
from reportquery.connectors.base import ConnectorAuthError, ConnectorError
from reportquery.engine.pool import PoolRegistry
from reportquery.services.credentials import Credential
from reportquery.services.errors import (
    CatalogError,
    CatalogErrorKind,
    ExecutionError,
    ExecutionErrorKind,
)
from reportquery.sources import SourceKind

LOG = logging.getLogger("reportquery.catalog")

CatalogListener = Callable[[FieldCatalog, FieldCatalog | None], None]
ScopeKey = tuple[SourceKind, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class _ActiveCatalog:
    catalog: FieldCatalog
    credential_version: int
    installed_at: float


class FieldCatalogService:
    """
    Discovers and caches field catalogs.

    Readers get immutable :class:`FieldCatalog` snapshots. A refresh builds
    the next version off to the side and swaps it in under the lock only
    once discovery succeeded, so a failing backend never clears a working
    catalog.
    """

    def __init__(
        self,
        pools: PoolRegistry,
        *,
        ttl_seconds: float = 3600.0,
        probe_timeout: float | None = 30.0,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pools = pools
        self._ttl_seconds = ttl_seconds
        self._probe_timeout = probe_timeout
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._active: dict[ScopeKey, _ActiveCatalog] = {}
        self._scope_locks: dict[ScopeKey, threading.Lock] = {}
        self._listeners: list[CatalogListener] = []

    def add_listener(self, listener: CatalogListener) -> None:
        """Register a callback invoked with ``(new, previous)`` after every swap."""
        with self._lock:
            self._listeners.append(listener)

    def get_cached(self, source: SourceKind, credential: Credential) -> FieldCatalog | None:
        """
        Return the active catalog when it is fresh for this credential version.

        Parameters
        ----------
        source:
            Backend kind.
        credential:
            Credential scoping the catalog.

        Returns
        -------
        FieldCatalog | None
            Active catalog, or ``None`` on a miss (absent, expired or
            discovered under an older credential version).
        """
        with self._lock:
            active = self._active.get((source, credential.id))
        if active is None or active.credential_version != credential.version:
            return None
        if self._monotonic() - active.installed_at > self._ttl_seconds:
            return None
        return active.catalog

    def current(self, source: SourceKind, credential_id: str) -> FieldCatalog | None:
        """
        Return the installed catalog regardless of freshness.

        Returns
        -------
        FieldCatalog | None
            Installed catalog or ``None``.
        """
        with self._lock:
            active = self._active.get((source, credential_id))
        return active.catalog if active is not None else None

    def discover(self, source: SourceKind, credential: Credential) -> FieldCatalog:
        """
        Return a fresh catalog, discovering it from the backend on a miss.

        Returns
        -------
        FieldCatalog
            Active catalog (possibly partial, see ``FieldCatalog.warnings``).
        """
        cached = self.get_cached(source, credential)
        if cached is not None:
            return cached
        with self._scope_lock(source, credential.id):
            # Another caller may have finished discovery while we waited.
            cached = self.get_cached(source, credential)
            if cached is not None:
                return cached
            return self._discover_and_swap(source, credential)

    def refresh(self, source: SourceKind, credential: Credential) -> FieldCatalog:
        """
        Force rediscovery and swap in the new version.

        Returns
        -------
        FieldCatalog
            Newly installed catalog.

        Raises
        ------
        CatalogError
            When discovery fails hard; the previous version stays active.
        """
        with self._scope_lock(source, credential.id):
            return self._discover_and_swap(source, credential)

    def _scope_lock(self, source: SourceKind, credential_id: str) -> threading.Lock:
        with self._lock:
            return self._scope_locks.setdefault((source, credential_id), threading.Lock())

    def _discover_and_swap(self, source: SourceKind, credential: Credential) -> FieldCatalog:
        if credential.source is not source:
            message = (
                f"Credential {credential.id} belongs to {credential.source.value}, "
                f"not {source.value}"
            )
            raise ValueError(message)
        try:
            with self._pools.lease(credential, timeout=self._probe_timeout) as connector:
                probe = connector.describe_schema()
        except ConnectorAuthError as exc:
            message = f"Schema discovery denied for credential {credential.id}: {exc}"
            raise CatalogError(
                CatalogErrorKind.PERMISSION_DENIED, message, source=source.value
            ) from exc
        except ConnectorError as exc:
            message = f"{source.value} backend unreachable during discovery: {exc}"
            raise CatalogError(CatalogErrorKind.UNREACHABLE, message, source=source.value) from exc
        except ExecutionError as exc:
            kind = (
                CatalogErrorKind.PERMISSION_DENIED
                if exc.kind is ExecutionErrorKind.AUTH_FAILED
                else CatalogErrorKind.UNREACHABLE
            )
            raise CatalogError(kind, str(exc), source=source.value) from exc

        fields, warnings = build_catalog_fields(source, probe)
        key: ScopeKey = (source, credential.id)
        with self._lock:
            previous_active = self._active.get(key)
            previous = previous_active.catalog if previous_active is not None else None
            version = previous.version + 1 if previous is not None else 1
            catalog = FieldCatalog(
                source=source,
                credential_id=credential.id,
                version=version,
                fields=fields,
                discovered_at=self._clock(),
                warnings=warnings,
            )
            self._active[key] = _ActiveCatalog(catalog, credential.version, self._monotonic())
            listeners = list(self._listeners)
        if warnings:
            LOG.warning(
                "Partial schema for %s/%s v%d: %s",
                source.value,
                credential.id,
                version,
                [w.group for w in warnings],
            )
        else:
            LOG.info(
                "Installed %s catalog v%d for %s (%d fields)",
                source.value,
                version,
                credential.id,
                len(fields),
            )
        for listener in listeners:
            listener(catalog, previous)
        return catalog

    def drop(self, source: SourceKind, credential_id: str) -> None:
        """Forget the active catalog for a scope (e.g. after credential removal)."""
        with self._lock:
            self._active.pop((source, credential_id), None)
