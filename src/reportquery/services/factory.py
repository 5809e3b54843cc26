"""Factories for building the report query service."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

import httpx

from reportquery.cache.result_cache import ResultCache
from reportquery.catalog.service import FieldCatalogService
from reportquery.compilers import build_compilers
from reportquery.config.models import EngineConfig
from reportquery.connectors.base import ConnectorFactory
from reportquery.connectors.graph import graph_users_factory
from reportquery.connectors.ldap import ldap_connector_factory
from reportquery.connectors.reports import usage_report_factory
from reportquery.engine.executor import ExecutionEngine, ExecutionLimits
from reportquery.engine.pool import PoolLimits, PoolRegistry
from reportquery.engine.retry import RetryPolicy
from reportquery.ledger.ledger import ExecutionLedger
from reportquery.query.validator import QueryValidator, ValidationLimits
from reportquery.reports.repository import CustomReportService, ScheduleLookup
from reportquery.services.credentials import CredentialStore
from reportquery.services.engine import ReportQueryService
from reportquery.services.observability import ServiceObservability
from reportquery.sources import SourceKind
from reportquery.storage.gateway import MEMORY, StorageConfig, StorageGateway, open_gateway
from reportquery.storage.repositories.custom_reports import CustomReportRepository
from reportquery.storage.repositories.executions import ExecutionRepository


@dataclass(frozen=True)
class ServiceBuildOptions:
    """Optional knobs for constructing the service."""

    connector_factories: Mapping[SourceKind, ConnectorFactory] | None = None
    transport: httpx.BaseTransport | None = None
    gateway: StorageGateway | None = None
    schedules: ScheduleLookup | None = None
    observability: ServiceObservability | None = None
    clock: Callable[[], datetime] | None = None


def get_observability_from_config(cfg: EngineConfig) -> ServiceObservability | None:
    """
    Derive service observability settings from configuration flags.

    Returns
    -------
    ServiceObservability | None
        Enabled observability when toggled on; otherwise ``None``.
    """
    if not cfg.observability:
        return None
    return ServiceObservability(enabled=True)


def default_connector_factories(
    cfg: EngineConfig, transport: httpx.BaseTransport | None = None
) -> dict[SourceKind, ConnectorFactory]:
    """
    Build the production connector factories for every source.

    Parameters
    ----------
    cfg:
        Engine configuration supplying Graph endpoints and timeouts.
    transport:
        Optional httpx transport shared by the HTTP connectors.

    Returns
    -------
    dict[SourceKind, ConnectorFactory]
        Factory per source kind.
    """
    http = {
        "base_url": cfg.graph_base_url,
        "authority": cfg.graph_authority,
        "timeout": cfg.http_timeout_seconds,
        "transport": transport,
    }
    return {
        SourceKind.DIRECTORY: ldap_connector_factory(),
        SourceKind.CLOUD_DIRECTORY: graph_users_factory(**http),
        SourceKind.CLOUD_SUITE: usage_report_factory(**http),
    }


def build_service_from_config(
    cfg: EngineConfig,
    credentials: CredentialStore,
    *,
    options: ServiceBuildOptions | None = None,
) -> ReportQueryService:
    """
    Construct a ReportQueryService wired from configuration.

    The returned service has not been started; call ``init()`` before
    submitting executions.

    Parameters
    ----------
    cfg:
        Validated engine configuration.
    credentials:
        Store resolving credential ids.
    options:
        Optional overrides for connectors, storage, schedules and clocks.

    Returns
    -------
    ReportQueryService
        Service owning its pools, cache and storage gateway.
    """
    opts = options or ServiceBuildOptions()
    clock_kwargs = {"clock": opts.clock} if opts.clock is not None else {}

    factories = opts.connector_factories or default_connector_factories(cfg, opts.transport)
    pools = PoolRegistry(
        factories, PoolLimits(max_size=cfg.pool_max_size, idle_seconds=cfg.pool_idle_seconds)
    )
    catalog = FieldCatalogService(
        pools,
        ttl_seconds=cfg.catalog_ttl_seconds,
        probe_timeout=cfg.http_timeout_seconds,
        **clock_kwargs,
    )
    engine = ExecutionEngine(
        pools,
        retry=RetryPolicy.from_settings(cfg.retry),
        limits=ExecutionLimits(result_ceiling=cfg.result_ceiling),
    )
    cache = ResultCache(cfg.cache_ttl_seconds, **clock_kwargs)

    gateway = opts.gateway
    closers: list[Callable[[], None]] = [pools.close_all]
    if gateway is None:
        gateway = open_gateway(StorageConfig(db_path=cfg.db_path or MEMORY))
        closers.append(gateway.close)
    ledger = ExecutionLedger(ExecutionRepository(gateway), **clock_kwargs)
    reports = CustomReportService(
        CustomReportRepository(gateway),
        schedules=opts.schedules,
        active_runs=ledger.has_active,
        **clock_kwargs,
    )

    return ReportQueryService(
        config=cfg,
        credentials=credentials,
        catalog=catalog,
        validator=QueryValidator(ValidationLimits.from_config(cfg), **clock_kwargs),
        compilers=build_compilers(clock=opts.clock, report_period=cfg.report_period),
        engine=engine,
        cache=cache,
        ledger=ledger,
        reports=reports,
        observability=opts.observability or get_observability_from_config(cfg),
        closers=closers,
        **clock_kwargs,
    )
