"""Runtime configuration for the report query engine."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from reportquery.sources import SourceKind, parse_source

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_AUTHORITY = "https://login.microsoftonline.com"


def _parse_env_flag(value: str | None, *, default: bool) -> bool:
    """
    Interpret a string environment value as a boolean.

    Parameters
    ----------
    value:
        Raw environment variable value or None.
    default:
        Value to return when the environment variable is unset.

    Returns
    -------
    bool
        Parsed boolean flag.
    """
    if value is None:
        return default
    return value.lower() not in {"0", "false", "no", "off"}


def _parse_sources(value: str | None) -> list[SourceKind]:
    if not value:
        return list(SourceKind)
    sources: list[SourceKind] = []
    for token in value.split(","):
        if not token.strip():
            continue
        source = parse_source(token)
        if source is None:
            message = f"Unknown source in REPORTQUERY_ENABLED_SOURCES: {token.strip()!r}"
            raise ValueError(message)
        if source not in sources:
            sources.append(source)
    return sources


class RetrySettings(BaseModel):
    """Backoff settings for transient backend failures."""

    max_attempts: int = Field(default=3, description="Total attempts including the first one.")
    initial_delay_seconds: float = Field(default=0.5, description="Delay before the first retry.")
    max_delay_seconds: float = Field(default=8.0, description="Upper bound for a single delay.")
    multiplier: float = Field(default=2.0, description="Exponential growth factor per attempt.")

    @model_validator(mode="after")
    def _validate_bounds(self) -> RetrySettings:
        """
        Reject retry settings that could loop forever or never wait.

        Returns
        -------
        RetrySettings
            Validated settings.

        Raises
        ------
        ValueError
            When attempts, delays or multiplier are out of range.
        """
        if self.max_attempts < 1:
            message = "max_attempts must be at least 1"
            raise ValueError(message)
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            message = "retry delays must be non-negative"
            raise ValueError(message)
        if self.multiplier < 1:
            message = "multiplier must be >= 1"
            raise ValueError(message)
        return self


class EngineConfig(BaseModel):
    """
    Settings shared by the catalog, engine, cache and persistence layers.

    Values are loaded once at process start; components receive the pieces
    they need at construction time rather than reading globals.
    """

    db_path: Path | None = Field(
        default=None,
        description="DuckDB file for the execution ledger and custom reports (None = in-memory).",
    )
    enabled_sources: list[SourceKind] = Field(
        default_factory=lambda: list(SourceKind),
        description="Sources accepted by the validator.",
    )
    default_page_size: int = Field(default=100, description="Page size when a query omits one.")
    max_page_size: int = Field(default=1000, description="Largest page size a query may request.")
    result_ceiling: int = Field(
        default=50_000,
        description="Hard cap on rows materialized in memory for one execution.",
    )
    default_result_limit: int = Field(default=100, description="Default rows per results read.")
    max_result_limit: int = Field(default=1000, description="Largest rows per results read.")
    cache_ttl_seconds: float = Field(default=300.0, description="Result cache entry lifetime.")
    catalog_ttl_seconds: float = Field(default=3600.0, description="Field catalog lifetime.")
    pool_max_size: int = Field(default=4, description="Connections per (source, credential).")
    pool_idle_seconds: float = Field(default=300.0, description="Idle time before eviction.")
    default_timeout_seconds: float = Field(default=60.0, description="Execution timeout.")
    max_timeout_seconds: float = Field(default=300.0, description="Largest accepted timeout.")
    worker_count: int = Field(default=8, description="Threads executing submitted queries.")
    retry: RetrySettings = Field(default_factory=RetrySettings)
    graph_base_url: str = Field(default=GRAPH_BASE_URL, description="Microsoft Graph endpoint.")
    graph_authority: str = Field(default=GRAPH_AUTHORITY, description="OAuth authority host.")
    http_timeout_seconds: float = Field(default=30.0, description="Per-request HTTP timeout.")
    report_period: str = Field(default="D30", description="Usage report period (D7, D30, ...).")
    observability: bool = Field(default=True, description="Emit service_call log lines.")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """
        Construct an EngineConfig from ``REPORTQUERY_*`` environment variables.

        Returns
        -------
        EngineConfig
            Validated configuration populated from environment values.
        """
        env = os.environ
        db_path_env = env.get("REPORTQUERY_DB_PATH")
        db_path = Path(db_path_env).expanduser().resolve() if db_path_env else None
        retry = RetrySettings(
            max_attempts=int(env.get("REPORTQUERY_RETRY_MAX_ATTEMPTS", "3")),
            initial_delay_seconds=float(env.get("REPORTQUERY_RETRY_INITIAL_DELAY", "0.5")),
            max_delay_seconds=float(env.get("REPORTQUERY_RETRY_MAX_DELAY", "8.0")),
            multiplier=float(env.get("REPORTQUERY_RETRY_MULTIPLIER", "2.0")),
        )
        return cls(
            db_path=db_path,
            enabled_sources=_parse_sources(env.get("REPORTQUERY_ENABLED_SOURCES")),
            default_page_size=int(env.get("REPORTQUERY_DEFAULT_PAGE_SIZE", "100")),
            max_page_size=int(env.get("REPORTQUERY_MAX_PAGE_SIZE", "1000")),
            result_ceiling=int(env.get("REPORTQUERY_RESULT_CEILING", "50000")),
            default_result_limit=int(env.get("REPORTQUERY_DEFAULT_RESULT_LIMIT", "100")),
            max_result_limit=int(env.get("REPORTQUERY_MAX_RESULT_LIMIT", "1000")),
            cache_ttl_seconds=float(env.get("REPORTQUERY_CACHE_TTL_SEC", "300")),
            catalog_ttl_seconds=float(env.get("REPORTQUERY_CATALOG_TTL_SEC", "3600")),
            pool_max_size=int(env.get("REPORTQUERY_POOL_MAX_SIZE", "4")),
            pool_idle_seconds=float(env.get("REPORTQUERY_POOL_IDLE_SEC", "300")),
            default_timeout_seconds=float(env.get("REPORTQUERY_TIMEOUT_SEC", "60")),
            max_timeout_seconds=float(env.get("REPORTQUERY_MAX_TIMEOUT_SEC", "300")),
            worker_count=int(env.get("REPORTQUERY_WORKERS", "8")),
            retry=retry,
            graph_base_url=env.get("REPORTQUERY_GRAPH_BASE_URL", GRAPH_BASE_URL),
            graph_authority=env.get("REPORTQUERY_GRAPH_AUTHORITY", GRAPH_AUTHORITY),
            http_timeout_seconds=float(env.get("REPORTQUERY_HTTP_TIMEOUT_SEC", "30")),
            report_period=env.get("REPORTQUERY_REPORT_PERIOD", "D30"),
            observability=_parse_env_flag(env.get("REPORTQUERY_OBSERVABILITY"), default=True),
        )

    @model_validator(mode="after")
    def _validate_limits(self) -> EngineConfig:
        """
        Normalize paths and validate size, time and pool limits.

        Returns
        -------
        EngineConfig
            Normalized configuration.

        Raises
        ------
        ValueError
            When a limit is non-positive or limits contradict each other.
        """
        if self.db_path is not None:
            self.db_path = self.db_path.expanduser().resolve()

        positive = {
            "max_page_size": self.max_page_size,
            "result_ceiling": self.result_ceiling,
            "max_result_limit": self.max_result_limit,
            "pool_max_size": self.pool_max_size,
            "worker_count": self.worker_count,
        }
        for name, value in positive.items():
            if value <= 0:
                message = f"{name} must be positive"
                raise ValueError(message)
        if not 0 < self.default_page_size <= self.max_page_size:
            message = "default_page_size must be between 1 and max_page_size"
            raise ValueError(message)
        if self.max_page_size > self.result_ceiling:
            message = "max_page_size cannot exceed result_ceiling"
            raise ValueError(message)
        if not 0 <= self.default_result_limit <= self.max_result_limit:
            message = "default_result_limit must be between 0 and max_result_limit"
            raise ValueError(message)
        if self.default_timeout_seconds <= 0 or self.max_timeout_seconds <= 0:
            message = "timeouts must be positive"
            raise ValueError(message)
        if self.default_timeout_seconds > self.max_timeout_seconds:
            message = "default_timeout_seconds cannot exceed max_timeout_seconds"
            raise ValueError(message)
        if self.cache_ttl_seconds < 0 or self.catalog_ttl_seconds < 0:
            message = "TTL values must be non-negative"
            raise ValueError(message)
        return self

    def is_enabled(self, source: SourceKind) -> bool:
        """
        Return whether a source accepts queries.

        Returns
        -------
        bool
            True when the source is listed in ``enabled_sources``.
        """
        return source in self.enabled_sources

    def resolve_timeout(self, requested: float | None) -> float:
        """
        Apply the default timeout and clamp to the configured maximum.

        Returns
        -------
        float
            Timeout in seconds used for one execution.
        """
        if requested is None or requested <= 0:
            return self.default_timeout_seconds
        return min(float(requested), self.max_timeout_seconds)
