"""Validation and environment loading for EngineConfig."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from reportquery.config.models import GRAPH_BASE_URL, EngineConfig, RetrySettings
from reportquery.sources import SourceKind
from tests._helpers.expect import expect_equal, expect_true

ENV_PAGE_SIZE = 250
ENV_WORKERS = 3
ENV_RETRY_ATTEMPTS = 5
MAX_TIMEOUT = 300.0
DEFAULT_TIMEOUT = 60.0


def test_defaults_enable_every_source() -> None:
    """A bare config accepts all sources with the documented limits."""
    config = EngineConfig()
    expect_equal(config.enabled_sources, list(SourceKind))
    expect_equal(config.graph_base_url, GRAPH_BASE_URL)
    expect_true(config.db_path is None, message="in-memory by default")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"max_page_size": 0}, "max_page_size must be positive"),
        ({"default_page_size": 2000}, "default_page_size"),
        ({"max_page_size": 60_000}, "cannot exceed result_ceiling"),
        ({"default_timeout_seconds": 900.0}, "cannot exceed max_timeout_seconds"),
        ({"cache_ttl_seconds": -1.0}, "TTL values"),
        ({"worker_count": 0}, "worker_count must be positive"),
    ],
)
def test_contradictory_limits_are_rejected(overrides: dict[str, Any], message: str) -> None:
    """Out-of-range or inconsistent limits fail validation."""
    with pytest.raises(ValueError, match=message):
        EngineConfig(**overrides)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"max_attempts": 0}, "at least 1"),
        ({"initial_delay_seconds": -0.1}, "non-negative"),
        ({"multiplier": 0.5}, "multiplier"),
    ],
)
def test_retry_settings_are_bounded(overrides: dict[str, Any], message: str) -> None:
    """Retry settings reject values that could never back off."""
    with pytest.raises(ValueError, match=message):
        RetrySettings(**overrides)


@pytest.mark.parametrize(
    ("requested", "expected"),
    [(None, DEFAULT_TIMEOUT), (0, DEFAULT_TIMEOUT), (10, 10.0), (10_000, MAX_TIMEOUT)],
)
def test_resolve_timeout_defaults_and_clamps(requested: float | None, expected: float) -> None:
    """Missing timeouts use the default and large ones are clamped."""
    expect_equal(EngineConfig().resolve_timeout(requested), expected)


def test_from_env_reads_prefixed_variables(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """REPORTQUERY_* variables populate the config, including source aliases."""
    db_path = tmp_path / "state" / "reports.duckdb"
    monkeypatch.setenv("REPORTQUERY_DB_PATH", str(db_path))
    monkeypatch.setenv("REPORTQUERY_ENABLED_SOURCES", "ad, o365,ad")
    monkeypatch.setenv("REPORTQUERY_DEFAULT_PAGE_SIZE", str(ENV_PAGE_SIZE))
    monkeypatch.setenv("REPORTQUERY_WORKERS", str(ENV_WORKERS))
    monkeypatch.setenv("REPORTQUERY_RETRY_MAX_ATTEMPTS", str(ENV_RETRY_ATTEMPTS))
    monkeypatch.setenv("REPORTQUERY_OBSERVABILITY", "off")

    config = EngineConfig.from_env()

    expect_equal(config.db_path, db_path.resolve())
    expect_equal(config.enabled_sources, [SourceKind.DIRECTORY, SourceKind.CLOUD_SUITE])
    expect_equal(config.default_page_size, ENV_PAGE_SIZE)
    expect_equal(config.worker_count, ENV_WORKERS)
    expect_equal(config.retry.max_attempts, ENV_RETRY_ATTEMPTS)
    expect_equal(config.observability, False)
    expect_true(not config.is_enabled(SourceKind.CLOUD_DIRECTORY), message="azure disabled")


def test_from_env_rejects_unknown_sources(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unknown source name is a configuration error."""
    monkeypatch.setenv("REPORTQUERY_ENABLED_SOURCES", "directory,mainframe")
    with pytest.raises(ValueError, match="mainframe"):
        EngineConfig.from_env()
