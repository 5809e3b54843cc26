"""Configuration models for the report query engine."""

from __future__ import annotations

from reportquery.config.models import EngineConfig, RetrySettings

__all__ = ["EngineConfig", "RetrySettings"]
