"""Clamping helpers for result reads and history listings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class LimitMessage:
    """Informational or error note produced while clamping a request."""

    code: str
    severity: str
    detail: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize the message.

        Returns
        -------
        dict[str, Any]
            Plain mapping.
        """
        return {
            "code": self.code,
            "severity": self.severity,
            "detail": self.detail,
            "context": self.context,
        }


@dataclass(frozen=True)
class ResultLimits:
    """Row limits applied to result reads."""

    default_limit: int = 100
    max_limit: int = 1000

    @classmethod
    def from_config(cls, cfg: object) -> ResultLimits:
        """
        Build limits from a configuration exposing default/max result limits.

        Parameters
        ----------
        cfg:
            Object with optional ``default_result_limit`` and ``max_result_limit``.

        Returns
        -------
        ResultLimits
            Limits derived from the provided configuration.
        """
        default = getattr(cfg, "default_result_limit", cls.default_limit)
        maximum = getattr(cfg, "max_result_limit", cls.max_limit)
        return cls(default_limit=int(default), max_limit=int(maximum))


@dataclass(frozen=True)
class ClampResult:
    """Result of clamping limit/offset values with messaging."""

    applied: int
    messages: list[LimitMessage] = field(default_factory=list)
    has_error: bool = False


def clamp_limit_value(
    requested: int | None,
    *,
    default: int,
    max_limit: int,
) -> ClampResult:
    """
    Clamp a requested limit to safe bounds, returning warnings instead of raising.

    Parameters
    ----------
    requested:
        Requested limit value; ``None`` means "use default".
    default:
        Default limit to apply when none is requested.
    max_limit:
        Maximum rows allowed for any call.

    Returns
    -------
    ClampResult
        Applied limit plus any informational or error messages.
    """
    limit = default if requested is None else requested
    if limit < 0:
        return ClampResult(
            applied=0,
            messages=[
                LimitMessage(
                    code="limit_invalid",
                    severity="error",
                    detail="limit must be non-negative",
                    context={"requested": limit},
                )
            ],
            has_error=True,
        )
    messages: list[LimitMessage] = []
    if limit > max_limit:
        messages.append(
            LimitMessage(
                code="limit_clamped",
                severity="warning",
                detail=f"Requested {limit} rows; delivering {max_limit} (max allowed).",
                context={"requested": limit, "applied": max_limit, "max": max_limit},
            )
        )
        limit = max_limit
    return ClampResult(applied=limit, messages=messages)


def clamp_offset_value(offset: int | None) -> ClampResult:
    """
    Clamp an offset to a non-negative value, returning messaging instead of raising.

    Returns
    -------
    ClampResult
        Applied offset and any validation messages.
    """
    if offset is None:
        return ClampResult(applied=0)
    if offset < 0:
        return ClampResult(
            applied=0,
            messages=[
                LimitMessage(
                    code="offset_invalid",
                    severity="error",
                    detail="offset must be non-negative",
                    context={"requested": offset},
                )
            ],
            has_error=True,
        )
    return ClampResult(applied=offset)
