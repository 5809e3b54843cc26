"""Normalize raw backend values into typed rows keyed by canonical field names."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from reportquery.catalog.types import FieldDescriptor, SemanticType
from reportquery.connectors.base import RawRow
from reportquery.engine.results import Row, RowWarning

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=UTC)
FILETIME_NEVER = (0, 0x7FFFFFFFFFFFFFFF)
# Integers above this are FileTime ticks, below it Unix seconds.
_FILETIME_THRESHOLD = 10**14
_GENERALIZED_TIME = re.compile(
    r"^(?P<stamp>\d{14})(?:\.(?P<fraction>\d+))?(?P<zone>Z|[+-]\d{4})?$"
)
_TRUE_TEXT = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_TEXT = frozenset({"false", "0", "no", "n", "off"})


class ValueCoercionError(ValueError):
    """Raised when a backend value does not match its field's semantic type."""


def filetime_to_datetime(ticks: int) -> datetime | None:
    """
    Convert Windows FileTime ticks to an aware UTC datetime.

    Returns
    -------
    datetime | None
        Instant, or ``None`` for the "never" sentinels.
    """
    if ticks in FILETIME_NEVER or ticks < 0:
        return None
    return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def parse_generalized_time(text: str) -> datetime | None:
    """
    Parse LDAP GeneralizedTime (``20240131120000.0Z``).

    Returns
    -------
    datetime | None
        Aware datetime, or ``None`` when the text is not GeneralizedTime.
    """
    match = _GENERALIZED_TIME.match(text)
    if match is None:
        return None
    parsed = datetime.strptime(match.group("stamp"), "%Y%m%d%H%M%S")
    zone = match.group("zone")
    if zone in (None, "Z"):
        return parsed.replace(tzinfo=UTC)
    offset = datetime.strptime(zone, "%z").tzinfo
    return parsed.replace(tzinfo=offset).astimezone(UTC)


def normalize_datetime(value: Any) -> datetime | None:
    """
    Normalize FileTime, GeneralizedTime, ISO text, dates and datetimes.

    Returns
    -------
    datetime | None
        Aware UTC datetime, or ``None`` for empty and "never" values.

    Raises
    ------
    ValueCoercionError
        If the value is not a recognizable instant.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=UTC)
        if moment.astimezone(UTC) <= FILETIME_EPOCH:
            return None
        return moment.astimezone(UTC)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC)
    if isinstance(value, bool):
        message = f"Expected a date/time, got {value!r}"
        raise ValueCoercionError(message)
    if isinstance(value, int):
        if value >= _FILETIME_THRESHOLD or value in FILETIME_NEVER:
            return filetime_to_datetime(value)
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    if re.fullmatch(r"-?\d+", text):
        return normalize_datetime(int(text))
    generalized = parse_generalized_time(text)
    if generalized is not None:
        return generalized
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        message = f"Unrecognized date/time {text!r}"
        raise ValueCoercionError(message) from exc
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        if len(value) == 1:
            return value[0]
    return value


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _coerce(descriptor: FieldDescriptor, value: Any) -> Any:  # noqa: C901, PLR0911, PLR0912
    semantic_type = descriptor.semantic_type
    if semantic_type is SemanticType.ARRAY:
        if value is None:
            return None
        items = value if isinstance(value, (list, tuple)) else [value]
        return [_reference_text(item) if isinstance(item, Mapping) else _text(item) for item in items]

    value = _first(value)
    if value is None:
        return None
    if descriptor.bit_flag is not None:
        try:
            return descriptor.bit_flag.evaluate(int(value))
        except (TypeError, ValueError) as exc:
            message = f"Expected integer flags, got {value!r}"
            raise ValueCoercionError(message) from exc
    if isinstance(value, str) and value.strip() == "" and semantic_type is not SemanticType.STRING:
        return None
    if semantic_type is SemanticType.DATETIME:
        return normalize_datetime(value)
    if semantic_type is SemanticType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = _text(value).strip().lower()
        if text in _TRUE_TEXT:
            return True
        if text in _FALSE_TEXT:
            return False
        message = f"Expected a boolean, got {value!r}"
        raise ValueCoercionError(message)
    if semantic_type is SemanticType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        try:
            return int(_text(value).strip())
        except ValueError as exc:
            message = f"Expected an integer, got {value!r}"
            raise ValueCoercionError(message) from exc
    if semantic_type is SemanticType.REFERENCE:
        return _reference_text(value) if isinstance(value, Mapping) else _text(value)
    return _text(value)


def _reference_text(value: Mapping[str, Any]) -> str:
    for key in ("displayName", "userPrincipalName", "name", "id"):
        if value.get(key):
            return str(value[key])
    return ""


def _lookup(attributes: Mapping[str, Any], native_name: str) -> Any:
    if native_name in attributes:
        return attributes[native_name]
    lowered = native_name.lower()
    for key, value in attributes.items():
        if key.lower() == lowered:
            return value
    if "/" in native_name:
        head, rest = native_name.split("/", 1)
        parent = _lookup(attributes, head)
        if isinstance(parent, Mapping):
            return _lookup(parent, rest)
    return None


def _error_for(row: RawRow, descriptor: FieldDescriptor) -> str | None:
    if not row.errors:
        return None
    candidates = {descriptor.native_name.lower(), descriptor.native_name.split("/", 1)[0].lower()}
    for attribute, reason in row.errors.items():
        if attribute.lower() in candidates:
            return reason
    return None


def normalize_rows(
    raw_rows: Sequence[RawRow], fields: Sequence[FieldDescriptor]
) -> tuple[list[Row], list[RowWarning]]:
    """
    Convert raw backend rows into typed rows.

    Unreadable attributes and values that fail coercion become ``None`` plus
    one warning per (row, field); the row itself is kept.

    Parameters
    ----------
    raw_rows:
        Rows in fetch order.
    fields:
        Fields to materialize.

    Returns
    -------
    tuple[list[Row], list[RowWarning]]
        Normalized rows keyed by canonical field name, and warnings.
    """
    rows: list[Row] = []
    warnings: list[RowWarning] = []
    for index, raw in enumerate(raw_rows):
        row: Row = {}
        for descriptor in fields:
            reason = _error_for(raw, descriptor)
            if reason is not None:
                row[descriptor.name] = None
                warnings.append(
                    RowWarning(
                        code="attribute_unreadable",
                        message=(
                            f"Attribute {descriptor.native_name} could not be read ({reason})"
                        ),
                        row=index,
                        field=descriptor.name,
                    )
                )
                continue
            raw_value = _lookup(raw.attributes, descriptor.native_name)
            try:
                row[descriptor.name] = _coerce(descriptor, raw_value)
            except ValueCoercionError as exc:
                row[descriptor.name] = None
                warnings.append(
                    RowWarning(
                        code="value_invalid",
                        message=f"{descriptor.name}: {exc}",
                        row=index,
                        field=descriptor.name,
                    )
                )
        rows.append(row)
    return rows, warnings
