"""Closed set of backend source kinds understood by the query engine."""

from __future__ import annotations

from enum import StrEnum


class SourceKind(StrEnum):
    """Backend kinds a report query can target."""

    DIRECTORY = "directory"
    CLOUD_DIRECTORY = "cloud_directory"
    CLOUD_SUITE = "cloud_suite"


_SOURCE_ALIASES: dict[str, SourceKind] = {
    "directory": SourceKind.DIRECTORY,
    "ad": SourceKind.DIRECTORY,
    "ldap": SourceKind.DIRECTORY,
    "cloud_directory": SourceKind.CLOUD_DIRECTORY,
    "azure": SourceKind.CLOUD_DIRECTORY,
    "entra": SourceKind.CLOUD_DIRECTORY,
    "cloud_suite": SourceKind.CLOUD_SUITE,
    "o365": SourceKind.CLOUD_SUITE,
    "m365": SourceKind.CLOUD_SUITE,
}


def parse_source(value: object) -> SourceKind | None:
    """
    Resolve a raw source identifier to a SourceKind.

    Accepts the canonical names as well as the short product names used by
    report templates (``ad``, ``azure``, ``o365``).

    Parameters
    ----------
    value:
        Raw identifier from a request payload.

    Returns
    -------
    SourceKind | None
        Matching source kind, or ``None`` when the identifier is unknown.
    """
    if isinstance(value, SourceKind):
        return value
    if not isinstance(value, str):
        return None
    return _SOURCE_ALIASES.get(value.strip().lower())


def require_source(value: object) -> SourceKind:
    """
    Resolve a source identifier, raising when it is unknown.

    Returns
    -------
    SourceKind
        Matching source kind.

    Raises
    ------
    ValueError
        If the identifier does not name a known source.
    """
    source = parse_source(value)
    if source is None:
        message = f"Unknown source: {value!r}"
        raise ValueError(message)
    return source
