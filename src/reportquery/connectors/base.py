"""Connector contract shared by every backend driver."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from reportquery.sources import SourceKind

if TYPE_CHECKING:
    from reportquery.compilers.base import NativeQuery
    from reportquery.services.credentials import Credential


class ConnectorError(Exception):
    """Base class for backend driver failures."""

    retryable = False


class TransientConnectorError(ConnectorError):
    """Network-level failure that may succeed on retry."""

    retryable = True


class ConnectorAuthError(ConnectorError):
    """Backend rejected the credential or denied access to the operation."""


class ConnectorAbortedError(ConnectorError):
    """In-flight call was aborted through ``Connector.abort``."""


class ConnectorQueryError(ConnectorError):
    """Backend rejected the native query itself."""


@dataclass(frozen=True)
class AttributeInfo:
    """Attribute reported by a backend schema probe."""

    name: str
    syntax: str | None = None
    multi_valued: bool = False
    samples: tuple[object, ...] = ()


@dataclass(frozen=True)
class SchemaProbe:
    """Attribute groups a backend exposed, plus the groups it refused to describe."""

    groups: Mapping[str, tuple[AttributeInfo, ...]] = field(default_factory=dict)
    failed_groups: Mapping[str, str] = field(default_factory=dict)


@dataclass
class RawRow:
    """
    Backend row keyed by native attribute name.

    ``errors`` maps attributes that could not be read for this row to the
    backend's reason; such attributes are absent from ``attributes``.
    """

    attributes: dict[str, object]
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RawPage:
    """One page of backend rows, numbered from zero in request order."""

    index: int
    rows: list[RawRow]
    has_more: bool


class Connector(Protocol):
    """Open, credential-bound session with one backend."""

    source: SourceKind

    def fetch_pages(self, native: NativeQuery, *, page_size: int) -> Iterator[RawPage]:
        """Yield result pages in increasing order until the backend is exhausted."""
        ...

    def describe_schema(self) -> SchemaProbe:
        """Enumerate attribute groups for field discovery."""
        ...

    def ping(self) -> None:
        """Raise ConnectorError when the backend cannot be reached."""
        ...

    def abort(self) -> None:
        """Abandon any in-flight call; safe to invoke from another thread."""
        ...

    def close(self) -> None:
        """Release the underlying session."""
        ...


ConnectorFactory = Callable[["Credential"], Connector]
