"""Directory connector built on ldap3 with the simple paged results control."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from typing import Any
from urllib.parse import urlparse

from ldap3 import BASE, SUBTREE, Connection, Server
from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPCommunicationError,
    LDAPException,
    LDAPInvalidCredentialsResult,
)

from reportquery.compilers.base import NativeQuery
from reportquery.compilers.directory import USER_FILTER
from reportquery.connectors.base import (
    AttributeInfo,
    ConnectorAbortedError,
    ConnectorAuthError,
    ConnectorError,
    ConnectorQueryError,
    RawPage,
    RawRow,
    SchemaProbe,
    TransientConnectorError,
)
from reportquery.services.credentials import Credential
from reportquery.sources import SourceKind

LOG = logging.getLogger("reportquery.connectors.ldap")

PAGED_RESULTS_CONTROL = "1.2.840.113556.1.4.319"
MAX_SERVER_PAGE = 1000
SCHEMA_SAMPLE_SIZE = 200
USER_GROUP = "user"

_AUTH_RESULTS = frozenset({8, 13, 48, 49, 50})
_TRANSIENT_RESULTS = frozenset({3, 11, 51, 52, 80})
_QUERY_RESULTS = frozenset({2, 17, 18, 21, 32, 34, 53, 87})
_SIZE_LIMIT_EXCEEDED = 4

ConnectionFactory = Callable[[Credential], Any]


def open_connection(credential: Credential) -> Connection:
    """
    Bind an ldap3 connection from credential settings.

    Settings: ``url`` (``ldap://host:389`` or ``ldaps://host:636``),
    ``bind_dn`` and optional ``timeout``; secret: ``password``.

    Returns
    -------
    Connection
        Bound synchronous connection.

    Raises
    ------
    ConnectorAuthError
        If the bind is rejected.
    TransientConnectorError
        If the server cannot be reached.
    """
    url = credential.setting("url") or ""
    parsed = urlparse(url)
    if not parsed.hostname:
        message = f"Credential {credential.id} has no usable LDAP url"
        raise ConnectorError(message)
    timeout = int(credential.setting("timeout", "30") or 30)
    server = Server(
        parsed.hostname,
        port=parsed.port,
        use_ssl=parsed.scheme == "ldaps",
        connect_timeout=timeout,
    )
    try:
        return Connection(
            server,
            user=credential.setting("bind_dn"),
            password=credential.secret("password"),
            auto_bind=True,
            receive_timeout=timeout,
            raise_exceptions=False,
        )
    except (LDAPBindError, LDAPInvalidCredentialsResult) as exc:
        message = f"LDAP bind rejected for credential {credential.id}: {exc}"
        raise ConnectorAuthError(message) from exc
    except LDAPException as exc:
        message = f"Cannot reach LDAP server {parsed.hostname}: {exc}"
        raise TransientConnectorError(message) from exc


def _raise_for_result(result: Mapping[str, Any], context: str) -> None:
    code = int(result.get("result", 0) or 0)
    if code in (0, _SIZE_LIMIT_EXCEEDED):
        return
    description = result.get("description") or "error"
    detail = result.get("message") or ""
    message = f"{context} failed: {description} ({code}) {detail}".strip()
    if code in _AUTH_RESULTS:
        raise ConnectorAuthError(message)
    if code in _TRANSIENT_RESULTS:
        raise TransientConnectorError(message)
    if code in _QUERY_RESULTS:
        raise ConnectorQueryError(message)
    raise ConnectorError(message)


def _paged_cookie(result: Mapping[str, Any]) -> bytes | None:
    control = (result.get("controls") or {}).get(PAGED_RESULTS_CONTROL) or {}
    cookie = (control.get("value") or {}).get("cookie")
    return cookie or None


def _entries(response: Any) -> list[Mapping[str, Any]]:
    return [item for item in response or [] if item.get("type") == "searchResEntry"]


class LdapConnector:
    """
    Credential-bound directory session.

    ``abort`` unbinds the socket from another thread; a search blocked on the
    socket then fails and the failure is reported as an abort.
    """

    source = SourceKind.DIRECTORY

    def __init__(
        self, credential: Credential, *, connection_factory: ConnectionFactory = open_connection
    ) -> None:
        self._credential = credential
        self._base_dn = credential.setting("base_dn") or ""
        self._aborted = threading.Event()
        self._conn = connection_factory(credential)

    def fetch_pages(self, native: NativeQuery, *, page_size: int) -> Iterator[RawPage]:
        """
        Run a paged subtree search.

        Yields
        ------
        RawPage
            Pages in server order; ``has_more`` follows the paging cookie.
        """
        payload = native.payload
        size = max(1, min(page_size, MAX_SERVER_PAGE))
        cookie: bytes | None = None
        index = 0
        while True:
            self._search(
                payload.get("filter", USER_FILTER),
                list(payload.get("attributes", ())),
                paged_size=size,
                paged_cookie=cookie,
            )
            rows = [
                RawRow(attributes=dict(entry.get("attributes") or {}))
                for entry in _entries(self._conn.response)
            ]
            cookie = _paged_cookie(self._conn.result)
            yield RawPage(index=index, rows=rows, has_more=cookie is not None)
            if cookie is None:
                return
            index += 1

    def describe_schema(self) -> SchemaProbe:
        """
        Sample user objects and resolve attribute syntaxes from the schema partition.

        Returns
        -------
        SchemaProbe
            A single ``user`` group; schema lookups that fail leave syntax unset.
        """
        self._search(USER_FILTER, ["*"], size_limit=SCHEMA_SAMPLE_SIZE)
        samples: dict[str, list[object]] = {}
        multi: set[str] = set()
        for entry in _entries(self._conn.response):
            for name, value in (entry.get("attributes") or {}).items():
                bucket = samples.setdefault(name, [])
                if isinstance(value, list):
                    if len(value) > 1:
                        multi.add(name)
                    value = value[0] if value else None
                if value is not None and len(bucket) < 3:
                    bucket.append(value)
        syntaxes = self._attribute_syntaxes()
        attributes = tuple(
            AttributeInfo(
                name=name,
                syntax=syntaxes.get(name.lower(), (None, False))[0],
                multi_valued=name in multi or syntaxes.get(name.lower(), (None, False))[1],
                samples=tuple(values),
            )
            for name, values in samples.items()
        )
        return SchemaProbe(groups={USER_GROUP: attributes})

    def ping(self) -> None:
        """Read the root DSE."""
        self._search("(objectClass=*)", ["defaultNamingContext"], base="", scope=BASE)

    def abort(self) -> None:
        """Unbind to interrupt a blocked search."""
        self._aborted.set()
        try:
            self._conn.unbind()
        except LDAPException:
            LOG.debug("Unbind during abort failed", exc_info=True)

    def close(self) -> None:
        """Unbind the session."""
        try:
            self._conn.unbind()
        except LDAPException:
            LOG.debug("Unbind during close failed", exc_info=True)

    def _attribute_syntaxes(self) -> dict[str, tuple[str | None, bool]]:
        naming = self._schema_naming_context()
        if not naming:
            return {}
        try:
            self._search(
                "(objectClass=attributeSchema)",
                ["lDAPDisplayName", "attributeSyntax", "isSingleValued"],
                base=naming,
                paged_size=MAX_SERVER_PAGE,
            )
        except ConnectorError as exc:
            LOG.warning("Attribute syntax lookup failed: %s", exc)
            return {}
        syntaxes: dict[str, tuple[str | None, bool]] = {}
        for entry in _entries(self._conn.response):
            attrs = entry.get("attributes") or {}
            name = _single(attrs.get("lDAPDisplayName"))
            if name:
                syntax = _single(attrs.get("attributeSyntax"))
                single = _single(attrs.get("isSingleValued"))
                syntaxes[str(name).lower()] = (
                    str(syntax) if syntax else None,
                    single is False or str(single).upper() == "FALSE",
                )
        return syntaxes

    def _schema_naming_context(self) -> str | None:
        try:
            self._search("(objectClass=*)", ["schemaNamingContext"], base="", scope=BASE)
        except ConnectorError as exc:
            LOG.warning("Root DSE read failed: %s", exc)
            return None
        for entry in _entries(self._conn.response):
            value = _single((entry.get("attributes") or {}).get("schemaNamingContext"))
            if value:
                return str(value)
        return None

    def _search(  # noqa: PLR0913
        self,
        search_filter: str,
        attributes: list[str],
        *,
        base: str | None = None,
        scope: str = SUBTREE,
        paged_size: int | None = None,
        paged_cookie: bytes | None = None,
        size_limit: int = 0,
    ) -> None:
        if self._aborted.is_set():
            message = "LDAP connection was aborted"
            raise ConnectorAbortedError(message)
        try:
            self._conn.search(
                search_base=self._base_dn if base is None else base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                paged_size=paged_size,
                paged_cookie=paged_cookie,
                size_limit=size_limit,
            )
        except LDAPCommunicationError as exc:
            if self._aborted.is_set():
                message = "LDAP search aborted"
                raise ConnectorAbortedError(message) from exc
            message = f"LDAP connection lost: {exc}"
            raise TransientConnectorError(message) from exc
        except LDAPException as exc:
            if self._aborted.is_set():
                message = "LDAP search aborted"
                raise ConnectorAbortedError(message) from exc
            message = f"LDAP search failed: {exc}"
            raise ConnectorError(message) from exc
        _raise_for_result(self._conn.result or {}, "LDAP search")


def _single(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def ldap_connector_factory(
    connection_factory: ConnectionFactory = open_connection,
) -> Callable[[Credential], LdapConnector]:
    """
    Return a ConnectorFactory for directory credentials.

    Returns
    -------
    Callable[[Credential], LdapConnector]
        Factory used by the pool registry.
    """
    return lambda credential: LdapConnector(credential, connection_factory=connection_factory)
