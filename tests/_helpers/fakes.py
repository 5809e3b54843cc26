"""Typed fakes for connector, engine and service tests."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from reportquery.compilers.base import NativeQuery
from reportquery.connectors.base import (
    AttributeInfo,
    ConnectorAbortedError,
    RawPage,
    RawRow,
    SchemaProbe,
)
from reportquery.services.credentials import Credential
from reportquery.sources import SourceKind

FIXED_NOW = datetime(2024, 3, 15, 10, 30, tzinfo=UTC)
BLOCK_TIMEOUT_SECONDS = 10.0


class FakeClock:
    """Settable wall clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        """Move the clock forward."""
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Settable monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        """Move the clock forward."""
        self.value += seconds


def make_credential(
    source: SourceKind,
    credential_id: str | None = None,
    *,
    version: int = 1,
    settings: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Credential:
    """
    Build a credential with sensible per-source defaults.

    Returns
    -------
    Credential
        Credential for ``source``.
    """
    defaults: dict[SourceKind, tuple[dict[str, str], dict[str, str]]] = {
        SourceKind.DIRECTORY: (
            {"url": "ldaps://dc01.example.test", "bind_dn": "CN=svc,DC=example,DC=test",
             "base_dn": "DC=example,DC=test"},
            {"password": "hunter2"},
        ),
        SourceKind.CLOUD_DIRECTORY: (
            {"tenant_id": "tenant-1", "client_id": "client-1"},
            {"client_secret": "s3cret"},
        ),
        SourceKind.CLOUD_SUITE: (
            {"tenant_id": "tenant-1", "client_id": "client-1"},
            {"client_secret": "s3cret"},
        ),
    }
    base_settings, base_secrets = defaults[source]
    return Credential(
        id=credential_id or f"cred-{source.value}",
        source=source,
        version=version,
        settings=settings if settings is not None else base_settings,
        secrets=secrets if secrets is not None else base_secrets,
    )


def directory_rows(count: int, *, start: int = 0) -> list[RawRow]:
    """
    Build enabled directory user rows keyed by LDAP attribute name.

    Returns
    -------
    list[RawRow]
        ``count`` rows with distinct account names.
    """
    return [
        RawRow(
            attributes={
                "sAMAccountName": [f"user{index:03d}"],
                "displayName": [f"User {index:03d}"],
                "userAccountControl": [512],
                "department": ["Engineering" if index % 2 == 0 else "Sales"],
                "mail": [f"user{index:03d}@example.test"],
            }
        )
        for index in range(start, start + count)
    ]


@dataclass
class ConnectorScript:
    """
    Behaviour shared by every FakeConnector a factory creates.

    ``failures`` are raised, one per call, before any rows are yielded;
    ``on_fetch`` runs inside each successful fetch before its first page;
    ``block_until_abort`` parks ``fetch_pages`` after ``started`` is set until
    ``abort`` is called.
    """

    rows: list[RawRow] = field(default_factory=list)
    schema: SchemaProbe = field(
        default_factory=lambda: SchemaProbe(groups={"user": (AttributeInfo("extensionAttribute1"),)})
    )
    failures: list[Exception] = field(default_factory=list)
    schema_error: Exception | None = None
    ping_error: Exception | None = None
    block_until_abort: bool = False
    fetch_calls: int = 0
    schema_calls: int = 0
    started: threading.Event = field(default_factory=threading.Event)
    natives: list[NativeQuery] = field(default_factory=list)
    on_fetch: Callable[[], object] | None = None


class FakeConnector:
    """In-memory connector driven by a ConnectorScript."""

    def __init__(self, credential: Credential, script: ConnectorScript) -> None:
        self.credential = credential
        self.source = credential.source
        self.script = script
        self.aborted = threading.Event()
        self.closed = False

    def fetch_pages(self, native: NativeQuery, *, page_size: int) -> Iterator[RawPage]:
        """
        Yield the scripted rows in pages.

        Yields
        ------
        RawPage
            Successive pages of ``page_size`` rows.

        Raises
        ------
        ConnectorAbortedError
            When aborted while blocked.
        """
        script = self.script
        script.fetch_calls += 1
        script.natives.append(native)
        if script.failures:
            raise script.failures.pop(0)
        if script.on_fetch is not None:
            script.on_fetch()
        if script.block_until_abort:
            script.started.set()
            self.aborted.wait(BLOCK_TIMEOUT_SECONDS)
            message = "search aborted"
            raise ConnectorAbortedError(message)
        rows = script.rows
        for index, start in enumerate(range(0, max(len(rows), 1), page_size)):
            chunk = rows[start : start + page_size]
            yield RawPage(index=index, rows=list(chunk), has_more=start + page_size < len(rows))

    def describe_schema(self) -> SchemaProbe:
        """
        Return the scripted schema probe.

        Returns
        -------
        SchemaProbe
            Probe result.
        """
        self.script.schema_calls += 1
        if self.script.schema_error is not None:
            raise self.script.schema_error
        return self.script.schema

    def ping(self) -> None:
        """Raise the scripted ping error, if any."""
        if self.script.ping_error is not None:
            raise self.script.ping_error

    def abort(self) -> None:
        """Release a blocked fetch."""
        self.aborted.set()

    def close(self) -> None:
        """Mark the connector closed."""
        self.closed = True


class FakeConnectorFactory:
    """Connector factory recording every connector it builds."""

    def __init__(self, script: ConnectorScript | None = None) -> None:
        self.script = script or ConnectorScript()
        self.created: list[FakeConnector] = []

    def __call__(self, credential: Credential) -> FakeConnector:
        connector = FakeConnector(credential, self.script)
        self.created.append(connector)
        return connector


@dataclass
class LdapReply:
    """One scripted reply to ``FakeLdapConnection.search``."""

    entries: Sequence[dict[str, Any]] = ()
    result_code: int = 0
    cookie: bytes = b""
    description: str = "success"


class FakeLdapConnection:
    """Stand-in for ``ldap3.Connection`` exposing the attributes LdapConnector reads."""

    def __init__(self, replies: Sequence[LdapReply] = ()) -> None:
        self.replies = list(replies)
        self.searches: list[dict[str, Any]] = []
        self.response: list[dict[str, Any]] = []
        self.result: dict[str, Any] = {}
        self.unbound = False
        self.on_search: Callable[[dict[str, Any]], None] | None = None

    def search(self, **kwargs: Any) -> bool:
        """
        Record the search and load the next scripted reply.

        Returns
        -------
        bool
            True when the scripted result code is success.
        """
        self.searches.append(kwargs)
        if self.on_search is not None:
            self.on_search(kwargs)
        reply = self.replies.pop(0) if self.replies else LdapReply()
        self.response = [
            {"type": "searchResEntry", "dn": f"CN=entry{index}", "attributes": dict(entry)}
            for index, entry in enumerate(reply.entries)
        ]
        self.result = {
            "result": reply.result_code,
            "description": reply.description,
            "message": "",
            "controls": {
                "1.2.840.113556.1.4.319": {"value": {"size": 0, "cookie": reply.cookie}},
            },
        }
        return reply.result_code == 0

    def unbind(self) -> bool:
        """
        Mark the connection unbound.

        Returns
        -------
        bool
            Always True.
        """
        self.unbound = True
        return True


GraphHandler = Callable[[httpx.Request], httpx.Response]


class GraphRoutes:
    """
    Router for ``httpx.MockTransport`` emulating the token endpoint and Graph.

    ``routes`` maps a request path (relative to ``/v1.0/``) to a response or
    a handler; unmatched paths return 404.
    """

    def __init__(self, routes: dict[str, httpx.Response | GraphHandler] | None = None) -> None:
        self.routes = dict(routes or {})
        self.requests: list[httpx.Request] = []
        self.token_requests = 0
        self.token_status = 200

    def transport(self) -> httpx.MockTransport:
        """
        Build the mock transport.

        Returns
        -------
        httpx.MockTransport
            Transport dispatching to :meth:`handle`.
        """
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        """
        Answer one request.

        Returns
        -------
        httpx.Response
            Token, routed or 404 response.
        """
        if request.url.path.endswith("/oauth2/v2.0/token"):
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
        self.requests.append(request)
        path = request.url.path.split("/v1.0/", 1)[-1]
        route = self.routes.get(path)
        if route is None:
            return httpx.Response(404, json={"error": {"code": "Request_ResourceNotFound"}})
        if isinstance(route, httpx.Response):
            return httpx.Response(route.status_code, headers=route.headers, content=route.content)
        return route(request)
