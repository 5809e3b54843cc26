"""Microsoft Graph session and the cloud directory (``/users``) connector."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from typing import Any

import httpx

from reportquery.compilers.base import NativeQuery
from reportquery.config.models import GRAPH_AUTHORITY, GRAPH_BASE_URL
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

LOG = logging.getLogger("reportquery.connectors.graph")

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
NEXT_LINK = "@odata.nextLink"
USER_GROUP = "user"
SIGN_IN_GROUP = "signInActivity"
# Refresh tokens this many seconds before they expire.
_TOKEN_SKEW = 60.0
_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class GraphSession:
    """
    Authenticated Graph HTTP session for one credential.

    Tokens come from the client-credentials flow and are refreshed shortly
    before expiry. ``transport`` lets tests substitute ``httpx.MockTransport``.
    """

    def __init__(  # noqa: PLR0913
        self,
        credential: Credential,
        *,
        base_url: str = GRAPH_BASE_URL,
        authority: str = GRAPH_AUTHORITY,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credential = credential
        self._base_url = base_url.rstrip("/")
        self._authority = authority.rstrip("/")
        self._monotonic = monotonic
        self._token: str | None = None
        self._token_expires = 0.0
        self._aborted = threading.Event()
        self._client = httpx.Client(timeout=timeout, transport=transport, follow_redirects=True)

    @property
    def base_url(self) -> str:
        """Graph API root, without a trailing slash."""
        return self._base_url

    def get_json(
        self,
        path_or_url: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        GET a Graph resource and decode its JSON body.

        Returns
        -------
        dict[str, Any]
            Decoded response.
        """
        response = self.get(path_or_url, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as exc:
            message = f"Graph returned invalid JSON for {path_or_url}"
            raise ConnectorError(message) from exc

    def get(
        self,
        path_or_url: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """
        GET a Graph resource, following redirects.

        Returns
        -------
        httpx.Response
            Successful response.

        Raises
        ------
        ConnectorAuthError
            On 401/403.
        ConnectorQueryError
            On 400/404 and other client errors.
        TransientConnectorError
            On throttling, server errors and transport failures.
        """
        url = path_or_url if path_or_url.startswith("http") else f"{self._base_url}/{path_or_url}"
        request_headers = {"Authorization": f"Bearer {self._access_token()}"}
        request_headers.update(headers or {})
        response = self._send(
            "GET", url, params=dict(params) if params else None, headers=request_headers
        )
        _raise_for_status(response, url)
        return response

    def abort(self) -> None:
        """Close the HTTP client; requests in flight fail and are reported as aborted."""
        self._aborted.set()
        self._client.close()

    def close(self) -> None:
        """Release the HTTP client."""
        self._client.close()

    def _access_token(self) -> str:
        if self._token is not None and self._monotonic() < self._token_expires:
            return self._token
        tenant = self._credential.setting("tenant_id")
        client_id = self._credential.setting("client_id")
        if not tenant or not client_id:
            message = f"Credential {self._credential.id} lacks tenant_id or client_id"
            raise ConnectorAuthError(message)
        response = self._send(
            "POST",
            f"{self._authority}/{tenant}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": self._credential.secret("client_secret"),
                "scope": GRAPH_SCOPE,
            },
        )
        if response.status_code in _TRANSIENT_STATUS:
            message = f"Token endpoint unavailable ({response.status_code})"
            raise TransientConnectorError(message)
        if response.status_code != httpx.codes.OK:
            message = f"Token request rejected ({response.status_code}): {_error_text(response)}"
            raise ConnectorAuthError(message)
        body = response.json()
        self._token = str(body["access_token"])
        self._token_expires = self._monotonic() + float(body.get("expires_in", 3600)) - _TOKEN_SKEW
        return self._token

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._aborted.is_set():
            message = "Graph session was aborted"
            raise ConnectorAbortedError(message)
        try:
            return self._client.request(method, url, **kwargs)
        except (httpx.TransportError, RuntimeError) as exc:
            if self._aborted.is_set():
                message = "Graph request aborted"
                raise ConnectorAbortedError(message) from exc
            if isinstance(exc, RuntimeError):
                raise
            message = f"Graph request to {url} failed: {exc}"
            raise TransientConnectorError(message) from exc


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or error)
    return str(body.get("error_description") or error or body)[:200]


def _raise_for_status(response: httpx.Response, url: str) -> None:
    status = response.status_code
    if status < httpx.codes.BAD_REQUEST:
        return
    message = f"Graph {url} returned {status}: {_error_text(response)}"
    if status in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
        raise ConnectorAuthError(message)
    if status in _TRANSIENT_STATUS:
        raise TransientConnectorError(message)
    raise ConnectorQueryError(message)


class GraphUsersConnector:
    """
    Cloud directory connector paging ``/users`` through ``@odata.nextLink``.

    Reference fields are resolved per row; a reference the credential may
    not read becomes a row error instead of failing the whole query.
    """

    source = SourceKind.CLOUD_DIRECTORY

    def __init__(self, session: GraphSession) -> None:
        self._session = session

    def fetch_pages(self, native: NativeQuery, *, page_size: int) -> Iterator[RawPage]:  # noqa: ARG002
        """
        Yield ``/users`` pages; ``$top`` is fixed at compile time.

        Yields
        ------
        RawPage
            Pages in request order.
        """
        payload = native.payload
        references = list(payload.get("expand_references", ()))
        url: str | None = str(payload.get("resource", "users"))
        params: Mapping[str, str] | None = payload.get("params", {})
        headers = payload.get("headers", {})
        index = 0
        while url is not None:
            body = self._session.get_json(url, params=params, headers=headers)
            rows = [self._row(item, references) for item in body.get("value", [])]
            url = body.get(NEXT_LINK)
            params = None
            yield RawPage(index=index, rows=rows, has_more=url is not None)
            index += 1

    def describe_schema(self) -> SchemaProbe:
        """
        Sample users for attribute names, then probe sign-in activity access.

        Returns
        -------
        SchemaProbe
            ``user`` group, plus ``signInActivity`` or a failed-group entry.
        """
        body = self._session.get_json("users", params={"$top": "5"})
        samples: dict[str, list[object]] = {}
        for item in body.get("value", []):
            for name, value in item.items():
                if name.startswith("@") or isinstance(value, dict):
                    continue
                bucket = samples.setdefault(name, [])
                if value is not None and len(bucket) < 3:
                    bucket.append(value)
        groups: dict[str, tuple[AttributeInfo, ...]] = {
            USER_GROUP: tuple(
                AttributeInfo(name=name, samples=tuple(values)) for name, values in samples.items()
            )
        }
        failed: dict[str, str] = {}
        try:
            sign_in = self._session.get_json(
                "users", params={"$top": "1", "$select": "id,signInActivity"}
            )
        except ConnectorAuthError as exc:
            failed[SIGN_IN_GROUP] = str(exc)
        else:
            activity: dict[str, Any] = {}
            for item in sign_in.get("value", []):
                activity.update(item.get(SIGN_IN_GROUP) or {})
            groups[SIGN_IN_GROUP] = tuple(
                AttributeInfo(name=f"{SIGN_IN_GROUP}/{key}", samples=(value,) if value else ())
                for key, value in activity.items()
                if not key.startswith("@")
            )
        return SchemaProbe(groups=groups, failed_groups=failed)

    def ping(self) -> None:
        """Read the organization resource."""
        self._session.get_json("organization", params={"$select": "id"})

    def abort(self) -> None:
        """Abort requests in flight."""
        self._session.abort()

    def close(self) -> None:
        """Close the session."""
        self._session.close()

    def _row(self, item: Mapping[str, Any], references: list[str]) -> RawRow:
        row = RawRow(attributes=dict(item))
        user_id = item.get("id")
        for reference in references:
            if not user_id:
                continue
            try:
                row.attributes[reference] = self._session.get_json(
                    f"users/{user_id}/{reference}", params={"$select": "id,displayName"}
                )
            except ConnectorAuthError as exc:
                row.errors[reference] = str(exc)
            except ConnectorQueryError:
                # 404: the reference is not set for this user.
                row.attributes[reference] = None
        return row


def graph_users_factory(
    *,
    base_url: str = GRAPH_BASE_URL,
    authority: str = GRAPH_AUTHORITY,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> Callable[[Credential], GraphUsersConnector]:
    """
    Return a ConnectorFactory for cloud directory credentials.

    Returns
    -------
    Callable[[Credential], GraphUsersConnector]
        Factory used by the pool registry.
    """

    def _factory(credential: Credential) -> GraphUsersConnector:
        session = GraphSession(
            credential, base_url=base_url, authority=authority, timeout=timeout, transport=transport
        )
        return GraphUsersConnector(session)

    return _factory
