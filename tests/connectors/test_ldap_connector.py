"""ldap3-backed directory connector against a scripted connection."""

from __future__ import annotations

import pytest
from ldap3 import BASE

from reportquery.catalog.types import FieldCatalog
from reportquery.compilers.base import NativeQuery
from reportquery.compilers.directory import DirectoryCompiler
from reportquery.connectors.base import (
    ConnectorAbortedError,
    ConnectorAuthError,
    ConnectorError,
    ConnectorQueryError,
    TransientConnectorError,
)
from reportquery.connectors.ldap import LdapConnector, ldap_connector_factory, open_connection
from reportquery.query.validator import QueryValidator
from reportquery.sources import SourceKind
from tests._helpers.builders import directory_query
from tests._helpers.expect import expect_equal, expect_length, expect_true
from tests._helpers.fakes import FakeClock, FakeLdapConnection, LdapReply, make_credential

PAGE_SIZE = 2
BASE_DN = "DC=example,DC=test"


def _native(catalog: FieldCatalog) -> NativeQuery:
    clock = FakeClock()
    definition = QueryValidator(clock=clock).validate(directory_query(), catalog)
    return DirectoryCompiler(clock=clock).compile(definition, catalog)


def _connector(*replies: LdapReply) -> tuple[LdapConnector, FakeLdapConnection]:
    connection = FakeLdapConnection(replies)
    connector = LdapConnector(
        make_credential(SourceKind.DIRECTORY), connection_factory=lambda _credential: connection
    )
    return connector, connection


def test_paged_search_follows_cookies(directory_catalog: FieldCatalog) -> None:
    """Each page passes the previous cookie until the server returns none."""
    connector, connection = _connector(
        LdapReply(entries=[{"sAMAccountName": ["a"]}, {"sAMAccountName": ["b"]}], cookie=b"next"),
        LdapReply(entries=[{"sAMAccountName": ["c"]}]),
    )
    pages = list(connector.fetch_pages(_native(directory_catalog), page_size=PAGE_SIZE))
    expect_equal([page.has_more for page in pages], [True, False])
    expect_equal(
        [row.attributes["sAMAccountName"] for page in pages for row in page.rows],
        [["a"], ["b"], ["c"]],
    )
    first, second = connection.searches
    expect_equal(first["search_base"], BASE_DN)
    expect_equal(first["paged_cookie"], None)
    expect_equal(second["paged_cookie"], b"next")
    expect_equal(first["paged_size"], PAGE_SIZE)
    expect_equal(first["attributes"], ["displayName", "sAMAccountName"])
    expect_true(
        first["search_filter"].startswith("(&(objectClass=user)"), message="compiled filter used"
    )


@pytest.mark.parametrize(
    ("code", "error"),
    [
        (49, ConnectorAuthError),
        (51, TransientConnectorError),
        (32, ConnectorQueryError),
        (1, ConnectorError),
    ],
)
def test_result_codes_map_to_errors(
    directory_catalog: FieldCatalog, code: int, error: type[Exception]
) -> None:
    """LDAP result codes become typed connector errors."""
    connector, _ = _connector(LdapReply(result_code=code, description="failure"))
    with pytest.raises(error):
        list(connector.fetch_pages(_native(directory_catalog), page_size=PAGE_SIZE))


def test_size_limit_is_not_an_error(directory_catalog: FieldCatalog) -> None:
    """sizeLimitExceeded still returns the entries received."""
    connector, _ = _connector(LdapReply(entries=[{"cn": ["x"]}], result_code=4))
    pages = list(connector.fetch_pages(_native(directory_catalog), page_size=PAGE_SIZE))
    expect_length(pages[0].rows, 1)


def test_abort_unbinds_and_blocks_further_searches(directory_catalog: FieldCatalog) -> None:
    """After abort the session is unbound and searches fail as aborted."""
    connector, connection = _connector()
    connector.abort()
    expect_true(connection.unbound, message="abort unbinds")
    with pytest.raises(ConnectorAbortedError):
        list(connector.fetch_pages(_native(directory_catalog), page_size=PAGE_SIZE))
    expect_equal(connection.searches, [])


def test_ping_reads_root_dse() -> None:
    """Ping is a base-scope read of the root DSE."""
    connector, connection = _connector()
    connector.ping()
    expect_equal(connection.searches[0]["search_base"], "")
    expect_equal(connection.searches[0]["search_scope"], BASE)


def test_schema_probe_merges_samples_and_syntaxes() -> None:
    """Sampled attributes carry syntax and multi-valued flags from the schema partition."""
    connector, _ = _connector(
        LdapReply(entries=[
            {"sAMAccountName": ["jdoe"], "memberOf": ["CN=A", "CN=B"], "extensionAttribute1": ["x"]}
        ]),
        LdapReply(entries=[{"schemaNamingContext": ["CN=Schema,CN=Configuration," + BASE_DN]}]),
        LdapReply(entries=[
            {"lDAPDisplayName": ["extensionAttribute1"], "attributeSyntax": ["2.5.5.12"],
             "isSingleValued": [True]},
        ]),
    )
    probe = connector.describe_schema()
    attributes = {info.name: info for info in probe.groups["user"]}
    expect_equal(attributes["extensionAttribute1"].syntax, "2.5.5.12")
    expect_equal(attributes["extensionAttribute1"].samples, ("x",))
    expect_true(attributes["memberOf"].multi_valued, message="multi-valued from samples")
    expect_true(not attributes["sAMAccountName"].multi_valued, message="single value")


def test_factory_and_missing_url() -> None:
    """The factory builds connectors; a credential without url cannot connect."""
    connection = FakeLdapConnection()
    factory = ldap_connector_factory(lambda _credential: connection)
    connector = factory(make_credential(SourceKind.DIRECTORY))
    connector.close()
    expect_true(connection.unbound, message="close unbinds")
    with pytest.raises(ConnectorError, match="no usable LDAP url"):
        open_connection(make_credential(SourceKind.DIRECTORY, settings={"bind_dn": "x"}))
