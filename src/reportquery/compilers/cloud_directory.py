"""Compile queries into Microsoft Graph ``/users`` OData query parameters."""

from __future__ import annotations

from datetime import UTC, datetime
from urllib.parse import quote

from reportquery.catalog.types import FieldDescriptor, Operator, SemanticType
from reportquery.compilers.base import (
    BaseCompiler,
    CompileContext,
    CompilerWarning,
    NativeQuery,
    PostFetchPlan,
)
from reportquery.query.binding import BoundFilter
from reportquery.sources import SourceKind

GRAPH_MAX_PAGE_SIZE = 999
CONSISTENCY_HEADER = "ConsistencyLevel"

# Properties Graph can $orderby on /users.
SORTABLE_PROPERTIES = frozenset(
    {"displayName", "userPrincipalName", "givenName", "surname", "mail", "jobTitle",
     "department", "companyName", "createdDateTime", "employeeId", "officeLocation"}
)

_COMPARISONS = {
    Operator.EQUALS: "eq",
    Operator.NOT_EQUALS: "ne",
    Operator.GREATER_THAN: "gt",
    Operator.GREATER_OR_EQUAL: "ge",
    Operator.LESS_THAN: "lt",
    Operator.LESS_OR_EQUAL: "le",
}
# Operators that only work as Graph "advanced queries" ($count + ConsistencyLevel).
_ADVANCED = frozenset({Operator.NOT_EQUALS, Operator.ENDS_WITH, Operator.NOT_EXISTS})


def odata_literal(value: object) -> str:
    """
    Render a Python value as an OData literal.

    Returns
    -------
    str
        Quoted string (single quotes doubled), lowercase boolean, ISO instant or number.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        utc = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
        return utc.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


def _property_path(descriptor: FieldDescriptor) -> str:
    return descriptor.native_name


def _select_root(descriptor: FieldDescriptor) -> str:
    return descriptor.native_name.split("/", 1)[0]


def render_odata_filter(bound: BoundFilter) -> str | None:  # noqa: PLR0911
    """
    Render a bound filter as an OData ``$filter`` expression.

    Parameters
    ----------
    bound:
        Filter with a typed value.

    Returns
    -------
    str | None
        Expression, or ``None`` when Graph cannot evaluate it server-side.
    """
    descriptor = bound.descriptor
    path = _property_path(descriptor)
    op = bound.operator
    if descriptor.semantic_type is SemanticType.REFERENCE:
        return None
    if descriptor.semantic_type is SemanticType.ARRAY:
        if op is Operator.EQUALS:
            return f"{path}/any(x:x eq {odata_literal(bound.value)})"
        return None
    if op is Operator.EXISTS:
        return f"{path} ne null"
    if op is Operator.NOT_EXISTS:
        return f"{path} eq null"
    if op is Operator.OLDER_THAN and bound.cutoff is not None:
        return f"{path} le {odata_literal(bound.cutoff)}"
    if op is Operator.NEWER_THAN and bound.cutoff is not None:
        return f"{path} ge {odata_literal(bound.cutoff)}"
    if op is Operator.STARTS_WITH:
        return f"startswith({path},{odata_literal(bound.value)})"
    if op is Operator.ENDS_WITH:
        return f"endswith({path},{odata_literal(bound.value)})"
    if op is Operator.IN:
        items = ",".join(odata_literal(item) for item in bound.value)
        return f"{path} in ({items})"
    comparison = _COMPARISONS.get(op)
    if comparison is None:
        return None
    return f"{path} {comparison} {odata_literal(bound.value)}"


class CloudDirectoryCompiler(BaseCompiler):
    """
    Graph users compiler.

    Operators Graph cannot evaluate (substring matches, emptiness, filters
    on resolved references) are moved to post-fetch filtering and reported
    as ``filter_fallback`` warnings. Any post-fetch filter or grouping also
    moves ordering and paging into memory.
    """

    source = SourceKind.CLOUD_DIRECTORY

    def _render(self, context: CompileContext) -> NativeQuery:
        definition = context.definition
        native_terms: list[str] = []
        fallback: list[BoundFilter] = []
        warnings: list[CompilerWarning] = []
        advanced = False
        for bound in context.filters:
            term = render_odata_filter(bound)
            if term is None:
                fallback.append(bound)
                warnings.append(
                    CompilerWarning(
                        code="filter_fallback",
                        message=(
                            f"Operator '{bound.operator.value}' on '{bound.descriptor.name}' "
                            "is not supported by the directory API; applied after fetch"
                        ),
                        field=bound.descriptor.name,
                    )
                )
                continue
            native_terms.append(term)
            if bound.operator in _ADVANCED or "/" in bound.descriptor.native_name:
                advanced = True

        native_order = (
            context.order_by is not None
            and not fallback
            and context.group_by is None
            and context.order_by.native_name in SORTABLE_PROPERTIES
        )
        post_fetch = PostFetchPlan(
            filters=tuple(fallback),
            order_by=None if native_order else definition.order_by,
            group_by=definition.group_by,
        )
        fields = self.materialized_fields(context, post_fetch)
        scalar_fields = [d for d in fields if d.semantic_type is not SemanticType.REFERENCE]
        references = sorted({d.native_name for d in fields} - {d.native_name for d in scalar_fields})
        select = list(dict.fromkeys(["id", *(_select_root(d) for d in scalar_fields)]))

        native_pagination = post_fetch.is_empty
        params: dict[str, str] = {"$select": ",".join(select)}
        if native_terms:
            params["$filter"] = " and ".join(native_terms)
        if native_order and definition.order_by is not None and context.order_by is not None:
            direction = "desc" if definition.order_by.descending else "asc"
            params["$orderby"] = f"{context.order_by.native_name} {direction}"
            advanced = advanced or bool(native_terms)
        page_size = definition.pagination.page_size if native_pagination else GRAPH_MAX_PAGE_SIZE
        params["$top"] = str(min(page_size, GRAPH_MAX_PAGE_SIZE))
        headers: dict[str, str] = {}
        if advanced:
            params["$count"] = "true"
            headers[CONSISTENCY_HEADER] = "eventual"

        payload = {
            "resource": "users",
            "params": params,
            "headers": headers,
            "expand_references": references,
        }
        return NativeQuery(
            source=self.source,
            payload=payload,
            selected_fields=definition.selected_fields,
            fields=fields,
            pagination=definition.pagination,
            post_fetch=post_fetch,
            native_pagination=native_pagination,
            warnings=tuple(warnings),
            catalog_version=context.catalog.version,
        )


def render_request_path(native: NativeQuery) -> str:
    """
    Render a compiled Graph query as a relative request path for display.

    Returns
    -------
    str
        ``users?$select=...&$filter=...`` with values percent-encoded.
    """
    params = native.payload.get("params", {})
    query = "&".join(f"{key}={quote(str(value), safe=',()$')}" for key, value in params.items())
    return f"{native.payload.get('resource', 'users')}?{query}"
