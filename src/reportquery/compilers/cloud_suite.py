"""Compile queries into a usage-report download plus an in-memory SQL statement."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from reportquery.catalog.standard_fields import ACTIVE_USERS_REPORT
from reportquery.catalog.types import FieldDescriptor, Operator, SemanticType
from reportquery.compilers.base import BaseCompiler, CompileContext, NativeQuery, PostFetchPlan
from reportquery.query.binding import BoundFilter
from reportquery.services.errors import CompileError
from reportquery.sources import SourceKind

REPORT_TABLE = "report_rows"
ARRAY_SEPARATOR = "+"
_TRUE_SQL = "('true', 'yes', '1')"


def quote_identifier(name: str) -> str:
    """
    Quote a column name for DuckDB.

    Returns
    -------
    str
        Double-quoted identifier with embedded quotes doubled.
    """
    return '"' + name.replace('"', '""') + '"'


def _timestamp_param(moment: datetime) -> str:
    utc = moment.astimezone(UTC) if moment.tzinfo else moment
    return utc.replace(tzinfo=None).isoformat(sep=" ")


def _column(descriptor: FieldDescriptor) -> str:
    column = quote_identifier(descriptor.native_name)
    if descriptor.semantic_type is SemanticType.INTEGER:
        return f"TRY_CAST({column} AS BIGINT)"
    if descriptor.semantic_type is SemanticType.DATETIME:
        return f"TRY_CAST({column} AS TIMESTAMP)"
    if descriptor.semantic_type is SemanticType.BOOLEAN:
        return f"(lower(trim({column})) IN {_TRUE_SQL})"
    return column


def _param(descriptor: FieldDescriptor, value: Any) -> Any:
    if isinstance(value, datetime):
        return _timestamp_param(value)
    if descriptor.semantic_type in (SemanticType.STRING, SemanticType.ARRAY, SemanticType.REFERENCE):
        return str(value).lower()
    return value


def _typed_placeholder(descriptor: FieldDescriptor) -> str:
    if descriptor.semantic_type is SemanticType.DATETIME:
        return "CAST(? AS TIMESTAMP)"
    return "?"


def render_sql_condition(bound: BoundFilter) -> tuple[str, list[Any]]:  # noqa: C901, PLR0911
    """
    Render a bound filter as a DuckDB boolean expression with positional parameters.

    Parameters
    ----------
    bound:
        Filter with a typed value.

    Returns
    -------
    tuple[str, list[Any]]
        SQL expression and its parameters.

    Raises
    ------
    CompileError
        If the operator has no SQL rendering for the field type.
    """
    descriptor = bound.descriptor
    raw_column = quote_identifier(descriptor.native_name)
    column = _column(descriptor)
    op = bound.operator
    textual = descriptor.semantic_type in (
        SemanticType.STRING,
        SemanticType.ARRAY,
        SemanticType.REFERENCE,
    )
    placeholder = _typed_placeholder(descriptor)

    if op in (Operator.EXISTS, Operator.IS_NOT_EMPTY):
        return f"({raw_column} IS NOT NULL AND trim({raw_column}) <> '')", []
    if op in (Operator.NOT_EXISTS, Operator.IS_EMPTY):
        return f"({raw_column} IS NULL OR trim({raw_column}) = '')", []
    if op is Operator.OLDER_THAN and bound.cutoff is not None:
        return f"{column} <= CAST(? AS TIMESTAMP)", [_timestamp_param(bound.cutoff)]
    if op is Operator.NEWER_THAN and bound.cutoff is not None:
        return f"{column} >= CAST(? AS TIMESTAMP)", [_timestamp_param(bound.cutoff)]
    if op is Operator.IN:
        marks = ", ".join(placeholder for _ in bound.value)
        params = [_param(descriptor, item) for item in bound.value]
        target = f"lower({raw_column})" if textual else column
        return f"{target} IN ({marks})", params

    value = _param(descriptor, bound.value)
    if descriptor.semantic_type is SemanticType.ARRAY:
        items = f"string_split(lower({raw_column}), '{ARRAY_SEPARATOR}')"
        if op is Operator.EQUALS:
            return f"list_contains({items}, ?)", [value]
        if op is Operator.NOT_EQUALS:
            return f"({raw_column} IS NULL OR NOT list_contains({items}, ?))", [value]
    if textual:
        lowered = f"lower({raw_column})"
        if op is Operator.EQUALS:
            return f"{lowered} = ?", [value]
        if op is Operator.NOT_EQUALS:
            return f"({raw_column} IS NULL OR {lowered} <> ?)", [value]
        if op is Operator.CONTAINS:
            return f"contains({lowered}, ?)", [value]
        if op is Operator.NOT_CONTAINS:
            return f"({raw_column} IS NULL OR NOT contains({lowered}, ?))", [value]
        if op is Operator.STARTS_WITH:
            return f"prefix({lowered}, ?)", [value]
        if op is Operator.ENDS_WITH:
            return f"suffix({lowered}, ?)", [value]
    symbols = {
        Operator.EQUALS: "=",
        Operator.NOT_EQUALS: "<>",
        Operator.GREATER_THAN: ">",
        Operator.LESS_THAN: "<",
        Operator.GREATER_OR_EQUAL: ">=",
        Operator.LESS_OR_EQUAL: "<=",
    }
    symbol = symbols.get(op)
    if symbol is None:
        message = f"Operator {op.value} has no SQL rendering for {descriptor.semantic_type.value}"
        raise CompileError(message, source=SourceKind.CLOUD_SUITE.value, field_name=descriptor.name)
    return f"{column} {symbol} {placeholder}", [value]


class CloudSuiteCompiler(BaseCompiler):
    """
    Usage report compiler.

    The report API only returns whole CSV reports, so the compiler picks the
    report that owns the referenced fields and emits a parameterized DuckDB
    statement evaluated over the downloaded rows. Grouping is a post-fetch
    operation; ordering is native unless grouping is requested.
    """

    source = SourceKind.CLOUD_SUITE

    def __init__(self, *, period: str = "D30", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.period = period

    def _report(self, context: CompileContext) -> str:
        referenced = [*context.selected, *(b.descriptor for b in context.filters)]
        for descriptor in (context.order_by, context.group_by):
            if descriptor is not None:
                referenced.append(descriptor)
        datasets = sorted({d.dataset for d in referenced if d.dataset})
        if len(datasets) > 1:
            message = "Fields from different usage reports cannot be combined: " + ", ".join(
                datasets
            )
            raise CompileError(message, source=self.source.value)
        return datasets[0] if datasets else ACTIVE_USERS_REPORT

    def _render(self, context: CompileContext) -> NativeQuery:
        definition = context.definition
        report = self._report(context)
        native_order = definition.group_by is None and context.order_by is not None
        post_fetch = PostFetchPlan(
            order_by=None if native_order else definition.order_by,
            group_by=definition.group_by,
        )
        fields = self.materialized_fields(context, post_fetch)
        columns = list(dict.fromkeys(quote_identifier(d.native_name) for d in fields))

        conditions: list[str] = []
        params: list[Any] = []
        for bound in context.filters:
            condition, condition_params = render_sql_condition(bound)
            conditions.append(condition)
            params.extend(condition_params)

        sql = f"SELECT {', '.join(columns)} FROM {REPORT_TABLE}"  # noqa: S608 - identifiers quoted
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        if native_order and context.order_by is not None and definition.order_by is not None:
            direction = "DESC" if definition.order_by.descending else "ASC"
            sql += f" ORDER BY {_column(context.order_by)} {direction} NULLS LAST"

        payload = {
            "report": report,
            "period": self.period,
            "endpoint": f"reports/{report}(period='{self.period}')",
            "sql": sql,
            "params": params,
        }
        return NativeQuery(
            source=self.source,
            payload=payload,
            selected_fields=definition.selected_fields,
            fields=fields,
            pagination=definition.pagination,
            post_fetch=post_fetch,
            native_pagination=False,
            catalog_version=context.catalog.version,
        )
