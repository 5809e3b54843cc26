"""Compile queries into LDAP search filters for the on-premise directory."""

from __future__ import annotations

from datetime import UTC, datetime

from reportquery.catalog.types import FieldDescriptor, Operator
from reportquery.compilers.base import BaseCompiler, CompileContext, NativeQuery, PostFetchPlan
from reportquery.query.binding import BoundFilter
from reportquery.services.errors import CompileError
from reportquery.sources import SourceKind

USER_FILTER = "(&(objectClass=user)(objectCategory=person))"
BIT_AND_RULE = "1.2.840.113556.1.4.803"
FILETIME_EPOCH_OFFSET = 116_444_736_000_000_000
GENERALIZED_TIME_ATTRIBUTES = frozenset(
    {"whencreated", "whenchanged", "createtimestamp", "modifytimestamp"}
)

_ESCAPES = {"\\": r"\5c", "*": r"\2a", "(": r"\28", ")": r"\29", "\x00": r"\00"}


def escape_filter_value(value: str) -> str:
    r"""
    Escape a value for use inside an LDAP filter (RFC 4515).

    Returns
    -------
    str
        Value with ``\ * ( ) NUL`` replaced by their ``\XX`` forms.
    """
    return "".join(_ESCAPES.get(char, char) for char in value)


def datetime_to_filetime(moment: datetime) -> int:
    """
    Convert an instant to Windows FileTime (100ns intervals since 1601-01-01 UTC).

    Returns
    -------
    int
        FileTime value.
    """
    utc = moment.astimezone(UTC) if moment.tzinfo else moment.replace(tzinfo=UTC)
    epoch = datetime(1970, 1, 1, tzinfo=UTC)
    delta = utc - epoch
    ticks = (delta.days * 86_400 + delta.seconds) * 10_000_000 + delta.microseconds * 10
    return ticks + FILETIME_EPOCH_OFFSET


def datetime_to_generalized_time(moment: datetime) -> str:
    """
    Render an instant as LDAP GeneralizedTime.

    Returns
    -------
    str
        ``YYYYMMDDHHMMSS.0Z`` string.
    """
    utc = moment.astimezone(UTC) if moment.tzinfo else moment.replace(tzinfo=UTC)
    return utc.strftime("%Y%m%d%H%M%S") + ".0Z"


def _encode(descriptor: FieldDescriptor, value: object) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        if descriptor.native_name.lower() in GENERALIZED_TIME_ATTRIBUTES:
            return datetime_to_generalized_time(value)
        return str(datetime_to_filetime(value))
    return escape_filter_value(str(value))


def _negate(component: str) -> str:
    return f"(!{component})"


def _bit_flag_component(bound: BoundFilter) -> str:
    descriptor = bound.descriptor
    flag = descriptor.bit_flag
    if flag is None:
        message = f"{descriptor.name} has no bit flag"
        raise CompileError(message, source=SourceKind.DIRECTORY.value, field_name=descriptor.name)
    attr = descriptor.native_name
    if bound.operator is Operator.EXISTS:
        return f"({attr}=*)"
    if bound.operator is Operator.NOT_EXISTS:
        return _negate(f"({attr}=*)")
    wanted = bool(bound.value)
    if bound.operator is Operator.NOT_EQUALS:
        wanted = not wanted
    bit_set = wanted != flag.inverted
    rule = f"({attr}:{BIT_AND_RULE}:={flag.mask})"
    return rule if bit_set else _negate(rule)


def build_filter_component(bound: BoundFilter) -> str:  # noqa: C901, PLR0911, PLR0912
    """
    Render one bound filter as an LDAP filter component.

    Parameters
    ----------
    bound:
        Filter with a typed value.

    Returns
    -------
    str
        Parenthesized LDAP filter component.

    Raises
    ------
    CompileError
        If the operator has no LDAP rendering.
    """
    descriptor = bound.descriptor
    if descriptor.bit_flag is not None:
        return _bit_flag_component(bound)
    attr = descriptor.native_name
    op = bound.operator
    present = f"({attr}=*)"

    if op in (Operator.EXISTS, Operator.IS_NOT_EMPTY):
        return present
    if op in (Operator.NOT_EXISTS, Operator.IS_EMPTY):
        return _negate(present)
    if op is Operator.OLDER_THAN and bound.cutoff is not None:
        return f"({attr}<={_encode(descriptor, bound.cutoff)})"
    if op is Operator.NEWER_THAN and bound.cutoff is not None:
        return f"({attr}>={_encode(descriptor, bound.cutoff)})"
    if op is Operator.IN:
        parts = "".join(f"({attr}={_encode(descriptor, item)})" for item in bound.value)
        return f"(|{parts})"

    value = bound.value
    if isinstance(value, str) and value == "":
        # LDAP cannot store empty strings; equality with "" means "not set".
        if op is Operator.EQUALS:
            return _negate(present)
        if op is Operator.NOT_EQUALS:
            return present
    encoded = _encode(descriptor, value)
    if op is Operator.EQUALS:
        return f"({attr}={encoded})"
    if op is Operator.NOT_EQUALS:
        return _negate(f"({attr}={encoded})")
    if op is Operator.CONTAINS:
        return f"({attr}=*{encoded}*)"
    if op is Operator.NOT_CONTAINS:
        return _negate(f"({attr}=*{encoded}*)")
    if op is Operator.STARTS_WITH:
        return f"({attr}={encoded}*)"
    if op is Operator.ENDS_WITH:
        return f"({attr}=*{encoded})"
    if op is Operator.GREATER_OR_EQUAL:
        return f"({attr}>={encoded})"
    if op is Operator.LESS_OR_EQUAL:
        return f"({attr}<={encoded})"
    if op is Operator.GREATER_THAN:
        return f"(&({attr}>={encoded}){_negate(f'({attr}={encoded})')})"
    if op is Operator.LESS_THAN:
        return f"(&({attr}<={encoded}){_negate(f'({attr}={encoded})')})"
    message = f"Operator {op.value} has no LDAP rendering"
    raise CompileError(message, source=SourceKind.DIRECTORY.value, field_name=descriptor.name)


def build_complex_filter(components: list[str], base: str = USER_FILTER) -> str:
    """
    AND the object-class base filter with filter components.

    Returns
    -------
    str
        Complete LDAP filter.
    """
    if not components:
        return base
    inner = base[2:-1] if base.startswith("(&") else base
    return f"(&{inner}{''.join(components)})"


class DirectoryCompiler(BaseCompiler):
    """
    LDAP compiler.

    Filters are rendered natively. The directory has no server-side sort or
    grouping in this engine, so ``orderBy``/``groupBy`` become post-fetch
    operations and the whole eligible set is fetched before paging.
    """

    source = SourceKind.DIRECTORY

    def _render(self, context: CompileContext) -> NativeQuery:
        components = [build_filter_component(bound) for bound in context.filters]
        definition = context.definition
        post_fetch = PostFetchPlan(order_by=definition.order_by, group_by=definition.group_by)
        fields = self.materialized_fields(context, post_fetch)
        attributes = sorted({d.native_name for d in fields}, key=str.lower)
        payload = {
            "filter": build_complex_filter(components),
            "attributes": attributes,
            "scope": "subtree",
        }
        return NativeQuery(
            source=self.source,
            payload=payload,
            selected_fields=definition.selected_fields,
            fields=fields,
            pagination=definition.pagination,
            post_fetch=post_fetch,
            native_pagination=post_fetch.is_empty,
            catalog_version=context.catalog.version,
        )

