"""Native query representation and the shared compiler skeleton."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Protocol

from reportquery.catalog.types import FieldCatalog, FieldDescriptor
from reportquery.query.binding import BoundFilter, bind_filters, start_of_day
from reportquery.query.model import OrderBy, Pagination, QueryDefinition
from reportquery.services.errors import CompileError
from reportquery.sources import SourceKind


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CompilerWarning:
    """Note carried from compilation through to the execution result."""

    code: str
    message: str
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize the warning.

        Returns
        -------
        dict[str, Any]
            Plain mapping.
        """
        return {"code": self.code, "message": self.message, "field": self.field}


@dataclass(frozen=True)
class PostFetchPlan:
    """Operations applied in memory after rows are fetched and normalized."""

    filters: tuple[BoundFilter, ...] = ()
    order_by: OrderBy | None = None
    group_by: str | None = None

    @property
    def is_empty(self) -> bool:
        """True when the backend handles everything natively."""
        return not self.filters and self.order_by is None and self.group_by is None


def _canonical_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class NativeQuery:
    """
    Backend-specific compiled form of a QueryDefinition.

    ``payload`` is the structure the connector executes (LDAP filter and
    attributes, Graph query parameters, report endpoint plus SQL).
    ``fields`` lists every field the rows must carry, including those only
    needed by post-fetch operations; ``selected_fields`` is the output
    projection.
    """

    source: SourceKind
    payload: Mapping[str, Any]
    selected_fields: tuple[str, ...]
    fields: tuple[FieldDescriptor, ...]
    pagination: Pagination
    post_fetch: PostFetchPlan = field(default_factory=PostFetchPlan)
    native_pagination: bool = False
    warnings: tuple[CompilerWarning, ...] = ()
    catalog_version: int = 0

    def canonical(self) -> str:
        """
        Return a stable JSON rendering used for fingerprints and equality checks.

        Returns
        -------
        str
            Compact JSON with sorted keys.
        """
        document = {
            "source": self.source.value,
            "payload": _canonical_value(self.payload),
            "select": list(self.selected_fields),
            "fields": [d.name for d in self.fields],
            "page": [self.pagination.page, self.pagination.page_size],
            "native_pagination": self.native_pagination,
            "post_fetch": {
                "filters": [
                    [
                        f.descriptor.name,
                        f.operator.value,
                        _canonical_value(f.value),
                        _canonical_value(f.cutoff),
                    ]
                    for f in self.post_fetch.filters
                ],
                "order_by": (
                    [self.post_fetch.order_by.field, self.post_fetch.order_by.direction.value]
                    if self.post_fetch.order_by
                    else None
                ),
                "group_by": self.post_fetch.group_by,
            },
        }
        return json.dumps(document, sort_keys=True, separators=(",", ":"))

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for API and CLI output.

        Returns
        -------
        dict[str, Any]
            JSON-friendly representation including warnings.
        """
        return {
            "source": self.source.value,
            "payload": _canonical_value(self.payload),
            "selectedFields": list(self.selected_fields),
            "nativePagination": self.native_pagination,
            "postFetch": {
                "filters": [f.descriptor.name for f in self.post_fetch.filters],
                "orderBy": self.post_fetch.order_by.field if self.post_fetch.order_by else None,
                "groupBy": self.post_fetch.group_by,
            },
            "warnings": [w.to_dict() for w in self.warnings],
            "catalogVersion": self.catalog_version,
        }


class SourceCompiler(Protocol):
    """Pure translation of a validated definition into a backend's native query."""

    source: SourceKind

    def compile(self, definition: QueryDefinition, catalog: FieldCatalog) -> NativeQuery:
        """Return the native query or raise CompileError."""
        ...


@dataclass(frozen=True)
class CompileContext:
    """Resolved inputs shared by every compiler."""

    definition: QueryDefinition
    catalog: FieldCatalog
    selected: tuple[FieldDescriptor, ...]
    filters: tuple[BoundFilter, ...]
    order_by: FieldDescriptor | None
    group_by: FieldDescriptor | None


class BaseCompiler:
    """
    Resolve descriptors and bind filters; subclasses render the native form.

    Relative date operators are bound against the start of the current UTC
    day so that a definition compiles to the same native query all day.
    """

    source: SourceKind

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    def compile(self, definition: QueryDefinition, catalog: FieldCatalog) -> NativeQuery:
        """
        Compile a validated definition.

        Parameters
        ----------
        definition:
            Definition produced by the validator for this source.
        catalog:
            Catalog version the definition was validated against.

        Returns
        -------
        NativeQuery
            Backend-specific query.

        Raises
        ------
        CompileError
            If the definition targets another source or references fields
            or values the catalog cannot bind.
        """
        if definition.source is not self.source:
            message = f"{type(self).__name__} cannot compile {definition.source.value} queries"
            raise CompileError(message, source=self.source.value)
        context = self._context(definition, catalog)
        return self._render(context)

    def _context(self, definition: QueryDefinition, catalog: FieldCatalog) -> CompileContext:
        selected = tuple(self._descriptor(catalog, name) for name in definition.selected_fields)
        try:
            filters = bind_filters(definition, catalog, now=start_of_day(self._clock()))
        except (LookupError, ValueError) as exc:
            raise CompileError(str(exc), source=self.source.value) from exc
        order_by = (
            self._descriptor(catalog, definition.order_by.field) if definition.order_by else None
        )
        group_by = (
            self._descriptor(catalog, definition.group_by) if definition.group_by else None
        )
        return CompileContext(definition, catalog, selected, filters, order_by, group_by)

    def _descriptor(self, catalog: FieldCatalog, name: str) -> FieldDescriptor:
        descriptor = catalog.get(name)
        if descriptor is None:
            message = f"Field {name!r} is not in catalog v{catalog.version}"
            raise CompileError(message, source=self.source.value, field_name=name)
        return descriptor

    def _render(self, context: CompileContext) -> NativeQuery:
        raise NotImplementedError

    @staticmethod
    def materialized_fields(
        context: CompileContext, post_fetch: PostFetchPlan
    ) -> tuple[FieldDescriptor, ...]:
        """
        Return selected fields plus fields needed only by post-fetch operations.

        Returns
        -------
        tuple[FieldDescriptor, ...]
            Unique descriptors, selected fields first.
        """
        needed: dict[str, FieldDescriptor] = {d.name: d for d in context.selected}
        for bound in post_fetch.filters:
            needed.setdefault(bound.descriptor.name, bound.descriptor)
        for descriptor in (context.order_by, context.group_by):
            if descriptor is not None:
                needed.setdefault(descriptor.name, descriptor)
        return tuple(needed.values())
