"""Validate raw query requests against a field catalog, collecting every problem."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from reportquery.catalog.types import FieldCatalog, FieldDescriptor, parse_operator
from reportquery.query.binding import bind_clause, coerce_filter_value, is_placeholder_value
from reportquery.query.model import (
    FilterClause,
    OrderBy,
    Pagination,
    QueryDefinition,
    SortDirection,
)
from reportquery.query.parameters import (
    check_parameters,
    parse_parameter_definitions,
    placeholders_in,
)
from reportquery.services.errors import QueryValidationError, Violation
from reportquery.sources import SourceKind, parse_source

LOG = logging.getLogger("reportquery.query.validator")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ValidationLimits:
    """Bounds enforced on every query."""

    enabled_sources: frozenset[SourceKind] = frozenset(SourceKind)
    default_page_size: int = 100
    max_page_size: int = 1000
    result_ceiling: int = 50_000

    @classmethod
    def from_config(cls, cfg: object) -> ValidationLimits:
        """
        Build limits from a configuration object.

        Parameters
        ----------
        cfg:
            Object exposing ``enabled_sources``, ``default_page_size``,
            ``max_page_size`` and ``result_ceiling`` attributes.

        Returns
        -------
        ValidationLimits
            Limits derived from the configuration.
        """
        sources = getattr(cfg, "enabled_sources", list(SourceKind))
        return cls(
            enabled_sources=frozenset(sources),
            default_page_size=int(getattr(cfg, "default_page_size", cls.default_page_size)),
            max_page_size=int(getattr(cfg, "max_page_size", cls.max_page_size)),
            result_ceiling=int(getattr(cfg, "result_ceiling", cls.result_ceiling)),
        )


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of :meth:`QueryValidator.check`."""

    definition: QueryDefinition | None
    violations: tuple[Violation, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        """True when the request produced a definition."""
        return self.definition is not None and not self.violations


@dataclass
class _Draft:
    """Mutable accumulator used while walking a request."""

    violations: list[Violation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    referenced: list[FieldDescriptor] = field(default_factory=list)

    def add(self, code: str, path: str, message: str) -> None:
        self.violations.append(Violation(code, path, message))


class QueryValidator:
    """
    Turns raw query requests into :class:`QueryDefinition` objects.

    Checks run in a fixed order (source, fields, operators and values,
    grouping/ordering, pagination, parameters) and every violation is
    collected so callers can report all problems in one round trip.
    """

    def __init__(
        self,
        limits: ValidationLimits | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.limits = limits or ValidationLimits()
        self._clock = clock

    def validate(self, raw: Mapping[str, Any], catalog: FieldCatalog) -> QueryDefinition:
        """
        Validate a request and return the definition.

        Parameters
        ----------
        raw:
            Request payload (``source``, ``fields``, ``filters``, ``groupBy``,
            ``orderBy``, ``pagination``, ``parameters``, ``parameterDefinitions``).
        catalog:
            Catalog version active for the request's source and credential.

        Returns
        -------
        QueryDefinition
            Validated definition.

        Raises
        ------
        QueryValidationError
            Carrying every violation found.
        """
        report = self.check(raw, catalog)
        if report.definition is None:
            raise QueryValidationError(report.violations)
        return report.definition

    def check(self, raw: Mapping[str, Any], catalog: FieldCatalog) -> ValidationReport:
        """
        Validate a request without raising.

        Returns
        -------
        ValidationReport
            Definition (when valid), violations and warnings.
        """
        draft = _Draft()
        if not isinstance(raw, Mapping):
            draft.add("request_invalid", "", "Query request must be an object")
            return ValidationReport(None, tuple(draft.violations))

        source = self._check_source(raw, catalog, draft)
        selected = self._check_selected(raw, catalog, draft)
        filters, placeholder_clauses = self._check_filters(raw, catalog, draft)
        self._check_datasets(draft)
        group_by, order_by = self._check_grouping(raw, catalog, draft)
        pagination = self._check_pagination(raw.get("pagination"), draft)

        definitions, definition_problems = parse_parameter_definitions(
            raw.get("parameterDefinitions")
        )
        draft.violations.extend(definition_problems)
        supplied = raw.get("parameters") or {}
        if not isinstance(supplied, Mapping):
            draft.add("parameters_invalid", "parameters", "parameters must be an object")
            supplied = {}
        referenced: set[str] = set()
        for clause, _ in placeholder_clauses:
            referenced |= placeholders_in(clause.value)
        params = check_parameters(definitions, supplied, referenced)
        draft.violations.extend(params.violations)
        draft.warnings.extend(params.warnings)

        if draft.violations or source is None or pagination is None:
            LOG.debug("Query rejected with %d violations", len(draft.violations))
            return ValidationReport(None, tuple(draft.violations), tuple(draft.warnings))

        definition = QueryDefinition(
            source=source,
            selected_fields=tuple(selected),
            filters=tuple(filters),
            group_by=group_by,
            order_by=order_by,
            pagination=pagination,
            parameters=params.values,
            parameter_definitions=definitions,
        )
        now = self._clock()
        for clause, index in placeholder_clauses:
            descriptor = catalog.get(clause.field)
            if descriptor is None:
                continue
            try:
                bind_clause(clause, descriptor, params.values, definition, now=now)
            except ValueError as exc:
                draft.add("value_invalid", f"filters[{index}].value", str(exc))
        if draft.violations:
            return ValidationReport(None, tuple(draft.violations), tuple(draft.warnings))
        return ValidationReport(definition, (), tuple(draft.warnings))

    def _check_source(
        self, raw: Mapping[str, Any], catalog: FieldCatalog, draft: _Draft
    ) -> SourceKind | None:
        source = parse_source(raw.get("source"))
        if source is None:
            draft.add("source_unknown", "source", f"Unknown source: {raw.get('source')!r}")
            return None
        if source not in self.limits.enabled_sources:
            draft.add("source_disabled", "source", f"Source {source.value} is not enabled")
            return None
        if catalog.source is not source:
            draft.add(
                "catalog_mismatch",
                "source",
                f"Catalog describes {catalog.source.value}, not {source.value}",
            )
            return None
        return source

    def _resolve(
        self, catalog: FieldCatalog, name: Any, path: str, draft: _Draft
    ) -> FieldDescriptor | None:
        if not isinstance(name, str) or not name.strip():
            draft.add("field_invalid", path, "Field name must be a non-empty string")
            return None
        descriptor = catalog.get(name)
        if descriptor is None:
            draft.add("field_unknown", path, f"Unknown field: {name}")
            return None
        draft.referenced.append(descriptor)
        return descriptor

    def _check_selected(
        self, raw: Mapping[str, Any], catalog: FieldCatalog, draft: _Draft
    ) -> list[str]:
        names = raw.get("fields", raw.get("selectedFields"))
        if not isinstance(names, Sequence) or isinstance(names, str) or not names:
            draft.add("fields_empty", "fields", "At least one field must be selected")
            return []
        selected: list[str] = []
        for index, name in enumerate(names):
            descriptor = self._resolve(catalog, name, f"fields[{index}]", draft)
            if descriptor is None:
                continue
            if descriptor.name in selected:
                draft.add(
                    "field_duplicate", f"fields[{index}]", f"Field selected twice: {name}"
                )
                continue
            selected.append(descriptor.name)
        return selected

    def _check_filters(
        self, raw: Mapping[str, Any], catalog: FieldCatalog, draft: _Draft
    ) -> tuple[list[FilterClause], list[tuple[FilterClause, int]]]:
        items = raw.get("filters") or []
        if not isinstance(items, Sequence) or isinstance(items, str):
            draft.add("filters_invalid", "filters", "filters must be a list")
            return [], []
        clauses: list[FilterClause] = []
        placeholder_clauses: list[tuple[FilterClause, int]] = []
        for index, item in enumerate(items):
            path = f"filters[{index}]"
            if not isinstance(item, Mapping):
                draft.add("filter_invalid", path, "Filter must be an object")
                continue
            descriptor = self._resolve(catalog, item.get("field"), f"{path}.field", draft)
            operator = parse_operator(item.get("operator"))
            if operator is None:
                draft.add(
                    "operator_unknown",
                    f"{path}.operator",
                    f"Unknown operator: {item.get('operator')!r}",
                )
                continue
            if descriptor is None:
                continue
            if not descriptor.allows(operator):
                draft.add(
                    "operator_not_allowed",
                    f"{path}.operator",
                    f"Operator '{operator.value}' is not allowed for "
                    f"{descriptor.semantic_type.value} field '{descriptor.name}'",
                )
                continue
            value = item.get("value")
            if is_placeholder_value(value):
                clause = FilterClause(descriptor.name, operator, value)
                placeholder_clauses.append((clause, index))
                clauses.append(clause)
                continue
            try:
                coerced = coerce_filter_value(descriptor, operator, value)
            except ValueError as exc:
                draft.add("value_invalid", f"{path}.value", f"{descriptor.name}: {exc}")
                continue
            clauses.append(FilterClause(descriptor.name, operator, coerced))
        return clauses, placeholder_clauses

    def _check_datasets(self, draft: _Draft) -> None:
        datasets = sorted({d.dataset for d in draft.referenced if d.dataset})
        if len(datasets) > 1:
            draft.add(
                "field_dataset_conflict",
                "fields",
                "Fields come from different reports that cannot be combined: "
                + ", ".join(datasets),
            )

    def _check_grouping(
        self, raw: Mapping[str, Any], catalog: FieldCatalog, draft: _Draft
    ) -> tuple[str | None, OrderBy | None]:
        group_by: str | None = None
        raw_group = raw.get("groupBy")
        if raw_group is not None:
            descriptor = catalog.get(raw_group) if isinstance(raw_group, str) else None
            if descriptor is None:
                draft.add("group_by_unknown", "groupBy", f"Unknown groupBy field: {raw_group}")
            else:
                group_by = descriptor.name

        order_by: OrderBy | None = None
        raw_order = raw.get("orderBy")
        if raw_order is None:
            return group_by, None
        if isinstance(raw_order, str):
            order_field: Any = raw_order
            raw_direction: Any = raw.get("orderDirection", "asc")
        elif isinstance(raw_order, Mapping):
            order_field = raw_order.get("field")
            raw_direction = raw_order.get("direction", "asc")
        else:
            draft.add("order_by_invalid", "orderBy", "orderBy must be a field name or object")
            return group_by, None
        descriptor = catalog.get(order_field) if isinstance(order_field, str) else None
        if descriptor is None:
            draft.add("order_by_unknown", "orderBy.field", f"Unknown orderBy field: {order_field}")
            return group_by, None
        if not descriptor.sortable:
            draft.add(
                "order_by_not_sortable",
                "orderBy.field",
                f"Field '{descriptor.name}' cannot be used for ordering",
            )
            return group_by, None
        try:
            direction = SortDirection(str(raw_direction).lower())
        except ValueError:
            draft.add(
                "order_by_invalid", "orderBy.direction", f"Unknown direction: {raw_direction!r}"
            )
            return group_by, None
        order_by = OrderBy(descriptor.name, direction)
        return group_by, order_by

    def _check_pagination(self, raw: Any, draft: _Draft) -> Pagination | None:
        if raw is None:
            return Pagination(page=1, page_size=self.limits.default_page_size)
        if not isinstance(raw, Mapping):
            draft.add("pagination_invalid", "pagination", "pagination must be an object")
            return None
        page = raw.get("page", 1)
        page_size = raw.get("pageSize", raw.get("page_size", self.limits.default_page_size))
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            draft.add("pagination_invalid", "pagination.page", "page must be an integer >= 1")
            return None
        if (
            isinstance(page_size, bool)
            or not isinstance(page_size, int)
            or not 1 <= page_size <= self.limits.max_page_size
        ):
            draft.add(
                "pagination_invalid",
                "pagination.pageSize",
                f"pageSize must be between 1 and {self.limits.max_page_size}",
            )
            return None
        if page * page_size > self.limits.result_ceiling:
            draft.add(
                "pagination_invalid",
                "pagination",
                f"page * pageSize exceeds the result ceiling of {self.limits.result_ceiling}",
            )
            return None
        return Pagination(page=page, page_size=page_size)
