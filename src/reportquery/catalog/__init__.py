"""Field catalog: semantic types, standard fields, discovery and versioned snapshots."""

from __future__ import annotations

from reportquery.catalog.standard_fields import standard_catalog, standard_fields
from reportquery.catalog.types import (
    OPERATORS_BY_TYPE,
    CatalogWarning,
    FieldCatalog,
    FieldCategory,
    FieldDescriptor,
    Operator,
    SemanticType,
    parse_operator,
)

__all__ = [
    "OPERATORS_BY_TYPE",
    "CatalogWarning",
    "FieldCatalog",
    "FieldCategory",
    "FieldDescriptor",
    "Operator",
    "SemanticType",
    "parse_operator",
    "standard_catalog",
    "standard_fields",
]
