"""Semantic types, operators and immutable field catalog snapshots."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from reportquery.services.errors import CatalogErrorKind
from reportquery.sources import SourceKind


class SemanticType(StrEnum):
    """Value types a catalog field can carry after normalization."""

    STRING = "string"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    ARRAY = "array"
    REFERENCE = "reference"


class Operator(StrEnum):
    """Filter operators of the source-agnostic query vocabulary."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    IN = "in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    OLDER_THAN = "older_than"
    NEWER_THAN = "newer_than"


class FieldCategory(StrEnum):
    """Display grouping for catalog fields."""

    IDENTITY = "identity"
    PERSONAL = "personal"
    CONTACT = "contact"
    ORGANIZATION = "organization"
    LOCATION = "location"
    AUDIT = "audit"
    SECURITY = "security"
    USAGE = "usage"
    OTHER = "other"


PRESENCE_OPERATORS: frozenset[Operator] = frozenset(
    {Operator.EXISTS, Operator.NOT_EXISTS, Operator.IS_EMPTY, Operator.IS_NOT_EMPTY}
)
RELATIVE_DATE_OPERATORS: frozenset[Operator] = frozenset({Operator.OLDER_THAN, Operator.NEWER_THAN})

_EQUALITY = (Operator.EQUALS, Operator.NOT_EQUALS)
_EXISTENCE = (Operator.EXISTS, Operator.NOT_EXISTS)
_EMPTINESS = (Operator.IS_EMPTY, Operator.IS_NOT_EMPTY)
_ORDERING = (
    Operator.GREATER_THAN,
    Operator.LESS_THAN,
    Operator.GREATER_OR_EQUAL,
    Operator.LESS_OR_EQUAL,
)

OPERATORS_BY_TYPE: dict[SemanticType, tuple[Operator, ...]] = {
    SemanticType.STRING: (
        *_EQUALITY,
        Operator.CONTAINS,
        Operator.NOT_CONTAINS,
        Operator.STARTS_WITH,
        Operator.ENDS_WITH,
        Operator.IN,
        *_EXISTENCE,
        *_EMPTINESS,
    ),
    SemanticType.INTEGER: (*_EQUALITY, *_ORDERING, Operator.IN, *_EXISTENCE),
    SemanticType.BOOLEAN: (*_EQUALITY, *_EXISTENCE),
    SemanticType.DATETIME: (
        *_EQUALITY,
        *_ORDERING,
        Operator.OLDER_THAN,
        Operator.NEWER_THAN,
        *_EXISTENCE,
    ),
    SemanticType.ARRAY: (
        *_EQUALITY,
        Operator.CONTAINS,
        Operator.NOT_CONTAINS,
        *_EXISTENCE,
        *_EMPTINESS,
    ),
    SemanticType.REFERENCE: (*_EQUALITY, Operator.STARTS_WITH, *_EXISTENCE),
}

_OPERATOR_ALIASES: dict[str, Operator] = {
    "eq": Operator.EQUALS,
    "ne": Operator.NOT_EQUALS,
    "notequals": Operator.NOT_EQUALS,
    "notcontains": Operator.NOT_CONTAINS,
    "startswith": Operator.STARTS_WITH,
    "endswith": Operator.ENDS_WITH,
    "gt": Operator.GREATER_THAN,
    "greaterthan": Operator.GREATER_THAN,
    "lt": Operator.LESS_THAN,
    "lessthan": Operator.LESS_THAN,
    "ge": Operator.GREATER_OR_EQUAL,
    "greaterorequal": Operator.GREATER_OR_EQUAL,
    "le": Operator.LESS_OR_EQUAL,
    "lessorequal": Operator.LESS_OR_EQUAL,
    "notexists": Operator.NOT_EXISTS,
    "isempty": Operator.IS_EMPTY,
    "isnotempty": Operator.IS_NOT_EMPTY,
    "olderthan": Operator.OLDER_THAN,
    "newerthan": Operator.NEWER_THAN,
}


def parse_operator(value: object) -> Operator | None:
    """
    Resolve snake_case, camelCase and short operator spellings.

    Returns
    -------
    Operator | None
        Matching operator, or ``None`` when the name is unknown.
    """
    if isinstance(value, Operator):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    try:
        return Operator(raw)
    except ValueError:
        pass
    squashed = raw.replace("_", "").replace("-", "").lower()
    for op in Operator:
        if op.value.replace("_", "") == squashed:
            return op
    return _OPERATOR_ALIASES.get(squashed)


@dataclass(frozen=True)
class BitFlag:
    """Boolean derived from a bit in an integer attribute (e.g. userAccountControl)."""

    mask: int
    inverted: bool = False

    def evaluate(self, raw: int) -> bool:
        """
        Return the boolean value encoded by ``raw``.

        Returns
        -------
        bool
            True when the flag bit is set (or unset, for inverted flags).
        """
        is_set = bool(raw & self.mask)
        return not is_set if self.inverted else is_set


@dataclass(frozen=True)
class FieldDescriptor:
    """Immutable description of one queryable field."""

    name: str
    display_name: str
    semantic_type: SemanticType
    source: SourceKind
    category: FieldCategory = FieldCategory.OTHER
    native_name: str = ""
    aliases: tuple[str, ...] = ()
    description: str = ""
    sortable: bool = True
    sensitive: bool = False
    bit_flag: BitFlag | None = None
    dataset: str = ""

    def __post_init__(self) -> None:
        if not self.native_name:
            object.__setattr__(self, "native_name", self.name)

    @property
    def allowed_operators(self) -> tuple[Operator, ...]:
        """Operators valid for this field's semantic type."""
        return OPERATORS_BY_TYPE[self.semantic_type]

    def allows(self, operator: Operator) -> bool:
        """
        Return whether ``operator`` may be applied to this field.

        Returns
        -------
        bool
            True when the operator is allowed for the semantic type.
        """
        return operator in OPERATORS_BY_TYPE[self.semantic_type]

    def to_dict(self) -> dict[str, object]:
        """
        Serialize the descriptor for API and CLI output.

        Returns
        -------
        dict[str, object]
            JSON-friendly representation.
        """
        return {
            "name": self.name,
            "displayName": self.display_name,
            "semanticType": self.semantic_type.value,
            "source": self.source.value,
            "category": self.category.value,
            "nativeName": self.native_name,
            "aliases": list(self.aliases),
            "description": self.description,
            "sortable": self.sortable,
            "sensitive": self.sensitive,
            "dataset": self.dataset,
            "allowedOperators": [op.value for op in self.allowed_operators],
        }


@dataclass(frozen=True)
class CatalogWarning:
    """Non-fatal discovery problem, e.g. an attribute group that could not be read."""

    kind: CatalogErrorKind
    group: str
    message: str

    def to_dict(self) -> dict[str, str]:
        """
        Serialize the warning.

        Returns
        -------
        dict[str, str]
            Plain mapping with kind, group and message.
        """
        return {"kind": self.kind.value, "group": self.group, "message": self.message}


@dataclass(frozen=True)
class FieldCatalog:
    """
    Versioned, immutable snapshot of the fields available for one scope.

    A catalog is never edited; rediscovery produces a new instance with a
    higher version that supersedes this one.
    """

    source: SourceKind
    credential_id: str
    version: int
    fields: tuple[FieldDescriptor, ...]
    discovered_at: datetime
    warnings: tuple[CatalogWarning, ...] = ()
    _index: Mapping[str, FieldDescriptor] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        index: dict[str, FieldDescriptor] = {}
        # Canonical names win over aliases, aliases over native names.
        for descriptor in self.fields:
            index.setdefault(descriptor.native_name.lower(), descriptor)
        for descriptor in self.fields:
            for alias in descriptor.aliases:
                index[alias.lower()] = descriptor
        for descriptor in self.fields:
            index[descriptor.name.lower()] = descriptor
        object.__setattr__(self, "_index", index)

    @property
    def is_partial(self) -> bool:
        """True when some attribute groups could not be read during discovery."""
        return bool(self.warnings)

    def get(self, name: str) -> FieldDescriptor | None:
        """
        Resolve a field by name, alias or native attribute name (case-insensitive).

        Returns
        -------
        FieldDescriptor | None
            Matching descriptor or ``None`` when the field is unknown.
        """
        return self._index.get(name.strip().lower())

    def names(self) -> list[str]:
        """
        Return canonical field names in catalog order.

        Returns
        -------
        list[str]
            Field names.
        """
        return [descriptor.name for descriptor in self.fields]

    def by_category(self) -> dict[FieldCategory, list[FieldDescriptor]]:
        """
        Group fields by display category.

        Returns
        -------
        dict[FieldCategory, list[FieldDescriptor]]
            Fields keyed by category, preserving catalog order.
        """
        grouped: dict[FieldCategory, list[FieldDescriptor]] = {}
        for descriptor in self.fields:
            grouped.setdefault(descriptor.category, []).append(descriptor)
        return grouped

    def superseded_by(
        self,
        fields: Iterable[FieldDescriptor],
        *,
        discovered_at: datetime,
        warnings: Iterable[CatalogWarning] = (),
    ) -> FieldCatalog:
        """
        Build the next catalog version for the same scope.

        Returns
        -------
        FieldCatalog
            New catalog with ``version + 1``.
        """
        return FieldCatalog(
            source=self.source,
            credential_id=self.credential_id,
            version=self.version + 1,
            fields=tuple(fields),
            discovered_at=discovered_at,
            warnings=tuple(warnings),
        )

    def to_dict(self) -> dict[str, object]:
        """
        Serialize the catalog for API and CLI output.

        Returns
        -------
        dict[str, object]
            JSON-friendly representation including warnings.
        """
        return {
            "source": self.source.value,
            "credentialId": self.credential_id,
            "version": self.version,
            "discoveredAt": self.discovered_at.isoformat(),
            "partial": self.is_partial,
            "warnings": [w.to_dict() for w in self.warnings],
            "fields": [d.to_dict() for d in self.fields],
        }
