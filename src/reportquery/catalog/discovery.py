"""Turn backend schema probes into field descriptors."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import date, datetime

from reportquery.catalog.standard_fields import standard_fields
from reportquery.catalog.types import (
    CatalogWarning,
    FieldCategory,
    FieldDescriptor,
    SemanticType,
)
from reportquery.connectors.base import AttributeInfo, SchemaProbe
from reportquery.services.errors import CatalogErrorKind
from reportquery.sources import SourceKind

LDAP_SYNTAX_TYPES: dict[str, SemanticType] = {
    "2.5.5.1": SemanticType.REFERENCE,
    "2.5.5.2": SemanticType.STRING,
    "2.5.5.4": SemanticType.STRING,
    "2.5.5.5": SemanticType.STRING,
    "2.5.5.6": SemanticType.STRING,
    "2.5.5.8": SemanticType.BOOLEAN,
    "2.5.5.9": SemanticType.INTEGER,
    "2.5.5.11": SemanticType.DATETIME,
    "2.5.5.12": SemanticType.STRING,
    "2.5.5.16": SemanticType.INTEGER,
}
BINARY_LDAP_SYNTAXES = frozenset({"2.5.5.7", "2.5.5.10", "2.5.5.15", "2.5.5.17"})
SKIPPED_ATTRIBUTES = frozenset(
    {
        "objectguid",
        "objectsid",
        "ntsecuritydescriptor",
        "usercertificate",
        "thumbnailphoto",
        "jpegphoto",
        "msexchmailboxguid",
        "objectclass",
        "objectcategory",
        "instancetype",
        "usnchanged",
        "usncreated",
        "dscorepropagationdata",
    }
)

_EDM_TYPES: dict[str, SemanticType] = {
    "edm.boolean": SemanticType.BOOLEAN,
    "edm.int16": SemanticType.INTEGER,
    "edm.int32": SemanticType.INTEGER,
    "edm.int64": SemanticType.INTEGER,
    "edm.datetimeoffset": SemanticType.DATETIME,
    "edm.date": SemanticType.DATETIME,
    "edm.string": SemanticType.STRING,
    "edm.guid": SemanticType.STRING,
}

_DATE_NAME = re.compile(r"(time|date|logon|signin|created|changed|modified|expires|lastset)$", re.I)
_COUNT_NAME = re.compile(r"(count|bytes|quota|size|number)$", re.I)
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_GENERALIZED_TIME = re.compile(r"^\d{14}(\.\d+)?Z$")
_INTEGER_TEXT = re.compile(r"^-?\d+$")

_CATEGORY_KEYWORDS: tuple[tuple[FieldCategory, tuple[str, ...]], ...] = (
    (FieldCategory.SECURITY, ("password", "pwd", "lockout", "memberof", "license", "enabled",
                              "disabled", "accountcontrol", "badpw", "admincount")),
    (FieldCategory.AUDIT, ("created", "changed", "modified", "logon", "signin", "refresh")),
    (FieldCategory.USAGE, ("count", "storage", "quota", "activity", "bytes")),
    (FieldCategory.CONTACT, ("mail", "phone", "mobile", "fax", "proxy", "pager")),
    (FieldCategory.PERSONAL, ("given", "surname", "firstname", "lastname", "initials",
                              "birth")),
    (FieldCategory.ORGANIZATION, ("department", "title", "company", "manager", "employee",
                                  "division", "costcenter", "directreports")),
    (FieldCategory.LOCATION, ("office", "city", "street", "postal", "country", "location",
                              "state", "address")),
    (FieldCategory.IDENTITY, ("name", "account", "principal", "guid", "sid", "upn")),
)
_SENSITIVE_KEYWORDS = ("password", "pwd", "secret", "ssn", "socialsecurity", "birth",
                       "salary", "employeeid", "employeenumber", "homephone", "pin")


def categorize_field(name: str) -> FieldCategory:
    """
    Assign a display category from an attribute name.

    Returns
    -------
    FieldCategory
        First category whose keywords match, otherwise ``OTHER``.
    """
    lowered = name.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return FieldCategory.OTHER


def is_sensitive_field(name: str) -> bool:
    """
    Return whether an attribute name looks like personal or secret data.

    Returns
    -------
    bool
        True when the name matches a sensitive keyword.
    """
    lowered = name.lower()
    return any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS)


def display_name_for(name: str) -> str:
    """
    Turn ``camelCase`` or ``snake_case`` names into title case labels.

    Returns
    -------
    str
        Human-readable label.
    """
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", name.replace("_", " "))
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


def camel_case(header: str) -> str:
    """
    Convert a report column header into a camelCase field name.

    Returns
    -------
    str
        Field name, e.g. ``"Storage Used (Byte)"`` -> ``"storageUsedByte"``.
    """
    words = re.findall(r"[A-Za-z0-9]+", header)
    if not words:
        return header
    head, *rest = words
    return head.lower() + "".join(word[:1].upper() + word[1:].lower() for word in rest)


def _type_from_samples(name: str, samples: Iterable[object]) -> SemanticType | None:
    values = [s for s in samples if s not in (None, "")]
    if not values:
        return None
    if all(isinstance(v, bool) for v in values):
        return SemanticType.BOOLEAN
    if any(isinstance(v, (list, tuple)) for v in values):
        return SemanticType.ARRAY
    if all(isinstance(v, (datetime, date)) for v in values):
        return SemanticType.DATETIME
    if all(isinstance(v, int) for v in values):
        return SemanticType.DATETIME if _DATE_NAME.search(name) else SemanticType.INTEGER
    texts = [str(v) for v in values]
    if all(t.lower() in {"true", "false"} for t in texts):
        return SemanticType.BOOLEAN
    if all(_ISO_DATE.match(t) or _GENERALIZED_TIME.match(t) for t in texts):
        return SemanticType.DATETIME
    if all(_INTEGER_TEXT.match(t) for t in texts):
        return SemanticType.DATETIME if _DATE_NAME.search(name) else SemanticType.INTEGER
    return SemanticType.STRING


def infer_semantic_type(attribute: AttributeInfo) -> SemanticType:
    """
    Infer a semantic type from syntax metadata, sample values and the name.

    Parameters
    ----------
    attribute:
        Attribute reported by a schema probe.

    Returns
    -------
    SemanticType
        Best-effort semantic type.
    """
    syntax = (attribute.syntax or "").strip()
    if attribute.multi_valued:
        return SemanticType.ARRAY
    if syntax:
        lowered = syntax.lower()
        if lowered.startswith("collection("):
            return SemanticType.ARRAY
        if lowered in _EDM_TYPES:
            return _EDM_TYPES[lowered]
        if lowered.startswith("microsoft.graph."):
            return SemanticType.REFERENCE
        mapped = LDAP_SYNTAX_TYPES.get(syntax)
        if mapped is SemanticType.INTEGER and _DATE_NAME.search(attribute.name):
            # Large-integer FileTime attributes (pwdLastSet, lastLogonTimestamp).
            return SemanticType.DATETIME
        if mapped is not None:
            return mapped
    sampled = _type_from_samples(attribute.name, attribute.samples)
    if sampled is not None:
        return sampled
    if _DATE_NAME.search(attribute.name):
        return SemanticType.DATETIME
    if _COUNT_NAME.search(attribute.name):
        return SemanticType.INTEGER
    return SemanticType.STRING


def _skip(attribute: AttributeInfo) -> bool:
    if attribute.name.lower() in SKIPPED_ATTRIBUTES:
        return True
    return (attribute.syntax or "") in BINARY_LDAP_SYNTAXES


def _discovered_descriptor(
    source: SourceKind, group: str, attribute: AttributeInfo
) -> FieldDescriptor:
    semantic_type = infer_semantic_type(attribute)
    if source is SourceKind.CLOUD_SUITE:
        name = camel_case(attribute.name)
        display = attribute.name
        dataset = group
    else:
        name = attribute.name
        display = display_name_for(name)
        dataset = ""
    return FieldDescriptor(
        name=name,
        display_name=display,
        semantic_type=semantic_type,
        source=source,
        category=categorize_field(name),
        native_name=attribute.name,
        description=f"Discovered from {group}",
        sortable=semantic_type is not SemanticType.ARRAY,
        sensitive=is_sensitive_field(name),
        dataset=dataset,
    )


def build_catalog_fields(
    source: SourceKind, probe: SchemaProbe
) -> tuple[tuple[FieldDescriptor, ...], tuple[CatalogWarning, ...]]:
    """
    Merge standard fields with attributes discovered by a schema probe.

    Standard fields always come first and keep their curated metadata.
    Discovered attributes that are not already known (by name, alias or
    native name) are appended in probe order. Every group the backend
    refused to describe becomes a ``partial_schema`` warning.

    Parameters
    ----------
    source:
        Backend kind the probe came from.
    probe:
        Attribute groups reported by the connector.

    Returns
    -------
    tuple[tuple[FieldDescriptor, ...], tuple[CatalogWarning, ...]]
        Ordered descriptors and discovery warnings.
    """
    fields: list[FieldDescriptor] = list(standard_fields(source))
    known: set[str] = set()
    for descriptor in fields:
        known.add(descriptor.name.lower())
        known.update(alias.lower() for alias in descriptor.aliases)
        known.add(_native_key(source, descriptor.dataset, descriptor.native_name))

    for group in sorted(probe.groups):
        for attribute in probe.groups[group]:
            if _skip(attribute):
                continue
            native_key = _native_key(source, group, attribute.name)
            shared_key = _native_key(source, "", attribute.name)
            if native_key in known or shared_key in known:
                continue
            descriptor = _discovered_descriptor(source, group, attribute)
            if descriptor.name.lower() in known:
                continue
            fields.append(descriptor)
            known.add(descriptor.name.lower())
            known.add(native_key)

    warnings = tuple(
        CatalogWarning(
            kind=CatalogErrorKind.PARTIAL_SCHEMA,
            group=group,
            message=f"Attribute group {group!r} could not be read: {reason}",
        )
        for group, reason in sorted(probe.failed_groups.items())
    )
    return tuple(fields), warnings


def _native_key(source: SourceKind, dataset: str, native_name: str) -> str:
    if source is SourceKind.CLOUD_SUITE:
        return f"native:{dataset}:{native_name.lower()}"
    return f"native::{native_name.lower()}"
