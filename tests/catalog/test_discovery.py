"""Schema probe merging and attribute type inference."""

from __future__ import annotations

import pytest

from reportquery.catalog.discovery import (
    build_catalog_fields,
    camel_case,
    categorize_field,
    display_name_for,
    infer_semantic_type,
    is_sensitive_field,
)
from reportquery.catalog.standard_fields import MAILBOX_REPORT, ONEDRIVE_REPORT, standard_fields
from reportquery.catalog.types import FieldCategory, SemanticType
from reportquery.connectors.base import AttributeInfo, SchemaProbe
from reportquery.services.errors import CatalogErrorKind
from reportquery.sources import SourceKind
from tests._helpers.expect import expect_equal, expect_in, expect_length, expect_true


@pytest.mark.parametrize(
    ("attribute", "expected"),
    [
        (AttributeInfo("pwdLastSet", syntax="2.5.5.16"), SemanticType.DATETIME),
        (AttributeInfo("badPwdCount", syntax="2.5.5.9"), SemanticType.INTEGER),
        (AttributeInfo("member", syntax="2.5.5.1", multi_valued=True), SemanticType.ARRAY),
        (AttributeInfo("accountEnabled", syntax="Edm.Boolean"), SemanticType.BOOLEAN),
        (AttributeInfo("manager", syntax="microsoft.graph.directoryObject"), SemanticType.REFERENCE),
        (AttributeInfo("otherMails", syntax="Collection(Edm.String)"), SemanticType.ARRAY),
        (AttributeInfo("hireDate", samples=("2024-01-02T00:00:00Z",)), SemanticType.DATETIME),
        (AttributeInfo("isContractor", samples=("True", "false")), SemanticType.BOOLEAN),
        (AttributeInfo("extensionAttribute1"), SemanticType.STRING),
        (AttributeInfo("Storage Used (Byte)", samples=("1024",)), SemanticType.INTEGER),
    ],
)
def test_infer_semantic_type(attribute: AttributeInfo, expected: SemanticType) -> None:
    """Syntax metadata wins, then samples, then the attribute name."""
    expect_equal(infer_semantic_type(attribute), expected, label=attribute.name)


def test_naming_helpers() -> None:
    """Report headers become camelCase names and attributes get readable labels."""
    expect_equal(camel_case("Storage Used (Byte)"), "storageUsedByte")
    expect_equal(camel_case("Last Activity Date"), "lastActivityDate")
    expect_equal(display_name_for("extensionAttribute1"), "Extension Attribute1")
    expect_equal(display_name_for("cost_center"), "Cost Center")


def test_categorize_and_flag_sensitive_fields() -> None:
    """Keywords decide category and sensitivity."""
    expect_equal(categorize_field("pwdLastSet"), FieldCategory.SECURITY)
    expect_equal(categorize_field("whenCreated"), FieldCategory.AUDIT)
    expect_equal(categorize_field("proxyAddresses"), FieldCategory.CONTACT)
    expect_equal(categorize_field("extensionAttribute1"), FieldCategory.OTHER)
    expect_true(is_sensitive_field("employeeNumber"), message="employee number is sensitive")
    expect_true(not is_sensitive_field("department"), message="department is not sensitive")


def test_directory_probe_appends_unknown_attributes_only() -> None:
    """Standard fields lead; known, binary and skipped attributes are not duplicated."""
    probe = SchemaProbe(
        groups={
            "user": (
                AttributeInfo("sAMAccountName", syntax="2.5.5.12"),
                AttributeInfo("objectGUID", syntax="2.5.5.10"),
                AttributeInfo("thumbnail", syntax="2.5.5.10"),
                AttributeInfo("extensionAttribute1", syntax="2.5.5.12"),
            )
        }
    )
    fields, warnings = build_catalog_fields(SourceKind.DIRECTORY, probe)
    standard = standard_fields(SourceKind.DIRECTORY)
    expect_equal(fields[: len(standard)], standard)
    extra = fields[len(standard) :]
    expect_equal([field.name for field in extra], ["extensionAttribute1"])
    expect_equal(extra[0].display_name, "Extension Attribute1")
    expect_length(warnings, 0)


def test_failed_groups_become_partial_schema_warnings() -> None:
    """A group the backend refused to describe is reported, not fatal."""
    probe = SchemaProbe(groups={"user": ()}, failed_groups={"signInActivity": "403 Forbidden"})
    fields, warnings = build_catalog_fields(SourceKind.CLOUD_DIRECTORY, probe)
    expect_length(warnings, 1)
    expect_equal(warnings[0].kind, CatalogErrorKind.PARTIAL_SCHEMA)
    expect_equal(warnings[0].group, "signInActivity")
    expect_in("lastSignInDateTime", [field.name for field in fields])


def test_suite_headers_are_scoped_by_report() -> None:
    """The same header in two reports is known per dataset; new headers are added."""
    probe = SchemaProbe(
        groups={
            MAILBOX_REPORT: (
                AttributeInfo("User Principal Name"),
                AttributeInfo("Storage Used (Byte)", samples=("10",)),
                AttributeInfo("Deleted Date", samples=("2024-01-05",)),
            ),
            ONEDRIVE_REPORT: (AttributeInfo("Storage Used (Byte)", samples=("20",)),),
        }
    )
    fields, _ = build_catalog_fields(SourceKind.CLOUD_SUITE, probe)
    standard = standard_fields(SourceKind.CLOUD_SUITE)
    extra = fields[len(standard) :]
    expect_equal([field.name for field in extra], ["deletedDate"])
    expect_equal(extra[0].dataset, MAILBOX_REPORT)
    expect_equal(extra[0].native_name, "Deleted Date")
    expect_equal(extra[0].semantic_type, SemanticType.DATETIME)
