"""Well-known fields for each source, available before any discovery round trip."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from reportquery.catalog.types import (
    BitFlag,
    FieldCatalog,
    FieldCategory,
    FieldDescriptor,
    SemanticType,
)
from reportquery.sources import SourceKind

S = SemanticType
C = FieldCategory

UAC_ACCOUNT_DISABLED = 0x0002
UAC_LOCKOUT = 0x0010
UAC_PASSWORD_NOT_REQUIRED = 0x0020
UAC_DONT_EXPIRE_PASSWORD = 0x10000
UAC_SMARTCARD_REQUIRED = 0x40000

ACTIVE_USERS_REPORT = "getOffice365ActiveUserDetail"
MAILBOX_REPORT = "getMailboxUsageDetail"
EMAIL_ACTIVITY_REPORT = "getEmailActivityUserDetail"
ONEDRIVE_REPORT = "getOneDriveUsageAccountDetail"
TEAMS_REPORT = "getTeamsUserActivityUserDetail"


@dataclass(frozen=True)
class _Spec:
    name: str
    display: str
    semantic_type: SemanticType
    category: FieldCategory
    native: str = ""
    aliases: tuple[str, ...] = ()
    description: str = ""
    sensitive: bool = False
    bit_flag: BitFlag | None = None
    dataset: str = ""


_DIRECTORY: tuple[_Spec, ...] = (
    _Spec("accountName", "Account Name", S.STRING, C.IDENTITY, "sAMAccountName",
          ("username", "samAccountName"), "Pre-Windows 2000 logon name"),
    _Spec("userPrincipalName", "User Principal Name", S.STRING, C.IDENTITY, aliases=("upn",)),
    _Spec("displayName", "Display Name", S.STRING, C.IDENTITY),
    _Spec("firstName", "First Name", S.STRING, C.PERSONAL, "givenName", ("givenName",)),
    _Spec("lastName", "Last Name", S.STRING, C.PERSONAL, "sn", ("surname",)),
    _Spec("email", "Email", S.STRING, C.CONTACT, "mail", ("mail", "emailAddress")),
    _Spec("phone", "Telephone", S.STRING, C.CONTACT, "telephoneNumber", ("telephone",)),
    _Spec("mobile", "Mobile", S.STRING, C.CONTACT, aliases=("mobilePhone",)),
    _Spec("title", "Job Title", S.STRING, C.ORGANIZATION, aliases=("jobTitle",)),
    _Spec("department", "Department", S.STRING, C.ORGANIZATION),
    _Spec("company", "Company", S.STRING, C.ORGANIZATION, aliases=("companyName",)),
    _Spec("employeeId", "Employee ID", S.STRING, C.ORGANIZATION, "employeeID",
          sensitive=True),
    _Spec("manager", "Manager", S.REFERENCE, C.ORGANIZATION,
          description="Distinguished name of the manager entry"),
    _Spec("office", "Office", S.STRING, C.LOCATION, "physicalDeliveryOfficeName",
          ("officeLocation",)),
    _Spec("city", "City", S.STRING, C.LOCATION, "l"),
    _Spec("state", "State", S.STRING, C.LOCATION, "st"),
    _Spec("country", "Country", S.STRING, C.LOCATION, "co"),
    _Spec("distinguishedName", "Distinguished Name", S.STRING, C.IDENTITY, aliases=("dn",)),
    _Spec("description", "Description", S.STRING, C.OTHER),
    _Spec("memberOf", "Group Memberships", S.ARRAY, C.SECURITY, aliases=("groups",)),
    _Spec("enabled", "Enabled", S.BOOLEAN, C.SECURITY, "userAccountControl",
          ("accountEnabled",), "Derived from the ACCOUNTDISABLE flag",
          bit_flag=BitFlag(UAC_ACCOUNT_DISABLED, inverted=True)),
    _Spec("passwordNeverExpires", "Password Never Expires", S.BOOLEAN, C.SECURITY,
          "userAccountControl", bit_flag=BitFlag(UAC_DONT_EXPIRE_PASSWORD)),
    _Spec("passwordNotRequired", "Password Not Required", S.BOOLEAN, C.SECURITY,
          "userAccountControl", bit_flag=BitFlag(UAC_PASSWORD_NOT_REQUIRED)),
    _Spec("smartcardRequired", "Smartcard Required", S.BOOLEAN, C.SECURITY,
          "userAccountControl", bit_flag=BitFlag(UAC_SMARTCARD_REQUIRED)),
    _Spec("userAccountControl", "Account Control Flags", S.INTEGER, C.SECURITY),
    _Spec("badPasswordCount", "Bad Password Count", S.INTEGER, C.SECURITY, "badPwdCount"),
    _Spec("lockoutTime", "Lockout Time", S.DATETIME, C.SECURITY),
    _Spec("lastLogon", "Last Logon", S.DATETIME, C.AUDIT, "lastLogonTimestamp",
          ("lastLogonTimestamp", "lastLogonDate"), "Replicated last logon (up to 14 days stale)"),
    _Spec("passwordLastSet", "Password Last Set", S.DATETIME, C.SECURITY, "pwdLastSet",
          ("pwdLastSet",)),
    _Spec("accountExpires", "Account Expires", S.DATETIME, C.SECURITY),
    _Spec("whenCreated", "Created", S.DATETIME, C.AUDIT, aliases=("created", "createdDate")),
    _Spec("whenChanged", "Modified", S.DATETIME, C.AUDIT, aliases=("modified",)),
)

_CLOUD_DIRECTORY: tuple[_Spec, ...] = (
    _Spec("id", "Object ID", S.STRING, C.IDENTITY, aliases=("objectId",)),
    _Spec("userPrincipalName", "User Principal Name", S.STRING, C.IDENTITY, aliases=("upn",)),
    _Spec("displayName", "Display Name", S.STRING, C.IDENTITY),
    _Spec("givenName", "First Name", S.STRING, C.PERSONAL, aliases=("firstName",)),
    _Spec("surname", "Last Name", S.STRING, C.PERSONAL, aliases=("lastName", "sn")),
    _Spec("mail", "Email", S.STRING, C.CONTACT, aliases=("email",)),
    _Spec("mobilePhone", "Mobile", S.STRING, C.CONTACT, aliases=("mobile",)),
    _Spec("businessPhones", "Business Phones", S.ARRAY, C.CONTACT),
    _Spec("proxyAddresses", "Proxy Addresses", S.ARRAY, C.CONTACT),
    _Spec("jobTitle", "Job Title", S.STRING, C.ORGANIZATION, aliases=("title",)),
    _Spec("department", "Department", S.STRING, C.ORGANIZATION),
    _Spec("companyName", "Company", S.STRING, C.ORGANIZATION, aliases=("company",)),
    _Spec("employeeId", "Employee ID", S.STRING, C.ORGANIZATION, sensitive=True),
    _Spec("employeeType", "Employee Type", S.STRING, C.ORGANIZATION),
    _Spec("manager", "Manager", S.REFERENCE, C.ORGANIZATION,
          description="Display name of the manager, resolved per user"),
    _Spec("officeLocation", "Office", S.STRING, C.LOCATION, aliases=("office",)),
    _Spec("city", "City", S.STRING, C.LOCATION),
    _Spec("state", "State", S.STRING, C.LOCATION),
    _Spec("country", "Country", S.STRING, C.LOCATION),
    _Spec("usageLocation", "Usage Location", S.STRING, C.LOCATION),
    _Spec("userType", "User Type", S.STRING, C.IDENTITY),
    _Spec("accountEnabled", "Enabled", S.BOOLEAN, C.SECURITY, aliases=("enabled",)),
    _Spec("onPremisesSyncEnabled", "Synced From On-Premises", S.BOOLEAN, C.IDENTITY),
    _Spec("onPremisesSamAccountName", "On-Premises Account Name", S.STRING, C.IDENTITY,
          aliases=("accountName",)),
    _Spec("assignedLicenses", "Assigned Licenses", S.ARRAY, C.SECURITY, aliases=("licenses",)),
    _Spec("createdDateTime", "Created", S.DATETIME, C.AUDIT, aliases=("created", "whenCreated")),
    _Spec("lastPasswordChangeDateTime", "Password Last Changed", S.DATETIME, C.SECURITY,
          aliases=("passwordLastSet",)),
    _Spec("lastSignInDateTime", "Last Sign-In", S.DATETIME, C.AUDIT,
          "signInActivity/lastSignInDateTime", ("lastSignIn", "lastLogon"),
          "Requires AuditLog.Read.All"),
)

_CLOUD_SUITE: tuple[_Spec, ...] = (
    _Spec("userPrincipalName", "User Principal Name", S.STRING, C.IDENTITY,
          "User Principal Name", ("upn",)),
    _Spec("displayName", "Display Name", S.STRING, C.IDENTITY, "Display Name"),
    _Spec("isDeleted", "Deleted", S.BOOLEAN, C.IDENTITY, "Is Deleted"),
    _Spec("lastActivityDate", "Last Activity", S.DATETIME, C.USAGE, "Last Activity Date"),
    _Spec("reportRefreshDate", "Report Refresh Date", S.DATETIME, C.AUDIT,
          "Report Refresh Date"),
    _Spec("hasExchangeLicense", "Exchange Licensed", S.BOOLEAN, C.SECURITY,
          "Has Exchange License", dataset=ACTIVE_USERS_REPORT),
    _Spec("hasOneDriveLicense", "OneDrive Licensed", S.BOOLEAN, C.SECURITY,
          "Has OneDrive License", dataset=ACTIVE_USERS_REPORT),
    _Spec("hasSharePointLicense", "SharePoint Licensed", S.BOOLEAN, C.SECURITY,
          "Has SharePoint License", dataset=ACTIVE_USERS_REPORT),
    _Spec("hasTeamsLicense", "Teams Licensed", S.BOOLEAN, C.SECURITY,
          "Has Teams License", dataset=ACTIVE_USERS_REPORT),
    _Spec("exchangeLastActivityDate", "Exchange Last Activity", S.DATETIME, C.USAGE,
          "Exchange Last Activity Date", dataset=ACTIVE_USERS_REPORT),
    _Spec("oneDriveLastActivityDate", "OneDrive Last Activity", S.DATETIME, C.USAGE,
          "OneDrive Last Activity Date", dataset=ACTIVE_USERS_REPORT),
    _Spec("sharePointLastActivityDate", "SharePoint Last Activity", S.DATETIME, C.USAGE,
          "SharePoint Last Activity Date", dataset=ACTIVE_USERS_REPORT),
    _Spec("teamsLastActivityDate", "Teams Last Activity", S.DATETIME, C.USAGE,
          "Teams Last Activity Date", dataset=ACTIVE_USERS_REPORT),
    _Spec("assignedProducts", "Assigned Products", S.ARRAY, C.SECURITY,
          "Assigned Products", dataset=ACTIVE_USERS_REPORT),
    _Spec("storageUsedInBytes", "Mailbox Storage Used (Bytes)", S.INTEGER, C.USAGE,
          "Storage Used (Byte)", ("mailboxSize",), dataset=MAILBOX_REPORT),
    _Spec("itemCount", "Mailbox Item Count", S.INTEGER, C.USAGE, "Item Count",
          dataset=MAILBOX_REPORT),
    _Spec("issueWarningQuotaInBytes", "Warning Quota (Bytes)", S.INTEGER, C.USAGE,
          "Issue Warning Quota (Byte)", dataset=MAILBOX_REPORT),
    _Spec("prohibitSendQuotaInBytes", "Prohibit Send Quota (Bytes)", S.INTEGER, C.USAGE,
          "Prohibit Send Quota (Byte)", dataset=MAILBOX_REPORT),
    _Spec("mailboxCreatedDate", "Mailbox Created", S.DATETIME, C.AUDIT, "Created Date",
          dataset=MAILBOX_REPORT),
    _Spec("sendCount", "Emails Sent", S.INTEGER, C.USAGE, "Send Count",
          dataset=EMAIL_ACTIVITY_REPORT),
    _Spec("receiveCount", "Emails Received", S.INTEGER, C.USAGE, "Receive Count",
          dataset=EMAIL_ACTIVITY_REPORT),
    _Spec("readCount", "Emails Read", S.INTEGER, C.USAGE, "Read Count",
          dataset=EMAIL_ACTIVITY_REPORT),
    _Spec("oneDriveStorageUsedInBytes", "OneDrive Storage Used (Bytes)", S.INTEGER, C.USAGE,
          "Storage Used (Byte)", dataset=ONEDRIVE_REPORT),
    _Spec("oneDriveFileCount", "OneDrive Files", S.INTEGER, C.USAGE, "File Count",
          dataset=ONEDRIVE_REPORT),
    _Spec("oneDriveActiveFileCount", "OneDrive Active Files", S.INTEGER, C.USAGE,
          "Active File Count", dataset=ONEDRIVE_REPORT),
    _Spec("oneDriveSiteUrl", "OneDrive URL", S.STRING, C.USAGE, "Site URL",
          dataset=ONEDRIVE_REPORT),
    _Spec("teamChatMessageCount", "Team Chat Messages", S.INTEGER, C.USAGE,
          "Team Chat Message Count", dataset=TEAMS_REPORT),
    _Spec("privateChatMessageCount", "Private Chat Messages", S.INTEGER, C.USAGE,
          "Private Chat Message Count", dataset=TEAMS_REPORT),
    _Spec("callCount", "Calls", S.INTEGER, C.USAGE, "Call Count", dataset=TEAMS_REPORT),
    _Spec("meetingCount", "Meetings", S.INTEGER, C.USAGE, "Meeting Count",
          dataset=TEAMS_REPORT),
)

_SPECS: dict[SourceKind, tuple[_Spec, ...]] = {
    SourceKind.DIRECTORY: _DIRECTORY,
    SourceKind.CLOUD_DIRECTORY: _CLOUD_DIRECTORY,
    SourceKind.CLOUD_SUITE: _CLOUD_SUITE,
}


def _descriptor(source: SourceKind, spec: _Spec) -> FieldDescriptor:
    return FieldDescriptor(
        name=spec.name,
        display_name=spec.display,
        semantic_type=spec.semantic_type,
        source=source,
        category=spec.category,
        native_name=spec.native or spec.name,
        aliases=spec.aliases,
        description=spec.description,
        sortable=spec.semantic_type is not SemanticType.ARRAY,
        sensitive=spec.sensitive,
        bit_flag=spec.bit_flag,
        dataset=spec.dataset,
    )


def standard_fields(source: SourceKind) -> tuple[FieldDescriptor, ...]:
    """
    Return the built-in field descriptors for a source.

    Parameters
    ----------
    source:
        Backend kind.

    Returns
    -------
    tuple[FieldDescriptor, ...]
        Descriptors in display order.
    """
    return tuple(_descriptor(source, spec) for spec in _SPECS[source])


def standard_catalog(source: SourceKind, credential_id: str = "") -> FieldCatalog:
    """
    Build an offline catalog (version 0) containing only the standard fields.

    Returns
    -------
    FieldCatalog
        Catalog usable for validation and compilation without a backend.
    """
    return FieldCatalog(
        source=source,
        credential_id=credential_id,
        version=0,
        fields=standard_fields(source),
        discovered_at=datetime(1970, 1, 1, tzinfo=UTC),
    )


def report_datasets() -> tuple[str, ...]:
    """
    Return the usage report names the cloud suite source can download.

    Returns
    -------
    tuple[str, ...]
        Report function names, default report first.
    """
    return (
        ACTIVE_USERS_REPORT,
        MAILBOX_REPORT,
        EMAIL_ACTIVITY_REPORT,
        ONEDRIVE_REPORT,
        TEAMS_REPORT,
    )
