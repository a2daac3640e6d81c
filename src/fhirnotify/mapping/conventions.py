"""Record layout conventions shared by the mapper, the filter compiler and the attachment store.

Everything that is written to a record and later read back or searched on is
named here exactly once.
"""

import re
from datetime import datetime, timezone
from enum import IntEnum

from fhirnotify.models.enums import CommunicationStatus, NotificationStatus

SYSTEM_BASE = "http://fhirnotify.dev/fhir"

COMMUNICATION = "Communication"
BINARY = "Binary"
MEDIA = "Media"


class IdentifierSystem:
    """Identifier systems for searchable scalar fields."""

    BODY_TEMPLATE = f"{SYSTEM_BASE}/body-template"
    SUBJECT_TEMPLATE = f"{SYSTEM_BASE}/subject-template"
    ADAPTER_USED = f"{SYSTEM_BASE}/adapter-used"
    GIT_COMMIT_SHA = f"{SYSTEM_BASE}/git-commit-sha"
    ATTACHMENT_CHECKSUM = f"{SYSTEM_BASE}/attachment-checksum"
    BINARY_ID = f"{SYSTEM_BASE}/binary-id"


class ExtensionUrl:
    EMAIL_OR_PHONE = f"{SYSTEM_BASE}/StructureDefinition/emailOrPhone"
    FIRST_NAME = f"{SYSTEM_BASE}/StructureDefinition/firstName"
    LAST_NAME = f"{SYSTEM_BASE}/StructureDefinition/lastName"
    CONTEXT_USED = f"{SYSTEM_BASE}/StructureDefinition/contextUsed"
    SEND_AFTER = f"{SYSTEM_BASE}/StructureDefinition/sendAfter"
    READ_AT = f"{SYSTEM_BASE}/StructureDefinition/readAt"
    STORAGE_IDENTIFIERS = f"{SYSTEM_BASE}/StructureDefinition/storage-identifiers"


ONE_OFF_EXTENSIONS = (
    ExtensionUrl.EMAIL_OR_PHONE,
    ExtensionUrl.FIRST_NAME,
    ExtensionUrl.LAST_NAME,
)


class TagSlot(IntEnum):
    """Position of each classification code in ``meta.tag``.

    The order is part of the stored format: records are decoded by position.
    """

    MARKER = 0
    CONTEXT_NAME = 1
    NOTIFICATION_TYPE = 2
    ONE_OFF = 3


NOTIFICATION_TAG = "notification"
ONE_OFF_TAG = "one-off"
ATTACHMENT_METADATA_TAG = "attachment-metadata"
REQUIRED_TAG_COUNT = TagSlot.NOTIFICATION_TYPE + 1


def build_tags(context_name: str, notification_type: str, one_off: bool) -> list[dict[str, str]]:
    """Build the ordered ``meta.tag`` list for a notification record."""
    codes = {
        TagSlot.MARKER: NOTIFICATION_TAG,
        TagSlot.CONTEXT_NAME: context_name,
        TagSlot.NOTIFICATION_TYPE: notification_type,
    }
    if one_off:
        codes[TagSlot.ONE_OFF] = ONE_OFF_TAG
    return [{"code": codes[slot]} for slot in sorted(codes)]


# Domain has five states, the store three. READ is SENT plus a read timestamp;
# CANCELLED records are deleted rather than stored.
_STATUS_TO_STORE: dict[NotificationStatus, CommunicationStatus] = {
    NotificationStatus.PENDING_SEND: CommunicationStatus.IN_PROGRESS,
    NotificationStatus.SENT: CommunicationStatus.COMPLETED,
    NotificationStatus.READ: CommunicationStatus.COMPLETED,
    NotificationStatus.FAILED: CommunicationStatus.STOPPED,
}


def store_status_for(status: NotificationStatus) -> CommunicationStatus | None:
    """Map a domain status onto the store's status, or None when it has no stored form."""
    return _STATUS_TO_STORE.get(status)


def search_status_for(status: NotificationStatus) -> CommunicationStatus:
    """Map a domain status onto the value used when searching.

    CANCELLED maps to a status this backend never writes, so searching for it
    matches nothing instead of matching everything.
    """
    return _STATUS_TO_STORE.get(status, CommunicationStatus.NOT_DONE)


def domain_status_for(store_status: str | None, read_at: datetime | None) -> NotificationStatus | None:
    """Derive the domain status from the stored status and the read timestamp."""
    if store_status == CommunicationStatus.IN_PROGRESS:
        return NotificationStatus.PENDING_SEND
    if store_status == CommunicationStatus.COMPLETED:
        return NotificationStatus.READ if read_at else NotificationStatus.SENT
    if store_status == CommunicationStatus.STOPPED:
        return NotificationStatus.FAILED
    return None


# ---------------------------------------------------------------------------
# Locators
# ---------------------------------------------------------------------------

_MEDIA_LOCATOR_RE = re.compile(r"^Media/([^/]+)$")
_BINARY_LOCATOR_RE = re.compile(r"Binary/([^/?]+)")
_BINARY_DOWNLOAD_RE = re.compile(r"/binary/[^/]+/([^/?]+)")


def media_locator(media_id: str) -> str:
    return f"{MEDIA}/{media_id}"


def binary_locator(binary_id: str) -> str:
    return f"{BINARY}/{binary_id}"


def parse_media_locator(locator: str | None) -> str | None:
    """Return the metadata record id from a ``Media/<id>`` locator."""
    if not locator:
        return None
    match = _MEDIA_LOCATOR_RE.match(locator)
    return match.group(1) if match else None


def parse_binary_locator(locator: str | None) -> str | None:
    """Return the blob id from ``Binary/<id>`` or a store download URL."""
    if not locator:
        return None
    match = _BINARY_DOWNLOAD_RE.search(locator) or _BINARY_LOCATOR_RE.search(locator)
    return match.group(1) if match else None


def attachment_locators(resource: dict) -> list[tuple[str, str | None]]:
    """List ``(media_id, title)`` for every attachment payload entry, in order."""
    entries = []
    for item in resource.get("payload") or []:
        attachment = item.get("contentAttachment")
        if not attachment:
            continue
        media_id = parse_media_locator(attachment.get("url"))
        if media_id:
            entries.append((media_id, attachment.get("title")))
    return entries


# ---------------------------------------------------------------------------
# Small record helpers
# ---------------------------------------------------------------------------


def find_identifier(resource: dict, system: str) -> str | None:
    for identifier in resource.get("identifier") or []:
        if identifier.get("system") == system:
            return identifier.get("value")
    return None


def find_extension(resource: dict, url: str) -> dict | None:
    for extension in resource.get("extension") or []:
        if extension.get("url") == url:
            return extension
    return None


def format_instant(value: datetime) -> str:
    """Format a datetime as an ISO instant, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_instant(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def escape_search_value(value: str) -> str:
    """Escape a literal for use inside a search parameter value, where a comma means OR."""
    return value.replace("\\", "\\\\").replace(",", "\\,")
