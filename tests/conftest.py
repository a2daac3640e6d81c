"""Shared test fixtures."""

import copy
import itertools
import re
from datetime import datetime, timedelta, timezone

import pytest

from fhirnotify.attachments.dedup import AttachmentDeduplicator
from fhirnotify.attachments.store import FhirAttachmentStore
from fhirnotify.backend import FhirNotificationBackend, build_backend
from fhirnotify.config import Settings
from fhirnotify.errors.exceptions import FhirNotifyError, NotFoundError
from fhirnotify.mapping.communication import CommunicationMapper
from fhirnotify.mapping.conventions import format_instant, parse_instant, utcnow
from fhirnotify.models.enums import NotificationType
from fhirnotify.models.notification import NotificationInput, OneOffNotificationInput
from fhirnotify.store.base import RecordStoreClient

SUBJECT_EXTENSION_URL = "http://test.local/StructureDefinition/subject"

_UNESCAPED_COMMA = re.compile(r"(?<!\\),")
_COMPARATORS = {
    "ge": lambda a, b: a >= b,
    "le": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "lt": lambda a, b: a < b,
}


def _split_values(value: str) -> list[str]:
    return [v.replace("\\,", ",").replace("\\\\", "\\") for v in _UNESCAPED_COMMA.split(value)]


def _tokens(resource: dict, name: str) -> list[str]:
    """Values a resource exposes for one search parameter."""
    if name == "_id":
        return [resource["id"]]
    if name == "_tag":
        return [tag.get("code") for tag in (resource.get("meta") or {}).get("tag") or []]
    if name == "identifier":
        return [f"{i.get('system')}|{i.get('value')}" for i in resource.get("identifier") or []]
    if name == "status":
        return [resource.get("status")]
    if name == "recipient":
        return [r.get("reference") for r in resource.get("recipient") or []]
    raise AssertionError(f"in-memory store does not index '{name}'")


def _instant(resource: dict, name: str) -> datetime | None:
    if name == "sent":
        return parse_instant(resource.get("sent"))
    if name == "_lastUpdated":
        return parse_instant((resource.get("meta") or {}).get("lastUpdated"))
    raise AssertionError(f"in-memory store has no date parameter '{name}'")


def _matches(resource: dict, name: str, value: str) -> bool:
    base, _, modifier = name.partition(":")
    if modifier in _COMPARATORS:
        actual = _instant(resource, base)
        return actual is not None and _COMPARATORS[modifier](actual, parse_instant(value))
    hit = bool(set(_split_values(value)) & set(_tokens(resource, base)))
    return not hit if modifier == "not" else hit


class InMemoryRecordStore(RecordStoreClient):
    """Dict-backed record store speaking the subset of FHIR search used by the backend.

    Every call is appended to ``calls`` as ``(method, resource_type, detail)``.
    """

    def __init__(self):
        self.resources: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)

    def _bucket(self, resource_type: str) -> dict[str, dict]:
        return self.resources.setdefault(resource_type, {})

    def calls_to(self, method: str, resource_type: str | None = None) -> list[tuple]:
        return [
            call for call in self.calls
            if call[0] == method and (resource_type is None or call[1] == resource_type)
        ]

    async def create(self, resource):
        resource_type = resource["resourceType"]
        self.calls.append(("create", resource_type, None))
        stored = copy.deepcopy(resource)
        stored["id"] = f"{resource_type.lower()}-{next(self._ids)}"
        stored["meta"] = {**(stored.get("meta") or {}), "versionId": "1", "lastUpdated": format_instant(utcnow())}
        self._bucket(resource_type)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def read(self, resource_type, resource_id):
        self.calls.append(("read", resource_type, resource_id))
        try:
            return copy.deepcopy(self._bucket(resource_type)[resource_id])
        except KeyError:
            raise NotFoundError(resource_type, resource_id) from None

    async def update(self, resource, *, version_id=None):
        resource_type = resource["resourceType"]
        self.calls.append(("update", resource_type, version_id))
        current = self._bucket(resource_type).get(resource["id"])
        if current is None:
            raise NotFoundError(resource_type, resource["id"])
        current_version = current["meta"]["versionId"]
        if version_id is not None and version_id != current_version:
            raise FhirNotifyError("CONFLICT", f"Stale version {version_id}, current is {current_version}")
        stored = copy.deepcopy(resource)
        stored["meta"] = {
            **(stored.get("meta") or {}),
            "versionId": str(int(current_version) + 1),
            "lastUpdated": format_instant(utcnow()),
        }
        self._bucket(resource_type)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def delete(self, resource_type, resource_id):
        self.calls.append(("delete", resource_type, resource_id))
        if self._bucket(resource_type).pop(resource_id, None) is None:
            raise NotFoundError(resource_type, resource_id)

    async def search(self, resource_type, params):
        params = list(params)
        self.calls.append(("search", resource_type, params))
        count = offset = None
        results = list(self._bucket(resource_type).values())
        for name, value in params:
            if name == "_count":
                count = int(value)
            elif name == "_offset":
                offset = int(value)
            else:
                results = [r for r in results if _matches(r, name, value)]
        results = results[offset or 0:]
        if count is not None:
            results = results[:count]
        return copy.deepcopy(results)

    def put(self, resource: dict) -> dict:
        """Seed a resource directly, bypassing call recording."""
        stored = copy.deepcopy(resource)
        stored.setdefault("meta", {}).setdefault("versionId", "1")
        self._bucket(stored["resourceType"])[stored["id"]] = stored
        return stored


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def mapper() -> CommunicationMapper:
    return CommunicationMapper(SUBJECT_EXTENSION_URL)


@pytest.fixture
def attachment_store(store) -> FhirAttachmentStore:
    return FhirAttachmentStore(store)


@pytest.fixture
def deduplicator(attachment_store) -> AttachmentDeduplicator:
    return AttachmentDeduplicator(attachment_store)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        backend_identifier="test-fhir",
        subject_extension_url=SUBJECT_EXTENSION_URL,
        check_preconditions=True,
        default_page_size=25,
    )


@pytest.fixture
def backend(store, test_settings) -> FhirNotificationBackend:
    return build_backend(store, test_settings)


@pytest.fixture
def future() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=1)


def make_notification(**overrides) -> NotificationInput:
    fields = {
        "user_id": "Patient/123",
        "notification_type": NotificationType.EMAIL,
        "title": "Welcome",
        "body_template": "emails/welcome/body.pug",
        "subject_template": "emails/welcome/subject.pug",
        "context_name": "welcome",
        "context_parameters": {"first_name": "Ada"},
    }
    fields.update(overrides)
    return NotificationInput(**fields)


def make_one_off(**overrides) -> OneOffNotificationInput:
    fields = {
        "email_or_phone": "guest@example.com",
        "first_name": "Grace",
        "last_name": "Hopper",
        "notification_type": NotificationType.EMAIL,
        "body_template": "emails/invite/body.pug",
        "subject_template": "emails/invite/subject.pug",
        "context_name": "invite",
        "context_parameters": {"event": "launch"},
    }
    fields.update(overrides)
    return OneOffNotificationInput(**fields)


@pytest.fixture
def new_notification():
    """Factory for regular notification inputs."""
    return make_notification


@pytest.fixture
def new_one_off():
    """Factory for one-off notification inputs."""
    return make_one_off
